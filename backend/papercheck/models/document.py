"""Uploaded document models"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

DocumentRole = Literal["questionPaper", "answerKey", "answerSheet", "handwritten"]


class Document(BaseModel):
    """An uploaded artifact - documents collection"""
    model_config = ConfigDict(extra="ignore")
    id: str
    url: str
    role: DocumentRole
    name: str = ""
    topic: str = ""  # label passed to the grader
    subject_id: Optional[str] = None
    test_id: Optional[str] = None
    student_id: Optional[str] = None
    owner_id: Optional[str] = None
    ocr_text: Optional[str] = None
    storage_path: Optional[str] = None  # file store name of the blob
    zip_url: Optional[str] = None
    created_at: Optional[str] = None


class OcrTextUpdate(BaseModel):
    text: str
