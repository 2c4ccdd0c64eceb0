"""Wire models for the grading and extraction function calls"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .evaluation import AnswerScore, EvaluationSummary


class PaperRef(BaseModel):
    url: str
    topic: str = ""


class StudentAnswerRef(BaseModel):
    url: str
    zip_url: Optional[str] = None


class StudentInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    id: str
    name: str = ""
    roll_number: str = ""
    class_name: str = Field("", alias="class")
    subject: str = ""


class GradingRequest(BaseModel):
    """Body of the evaluate-paper function"""
    model_config = ConfigDict(populate_by_name=True)
    question_paper: PaperRef = Field(alias="questionPaper")
    answer_key: PaperRef = Field(alias="answerKey")
    student_answer: StudentAnswerRef = Field(alias="studentAnswer")
    student_info: StudentInfo = Field(alias="studentInfo")
    test_id: str = Field(alias="testId")
    retry_attempt: int = Field(0, alias="retryAttempt")


class GradingResult(BaseModel):
    """Response of the evaluate-paper function"""
    model_config = ConfigDict(populate_by_name=True, extra="allow")
    answers: List[AnswerScore] = Field(min_length=1)
    summary: EvaluationSummary
    text: Optional[str] = None


class ExtractionRequest(BaseModel):
    """Body of the extract-text function"""
    model_config = ConfigDict(populate_by_name=True)
    file_url: str = Field(alias="fileUrl")
    file_name: str = Field("", alias="fileName")
    file_type: Literal["questionPaper", "answerKey", "answerSheet"] = Field("answerSheet", alias="fileType")
    zip_url: Optional[str] = Field(None, alias="zipUrl")
