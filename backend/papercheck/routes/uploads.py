"""Upload routes - answer sheets, test documents, OCR text."""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from papercheck.config import logger
from papercheck.deps import (
    get_current_user_id, get_db, get_extraction_client, get_packager, get_store,
)
from papercheck.errors import PaperCheckError
from papercheck.models.document import OcrTextUpdate
from papercheck.services.bundles import BundlePackager
from papercheck.services.documents import (
    delete_document, extract_document_text, save_test_document, save_uploaded_answer_sheet, set_document_text,
)
from papercheck.services.extraction import ExtractionClient
from papercheck.utils.http_errors import to_http_exception

router = APIRouter(tags=["uploads"])

MAX_UPLOAD_BYTES = 30 * 1024 * 1024


async def read_upload(file: UploadFile) -> bytes:
    file_bytes = await file.read()
    if not file_bytes:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(file_bytes) > MAX_UPLOAD_BYTES:
        file_size_mb = len(file_bytes) / (1024 * 1024)
        raise HTTPException(status_code=413, detail=f"File too large ({file_size_mb:.1f}MB). Maximum size is 30MB.")
    return file_bytes


@router.post("/tests/{test_id}/students/{student_id}/answer-sheet")
async def upload_answer_sheet(
    test_id: str,
    student_id: str,
    file: UploadFile = File(...),
    subject_id: Optional[str] = Form(None),
    db=Depends(get_db),
    store=Depends(get_store),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    """Upload (or replace) a student's answer sheet; previous grading is reset."""
    file_bytes = await read_upload(file)
    try:
        answer = await save_uploaded_answer_sheet(
            db, store, test_id, student_id, file.filename or "", file_bytes,
            subject_id=subject_id, owner_id=user_id,
        )
        return answer.model_dump()
    except PaperCheckError as e:
        raise to_http_exception(e)


@router.post("/tests/{test_id}/documents")
async def upload_test_document(
    test_id: str,
    file: UploadFile = File(...),
    role: Literal["questionPaper", "answerKey"] = Form(...),
    topic: str = Form(""),
    db=Depends(get_db),
    store=Depends(get_store),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    """Upload the question paper or answer key of a test."""
    file_bytes = await read_upload(file)
    try:
        document = await save_test_document(
            db, store, test_id, role, file.filename or "", file_bytes, topic=topic, owner_id=user_id,
        )
        return document.model_dump()
    except PaperCheckError as e:
        raise to_http_exception(e)


@router.post("/documents/{document_id}/extract-text")
async def extract_text(
    document_id: str,
    db=Depends(get_db),
    client: ExtractionClient = Depends(get_extraction_client),
    packager: BundlePackager = Depends(get_packager),
):
    """Run OCR on a stored document and cache the text on it."""
    try:
        document = await extract_document_text(db, document_id, client, packager)
        return document.model_dump()
    except PaperCheckError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Text extraction error for document {document_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Text extraction failed: {str(e)}")


@router.put("/documents/{document_id}/ocr-text")
async def update_ocr_text(document_id: str, body: OcrTextUpdate, db=Depends(get_db)):
    try:
        document = await set_document_text(db, document_id, body.text)
        return document.model_dump()
    except PaperCheckError as e:
        raise to_http_exception(e)


@router.delete("/documents/{document_id}")
async def remove_document(
    document_id: str,
    db=Depends(get_db),
    store=Depends(get_store),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    try:
        await delete_document(db, store, document_id, user_id)
        return {"message": "Document deleted", "document_id": document_id}
    except PaperCheckError as e:
        raise to_http_exception(e)
