"""
Uploaded documents and answer sheets.

Uploads land in the file store under
<subjectId>_<topic>_<role>_<timestamp>.<ext>; the records pointing at
them live in `documents` and (for answer sheets) `test_answers`.
"""

import re
import time
import uuid
from typing import Optional

from papercheck.config import logger
from papercheck.errors import (
    DocumentNotFound, ExtractionFailed, NotDocumentOwner, StoreError, TestNotFound, UnsupportedFormat,
)
from papercheck.models.document import Document
from papercheck.models.evaluation import TestAnswer, utc_now_iso
from papercheck.models.grading import ExtractionRequest
from papercheck.services.bundles import BundlePackager
from papercheck.services.extraction import ExtractionClient, extract_document
from papercheck.services.file_store import FileStore
from papercheck.services.reset import reset_evaluations
from papercheck.utils.file_utils import detect_document_kind, url_extension

CONTENT_TYPES = {"pdf": "application/pdf", "text": "text/plain"}
BUNDLE_CATEGORIES = {
    "questionPaper": "question_papers",
    "answerKey": "answer_keys",
    "answerSheet": "answer_sheets",
    "handwritten": "answer_sheets",
}


def storage_name(subject_id: str, topic: str, role: str, filename: str) -> str:
    topic = re.sub(r"[^A-Za-z0-9_-]+", "-", topic or "untitled").strip("-") or "untitled"
    return f"{subject_id}_{topic}_{role}_{int(time.time() * 1000)}{url_extension(filename)}"


def _content_type(kind: str, filename: str) -> str:
    if kind == "image":
        ext = url_extension(filename).lstrip(".")
        return f"image/{'jpeg' if ext == 'jpg' else ext or 'jpeg'}"
    return CONTENT_TYPES.get(kind, "application/octet-stream")


async def _load_test(db, test_id: str) -> dict:
    test = await db.tests.find_one({"id": test_id}, {"_id": 0})
    if not test:
        raise TestNotFound(f"Test {test_id} not found")
    return test


async def _store_upload(store: FileStore, name: str, filename: str, data: bytes, allowed: tuple) -> str:
    kind = detect_document_kind(data, filename)
    if kind not in allowed:
        raise UnsupportedFormat(f"Unsupported file type for {filename or 'upload'}")
    await store.upload(name, data, _content_type(kind, filename))
    return store.get_public_url(name)


async def save_test_document(
    db, store: FileStore, test_id: str, role: str, filename: str, data: bytes,
    topic: str = "", owner_id: Optional[str] = None,
) -> Document:
    """Store a question paper or answer key for a test."""
    test = await _load_test(db, test_id)
    subject_id = test.get("subject_id") or "nosubject"
    name = storage_name(subject_id, topic or test.get("name", ""), role, filename)
    url = await _store_upload(store, name, filename, data, ("pdf", "image", "text"))

    document = Document(
        id=str(uuid.uuid4()), url=url, role=role, name=filename, topic=topic or test.get("name", ""),
        subject_id=subject_id, test_id=test_id, owner_id=owner_id,
        storage_path=name, created_at=utc_now_iso(),
    )
    await db.documents.insert_one(document.model_dump())
    logger.info(f"📄 Stored {role} for test {test_id}: {name}")
    return document


async def save_uploaded_answer_sheet(
    db, store: FileStore, test_id: str, student_id: str, filename: str, data: bytes,
    subject_id: Optional[str] = None, owner_id: Optional[str] = None,
) -> TestAnswer:
    """
    Store a (re-)uploaded answer sheet and invalidate anything graded from
    the previous one.
    """
    if not subject_id:
        subject_id = (await _load_test(db, test_id)).get("subject_id")
        if not subject_id:
            raise TestNotFound(f"Test {test_id} has no subject")

    name = storage_name(subject_id, student_id, "answerSheet", filename)
    url = await _store_upload(store, name, filename, data, ("pdf", "image"))
    now = utc_now_iso()

    # Stale bundle and transcription belong to the old file
    await db.test_answers.update_one(
        {"student_id": student_id, "subject_id": subject_id, "test_id": test_id},
        {
            "$set": {"answer_sheet_url": url, "zip_url": None, "text_content": None, "updated_at": now},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
    )
    await db.documents.insert_one(Document(
        id=str(uuid.uuid4()), url=url, role="answerSheet", name=filename, topic=student_id,
        subject_id=subject_id, test_id=test_id, student_id=student_id, owner_id=owner_id,
        storage_path=name, created_at=now,
    ).model_dump())
    logger.info(f"📤 Answer sheet uploaded for student {student_id} on test {test_id}")

    await reset_evaluations(db, student_id, subject_id, test_id)

    row = await db.test_answers.find_one(
        {"student_id": student_id, "subject_id": subject_id, "test_id": test_id}, {"_id": 0}
    )
    return TestAnswer.model_validate(row)


async def get_document(db, document_id: str) -> Document:
    row = await db.documents.find_one({"id": document_id}, {"_id": 0})
    if not row:
        raise DocumentNotFound(f"Document {document_id} not found")
    return Document.model_validate(row)


async def extract_document_text(
    db, document_id: str, client: ExtractionClient, packager: BundlePackager
) -> Document:
    """OCR a stored document and cache the text on it. PDFs are bundled first."""
    document = await get_document(db, document_id)
    file_type = "answerSheet" if document.role == "handwritten" else document.role
    request = ExtractionRequest(
        file_url=document.url, file_name=document.name, file_type=file_type, zip_url=document.zip_url,
    )

    result = await extract_document(request, client)
    if result.get("is_pdf"):
        logger.info(f"Document {document_id} is a PDF, bundling pages before extraction")
        zip_url = await packager.bundle_document(
            document.url, document.id, BUNDLE_CATEGORIES[document.role], kind="pdf"
        )
        await db.documents.update_one({"id": document_id}, {"$set": {"zip_url": zip_url}})
        result = await extract_document(request.model_copy(update={"zip_url": zip_url}), client)

    text = result.get("text")
    if text is None:
        raise ExtractionFailed(f"No text extracted from document {document_id}")

    await db.documents.update_one({"id": document_id}, {"$set": {"ocr_text": text}})
    return await get_document(db, document_id)


async def set_document_text(db, document_id: str, text: str) -> Document:
    """Manual transcription; replaces any OCR text."""
    result = await db.documents.update_one({"id": document_id}, {"$set": {"ocr_text": text}})
    if result.matched_count == 0:
        raise DocumentNotFound(f"Document {document_id} not found")
    return await get_document(db, document_id)


async def delete_document(db, store: FileStore, document_id: str, owner_id: Optional[str]) -> None:
    document = await get_document(db, document_id)
    if document.owner_id and document.owner_id != owner_id:
        raise NotDocumentOwner(f"Document {document_id} belongs to another user")

    await db.documents.delete_one({"id": document_id})
    if document.storage_path:
        try:
            await store.delete(document.storage_path)
        except StoreError as e:
            logger.warning(f"⚠️ Document record deleted but blob {document.storage_path} remains: {e}")
    logger.info(f"🗑️ Deleted document {document_id} ({document.role})")
