"""Grading routes - evaluate one student, batch jobs, job status, cancel."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from papercheck.config import logger
from papercheck.deps import get_db, get_evaluation_service, get_job_manager, get_current_user_id
from papercheck.errors import PaperCheckError, TestNotFound
from papercheck.services.evaluation import EvaluationService
from papercheck.services.jobs import GradingJobManager
from papercheck.utils.http_errors import to_http_exception
from papercheck.utils.serialization import serialize_doc

router = APIRouter(tags=["grading"])


class BatchEvaluateRequest(BaseModel):
    student_ids: List[str] = []
    subject_id: Optional[str] = None


async def resolve_subject(db, test_id: str, subject_id: Optional[str]) -> str:
    if subject_id:
        return subject_id
    test = await db.tests.find_one({"id": test_id}, {"_id": 0, "subject_id": 1})
    if not test or not test.get("subject_id"):
        raise TestNotFound(f"Test {test_id} not found")
    return test["subject_id"]


@router.post("/tests/{test_id}/students/{student_id}/evaluate")
async def evaluate_student(
    test_id: str,
    student_id: str,
    subject_id: Optional[str] = None,
    db=Depends(get_db),
    service: EvaluationService = Depends(get_evaluation_service),
):
    """Grade one student's answer sheet now and return the evaluation."""
    try:
        subject_id = await resolve_subject(db, test_id, subject_id)
        outcome = await service.evaluate(student_id, test_id, subject_id)
        return outcome.evaluation.model_dump(by_alias=True)
    except PaperCheckError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Evaluation error for student {student_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Evaluation failed: {str(e)}")


@router.post("/tests/{test_id}/evaluate-batch")
async def evaluate_batch(
    test_id: str,
    body: BatchEvaluateRequest,
    db=Depends(get_db),
    service: EvaluationService = Depends(get_evaluation_service),
    jobs: GradingJobManager = Depends(get_job_manager),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    """Start background grading for several students (default: everyone with an answer sheet)."""
    try:
        subject_id = await resolve_subject(db, test_id, body.subject_id)
    except PaperCheckError as e:
        raise to_http_exception(e)

    student_ids = body.student_ids
    if not student_ids:
        rows = await db.test_answers.find(
            {"test_id": test_id, "subject_id": subject_id}, {"_id": 0, "student_id": 1}
        ).to_list(1000)
        student_ids = sorted({r["student_id"] for r in rows})
    if not student_ids:
        raise HTTPException(status_code=400, detail="No answer sheets uploaded for this test")

    job = await jobs.start(service, test_id, subject_id, student_ids, owner_id=user_id)
    return {
        "job_id": job["job_id"],
        "status": job["status"],
        "total_students": job["total_students"],
        "message": f"Grading job started for {len(student_ids)} students. Use job_id to check progress.",
    }


@router.get("/grading-jobs/{job_id}")
async def get_grading_job_status(job_id: str, jobs: GradingJobManager = Depends(get_job_manager)):
    """Poll grading job status"""
    try:
        return serialize_doc(await jobs.get(job_id))
    except PaperCheckError as e:
        raise to_http_exception(e)


@router.post("/grading-jobs/{job_id}/cancel")
async def cancel_grading_job(
    job_id: str,
    jobs: GradingJobManager = Depends(get_job_manager),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    """Cancel an ongoing grading job"""
    try:
        job = await jobs.get(job_id)
        if job.get("owner_id") and job["owner_id"] != user_id:
            raise HTTPException(status_code=403, detail="Access denied")
        return await jobs.cancel(job_id)
    except PaperCheckError as e:
        raise to_http_exception(e)
