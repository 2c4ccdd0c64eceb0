"""
FastAPI dependencies - database, file store, services, caller identity.
"""

from typing import Optional

from fastapi import Depends, Header

from papercheck.config import EVALUATION_RETRY_BASE_DELAY
from papercheck.services.bundles import BundlePackager
from papercheck.services.evaluation import EvaluationService
from papercheck.services.extraction import ExtractionClient
from papercheck.services.file_store import get_file_store
from papercheck.services.grading import LocalGradingFunction, get_grader
from papercheck.services.jobs import GradingJobManager

_job_manager: Optional[GradingJobManager] = None


def get_db():
    from papercheck.database import db
    return db


def get_store():
    return get_file_store()


def get_grading_function():
    return get_grader()


def get_extraction_client() -> ExtractionClient:
    return ExtractionClient()


def get_packager(store=Depends(get_store)) -> BundlePackager:
    return BundlePackager(store)


def get_evaluation_service(
    db=Depends(get_db),
    grader=Depends(get_grading_function),
    packager: BundlePackager = Depends(get_packager),
) -> EvaluationService:
    return EvaluationService(db, grader, packager, retry_base_delay=EVALUATION_RETRY_BASE_DELAY)


def get_job_manager(db=Depends(get_db)) -> GradingJobManager:
    """One registry per process, so a cancel request finds the running task."""
    global _job_manager
    if _job_manager is None:
        _job_manager = GradingJobManager(db)
    return _job_manager


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """Caller identity for ownership checks; authentication happens upstream."""
    return x_user_id


def get_local_grading_function() -> LocalGradingFunction:
    """The in-process grader behind /functions/evaluate-paper, whatever GRADING_BACKEND says."""
    return LocalGradingFunction()
