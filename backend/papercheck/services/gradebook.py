"""Gradebook (test_grades) writes and reconciliation with completed evaluations."""

import uuid
from typing import Optional

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from papercheck.config import logger
from papercheck.errors import GradebookSyncFailed
from papercheck.models.evaluation import PaperEvaluation, format_marks, utc_now_iso

RESET_REMARK = "Reset due to answer sheet reupload"


def auto_remark(awarded: float, maximum: float) -> str:
    return f"Auto-evaluated: {format_marks(awarded)}/{format_marks(maximum)}"


def manual_remark(awarded: float, maximum: float) -> str:
    return f"Updated manually: {format_marks(awarded)}/{format_marks(maximum)}"


async def upsert_grade(db, test_id: str, student_id: str, marks: float, remarks: Optional[str]) -> None:
    """Create or update the single gradebook row for (test, student)."""
    now = utc_now_iso()
    try:
        await db.test_grades.update_one(
            {"test_id": test_id, "student_id": student_id},
            {
                "$set": {"marks": marks, "remarks": remarks, "updated_at": now},
                "$setOnInsert": {"id": str(uuid.uuid4()), "created_at": now},
            },
            upsert=True,
        )
    except PyMongoError as e:
        raise GradebookSyncFailed(f"Could not update grade for student {student_id} on test {test_id}: {e}") from e


async def sync_grades_from_evaluations(db) -> int:
    """
    Bring every gradebook row in line with its completed evaluation.

    Repairs rows left stale when a grade write failed after the evaluation
    was saved. Returns the number of rows written.
    """
    synced = 0
    cursor = db.paper_evaluations.find({"status": "completed"}, {"_id": 0})
    async for row in cursor:
        try:
            evaluation = PaperEvaluation.model_validate(row)
        except ValidationError as e:
            logger.warning(f"⚠️ Skipping unreadable evaluation {row.get('id')}: {e}")
            continue
        awarded, maximum = evaluation.evaluation_data.summary.total_score

        grade = await db.test_grades.find_one(
            {"test_id": evaluation.test_id, "student_id": evaluation.student_id}, {"_id": 0}
        )
        if grade is not None and grade.get("marks") == awarded:
            continue

        try:
            await upsert_grade(db, evaluation.test_id, evaluation.student_id, awarded, auto_remark(awarded, maximum))
            synced += 1
        except GradebookSyncFailed as e:
            logger.error(f"❌ Grade sync failed: {e}")

    if synced:
        logger.info(f"🔄 Synced {synced} gradebook row(s) from completed evaluations")
    return synced
