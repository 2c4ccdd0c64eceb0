"""
Evaluation reset and deletion.

A new answer sheet invalidates whatever was graded from the old one:
the evaluation goes away and the gradebook row is zeroed (kept, not deleted).
"""

from typing import Dict, List, Optional

from papercheck.config import logger
from papercheck.errors import EvaluationNotFound
from papercheck.services.gradebook import RESET_REMARK
from papercheck.models.evaluation import utc_now_iso


async def tests_for_subject(db, subject_id: str) -> List[str]:
    rows = await db.tests.find({"subject_id": subject_id}, {"_id": 0, "id": 1}).to_list(1000)
    return [r["id"] for r in rows if r.get("id")]


async def reset_evaluations(db, student_id: str, subject_id: str, test_id: Optional[str] = None) -> Dict:
    """
    Delete the student's evaluations for one test, or for every test of the
    subject, and zero the paired gradebook rows.

    Runs as a side effect of uploads, so errors are logged and never raised.
    """
    summary = {"student_id": student_id, "test_ids": [], "evaluations_deleted": 0, "grades_reset": 0}
    try:
        test_ids = [test_id] if test_id else await tests_for_subject(db, subject_id)
        summary["test_ids"] = test_ids
        if not test_ids:
            logger.info(f"No tests found for subject {subject_id}; nothing to reset")
            return summary

        scope = {"student_id": student_id, "test_id": {"$in": test_ids}}
        deleted = await db.paper_evaluations.delete_many(scope)
        summary["evaluations_deleted"] = deleted.deleted_count

        updated = await db.test_grades.update_many(
            scope,
            {"$set": {"marks": 0, "remarks": RESET_REMARK, "updated_at": utc_now_iso()}},
        )
        summary["grades_reset"] = updated.modified_count

        logger.info(
            f"♻️ Reset student {student_id}: {deleted.deleted_count} evaluation(s) deleted, "
            f"{updated.modified_count} grade(s) zeroed across {len(test_ids)} test(s)"
        )
    except Exception as e:
        logger.error(f"Error resetting evaluations for student {student_id}: {e}", exc_info=True)
        summary["error"] = str(e)
    return summary


async def delete_evaluation(db, test_id: str, student_id: str) -> Dict:
    """Permanently remove the evaluation for (test, student) and its gradebook row."""
    row = await db.paper_evaluations.find_one({"test_id": test_id, "student_id": student_id}, {"_id": 0, "id": 1})
    if not row:
        raise EvaluationNotFound(f"No evaluation for student {student_id} on test {test_id}")

    await db.paper_evaluations.delete_one({"id": row["id"]})
    grades = await db.test_grades.delete_many({"test_id": test_id, "student_id": student_id})
    logger.info(f"🗑️ Deleted evaluation {row['id']} and {grades.deleted_count} grade row(s)")
    return {"evaluation_id": row["id"], "grades_deleted": grades.deleted_count}
