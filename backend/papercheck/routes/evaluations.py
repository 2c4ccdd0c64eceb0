"""Evaluation records - list, delete, manual score edits."""

from fastapi import APIRouter, Depends, HTTPException

from papercheck.config import logger
from papercheck.deps import get_db
from papercheck.errors import PaperCheckError
from papercheck.models.evaluation import ScoreUpdate
from papercheck.services.reset import delete_evaluation
from papercheck.services.scores import set_question_score
from papercheck.utils.http_errors import to_http_exception
from papercheck.utils.serialization import serialize_doc

router = APIRouter(tags=["evaluations"])


@router.get("/tests/{test_id}/evaluations")
async def list_evaluations(test_id: str, db=Depends(get_db)):
    evaluations = await db.paper_evaluations.find({"test_id": test_id}, {"_id": 0}).to_list(1000)
    grades = await db.test_grades.find({"test_id": test_id}, {"_id": 0}).to_list(1000)
    return {"evaluations": serialize_doc(evaluations), "grades": serialize_doc(grades)}


@router.delete("/tests/{test_id}/students/{student_id}/evaluation")
async def remove_evaluation(test_id: str, student_id: str, db=Depends(get_db)):
    """Permanently delete an evaluation together with its gradebook row."""
    try:
        result = await delete_evaluation(db, test_id, student_id)
        return {"message": "Evaluation deleted", **result}
    except PaperCheckError as e:
        raise to_http_exception(e)


@router.put("/evaluations/{evaluation_id}/answers/{question_index}/score")
async def update_question_score(evaluation_id: str, question_index: int, body: ScoreUpdate, db=Depends(get_db)):
    try:
        result = await set_question_score(db, evaluation_id, question_index, body.score)
        return result.model_dump(by_alias=True)
    except PaperCheckError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Score update failed for evaluation {evaluation_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to save score: {str(e)}")
