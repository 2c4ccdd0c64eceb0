"""Manual score edits on a completed evaluation."""

from papercheck.config import logger
from papercheck.errors import (
    EvaluationNotFound, GradebookSyncFailed, InvalidEvaluationState, QuestionNotFound,
)
from papercheck.models.evaluation import EvaluationSummary, PaperEvaluation, ScoreUpdateResult, utc_now_iso
from papercheck.services.gradebook import manual_remark, upsert_grade


def clamp_score(value: float, maximum: float) -> float:
    return min(max(value, 0), maximum)


async def set_question_score(db, evaluation_id: str, question_index: int, new_score: float) -> ScoreUpdateResult:
    """
    Overwrite the awarded score of one question and recompute the summary
    over every answer.

    Out-of-range scores are clamped to [0, max]. The evaluation is saved
    before the gradebook; if the gradebook write fails the result carries
    grade_synced=False instead of raising.
    """
    row = await db.paper_evaluations.find_one({"id": evaluation_id}, {"_id": 0})
    if not row:
        raise EvaluationNotFound(f"Evaluation {evaluation_id} not found")

    evaluation = PaperEvaluation.model_validate(row)
    if evaluation.status != "completed":
        raise InvalidEvaluationState(
            f"Evaluation {evaluation_id} is {evaluation.status}; only completed evaluations can be edited"
        )

    data = evaluation.evaluation_data
    if not 0 <= question_index < len(data.answers):
        raise QuestionNotFound(f"Evaluation {evaluation_id} has no question at index {question_index}")

    answer = data.answers[question_index]
    maximum = answer.score[1]
    clamped = clamp_score(new_score, maximum)
    if clamped != new_score:
        logger.info(f"Score {new_score} for question {question_index} clamped to {clamped} (max {maximum})")
    answer.score = [clamped, maximum]
    data.summary = EvaluationSummary.from_answers(data.answers)

    # A failure here propagates before the gradebook is touched
    await db.paper_evaluations.update_one(
        {"id": evaluation_id},
        {"$set": {"evaluation_data": data.model_dump(by_alias=True), "updated_at": utc_now_iso()}},
    )

    awarded, total = data.summary.total_score
    try:
        await upsert_grade(db, evaluation.test_id, evaluation.student_id, awarded, manual_remark(awarded, total))
    except GradebookSyncFailed as e:
        logger.error(f"❌ {e}")
        return ScoreUpdateResult(
            evaluation=evaluation,
            grade_synced=False,
            warning="Score saved, but the gradebook could not be updated yet",
        )

    logger.info(f"✏️ Evaluation {evaluation_id} question {question_index} set to {clamped}; total {awarded}/{total}")
    return ScoreUpdateResult(evaluation=evaluation)
