"""
Evaluation orchestrator.

evaluate() drives one (test, student) pair through
in_progress -> completed | failed, re-entering in_progress on each
automatic retry of a transient grading failure.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from papercheck.config import logger, EVALUATION_RETRY_BASE_DELAY
from papercheck.errors import (
    EvaluationCancelled, EvaluationReset, GradebookSyncFailed, MissingTestDocuments, NoAnswerSheet,
    PaperCheckError, RetryableGradingError,
)
from papercheck.models.document import Document
from papercheck.models.evaluation import (
    CompletedData, FailedData, InProgressData, PaperEvaluation, TestAnswer, utc_now_iso,
)
from papercheck.models.grading import GradingRequest, GradingResult, PaperRef, StudentAnswerRef, StudentInfo
from papercheck.services.bundles import BundlePackager
from papercheck.services.gradebook import auto_remark, upsert_grade
from papercheck.services.grading import Grader
from papercheck.utils.file_utils import add_cache_buster, detect_document_kind, strip_query

MAX_RETRIES = 2


@dataclass(frozen=True)
class RetryContext:
    """Automatic retries already spent on one student's grading call."""
    attempt: int = 0
    max_retries: int = MAX_RETRIES

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_retries

    def next(self) -> "RetryContext":
        return replace(self, attempt=self.attempt + 1)

    def backoff_seconds(self, base_delay: float) -> float:
        # attempt 1 -> base, attempt 2 -> 2 * base
        return base_delay * (2 ** (self.attempt - 1))


@dataclass
class EvaluationOutcome:
    evaluation: PaperEvaluation
    retry: RetryContext


class EvaluationService:
    def __init__(
        self,
        db,
        grader: Grader,
        packager: Optional[BundlePackager] = None,
        retry_base_delay: float = EVALUATION_RETRY_BASE_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.grader = grader
        self.packager = packager
        self.retry_base_delay = retry_base_delay
        self.clock = clock

    # ============== INPUT RESOLUTION ==============

    async def _latest_document(self, test_id: str, role: str) -> Optional[Document]:
        row = await self.db.documents.find_one(
            {"test_id": test_id, "role": role}, {"_id": 0}, sort=[("created_at", -1)]
        )
        return Document.model_validate(row) if row else None

    async def resolve_test_documents(self, test_id: str) -> Tuple[Document, Document]:
        question_paper = await self._latest_document(test_id, "questionPaper")
        answer_key = await self._latest_document(test_id, "answerKey")
        missing = [
            label for label, doc in (("question paper", question_paper), ("answer key", answer_key))
            if doc is None
        ]
        if missing:
            raise MissingTestDocuments(f"Test {test_id} has no {' or '.join(missing)}")
        return question_paper, answer_key

    async def resolve_answer_sheet(self, student_id: str, subject_id: str, test_id: str) -> TestAnswer:
        row = await self.db.test_answers.find_one(
            {"student_id": student_id, "subject_id": subject_id, "test_id": test_id}, {"_id": 0}
        )
        if not row or not row.get("answer_sheet_url"):
            raise NoAnswerSheet(f"No answer sheet uploaded for student {student_id} on test {test_id}")
        return TestAnswer.model_validate(row)

    async def student_info(self, student_id: str, subject_id: str) -> StudentInfo:
        student = await self.db.students.find_one({"id": student_id}, {"_id": 0}) or {}
        subject = await self.db.subjects.find_one({"id": subject_id}, {"_id": 0}) or {}
        return StudentInfo(
            id=student_id,
            name=student.get("name") or "",
            roll_number=str(student.get("roll_number") or ""),
            class_name=str(student.get("class") or ""),
            subject=subject.get("name") or "",
        )

    # ============== STATE TRANSITIONS ==============

    async def start_evaluation(self, test_id: str, student_id: str, subject_id: str) -> PaperEvaluation:
        """Lookup-or-create the single row for (test, student), leaving it in_progress."""
        now = utc_now_iso()
        row = await self.db.paper_evaluations.find_one_and_update(
            {"test_id": test_id, "student_id": student_id},
            {
                "$set": {
                    "subject_id": subject_id,
                    "status": "in_progress",
                    "evaluation_data": InProgressData().model_dump(),
                    "updated_at": now,
                },
                "$setOnInsert": {"id": str(uuid.uuid4()), "created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0},
        )
        return PaperEvaluation.model_validate(row)

    async def _set_state(self, evaluation: PaperEvaluation, status: str, data, recreate: bool = False) -> Optional[Dict]:
        """
        Write status and payload onto the (test, student) row. Returns the
        updated row, or None when the row is gone (an answer-sheet re-upload
        deletes it). With recreate=True a missing row is inserted again.
        """
        update = {"$set": {
            "subject_id": evaluation.subject_id,
            "status": status,
            "evaluation_data": data.model_dump(by_alias=True),
            "updated_at": utc_now_iso(),
        }}
        if recreate:
            update["$setOnInsert"] = {"id": evaluation.id, "created_at": utc_now_iso()}
        return await self.db.paper_evaluations.find_one_and_update(
            {"test_id": evaluation.test_id, "student_id": evaluation.student_id},
            update,
            upsert=recreate,
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0},
        )

    async def _mark_retrying(self, evaluation: PaperEvaluation, error: Exception, retry: RetryContext) -> None:
        # Re-creates the row if a re-upload deleted it while this retry was pending
        data = InProgressData(error=str(error), retry_attempt=retry.attempt, last_error_timestamp=utc_now_iso())
        try:
            await self._set_state(evaluation, "in_progress", data, recreate=True)
        except PyMongoError as e:
            logger.error(f"❌ Could not record retry state for evaluation {evaluation.id}: {e}")

    async def _mark_failed(self, evaluation: PaperEvaluation, error: str, retry: RetryContext) -> None:
        try:
            await self._set_state(evaluation, "failed", FailedData(error=error, retries_attempted=retry.attempt))
        except PyMongoError as e:
            logger.error(f"❌ Could not mark evaluation {evaluation.id} failed: {e}")

    async def _complete(self, evaluation: PaperEvaluation, result: GradingResult) -> PaperEvaluation:
        data = CompletedData.model_validate({**result.model_dump(by_alias=True), "status": "completed"})
        row = await self._set_state(evaluation, "completed", data)
        if row is None:
            # Row deleted by a re-upload; the gradebook keeps its reset marks
            raise EvaluationReset(
                f"Evaluation for student {evaluation.student_id} on test {evaluation.test_id} "
                f"was reset by an answer sheet upload while grading; result discarded"
            )

        awarded, maximum = data.summary.total_score
        try:
            await upsert_grade(self.db, evaluation.test_id, evaluation.student_id, awarded, auto_remark(awarded, maximum))
        except GradebookSyncFailed as e:
            # Evaluation stays completed; the periodic grade sync repairs the row
            logger.error(f"❌ {e}")

        if result.text:
            try:
                await self.db.test_answers.update_one(
                    {"student_id": evaluation.student_id, "test_id": evaluation.test_id},
                    {"$set": {"text_content": result.text}},
                )
            except PyMongoError as e:
                logger.warning(f"⚠️ Could not save extracted answer text: {e}")

        return PaperEvaluation.model_validate(row)

    # ============== GRADING CALL ==============

    async def ensure_bundle(self, answer: TestAnswer) -> Optional[str]:
        """Bundle URL for a PDF answer sheet, creating it on first use. Never raises."""
        if answer.zip_url:
            return answer.zip_url
        if self.packager is None:
            return None
        if detect_document_kind(None, strip_query(answer.answer_sheet_url)) != "pdf":
            return None

        try:
            zip_url = await self.packager.bundle_document(
                answer.answer_sheet_url, f"{answer.student_id}_{answer.test_id}", "answer_sheets", kind="pdf"
            )
            await self.db.test_answers.update_one(
                {"student_id": answer.student_id, "subject_id": answer.subject_id, "test_id": answer.test_id},
                {"$set": {"zip_url": zip_url}},
            )
            return zip_url
        except (PaperCheckError, PyMongoError) as e:
            logger.warning(f"⚠️ Answer sheet bundle unavailable, grading from the original file: {e}")
            return None

    def build_request(
        self,
        question_paper: Document,
        answer_key: Document,
        answer: TestAnswer,
        zip_url: Optional[str],
        info: StudentInfo,
        retry: RetryContext,
    ) -> GradingRequest:
        stamp = int(self.clock() * 1000)
        return GradingRequest(
            question_paper=PaperRef(url=add_cache_buster(question_paper.url, stamp), topic=question_paper.topic or question_paper.name),
            answer_key=PaperRef(url=add_cache_buster(answer_key.url, stamp), topic=answer_key.topic or answer_key.name),
            student_answer=StudentAnswerRef(
                url=add_cache_buster(answer.answer_sheet_url, stamp),
                zip_url=add_cache_buster(zip_url, stamp) if zip_url else None,
            ),
            student_info=info,
            test_id=answer.test_id,
            retry_attempt=retry.attempt,
        )

    async def _backoff(self, seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise EvaluationCancelled("Evaluation cancelled during retry backoff")

    async def evaluate(
        self,
        student_id: str,
        test_id: str,
        subject_id: str,
        retry: Optional[RetryContext] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> EvaluationOutcome:
        """
        Grade one student's answer sheet for a test.

        Raises NoAnswerSheet / MissingTestDocuments before any evaluation row
        is touched. Any other failure leaves the row failed and is re-raised.
        """
        retry = retry or RetryContext()
        question_paper, answer_key = await self.resolve_test_documents(test_id)
        answer = await self.resolve_answer_sheet(student_id, subject_id, test_id)
        info = await self.student_info(student_id, subject_id)

        evaluation = await self.start_evaluation(test_id, student_id, subject_id)
        logger.info(f"🚀 Evaluating student {student_id} on test {test_id} (evaluation {evaluation.id})")
        zip_url = await self.ensure_bundle(answer)

        while True:
            request = self.build_request(question_paper, answer_key, answer, zip_url, info, retry)
            try:
                result = await self.grader.grade(request)
                break
            except RetryableGradingError as e:
                if retry.exhausted:
                    logger.error(f"❌ Grading failed for student {student_id} after {retry.attempt} retries: {e}")
                    await self._mark_failed(evaluation, str(e), retry)
                    raise

                retry = retry.next()
                delay = retry.backoff_seconds(self.retry_base_delay)
                logger.warning(
                    f"🔁 Retryable grading error ({e.kind}) for student {student_id}, "
                    f"retrying in {delay:g}s (attempt {retry.attempt}/{retry.max_retries})"
                )
                await self._mark_retrying(evaluation, e, retry)
                try:
                    await self._backoff(delay, cancel_event)
                except EvaluationCancelled as cancelled:
                    await self._mark_failed(evaluation, str(cancelled), retry)
                    raise

                # The answer sheet may have been re-uploaded or bundled meanwhile
                try:
                    answer = await self.resolve_answer_sheet(student_id, subject_id, test_id)
                except NoAnswerSheet as gone:
                    await self._mark_failed(evaluation, str(gone), retry)
                    raise
                zip_url = await self.ensure_bundle(answer)
            except asyncio.CancelledError:
                await self._mark_failed(evaluation, "Evaluation cancelled", retry)
                raise
            except Exception as e:
                logger.error(f"❌ Grading failed for student {student_id}: {e}", exc_info=True)
                await self._mark_failed(evaluation, str(e), retry)
                raise

        completed = await self._complete(evaluation, result)
        awarded, maximum = completed.evaluation_data.summary.total_score
        logger.info(f"✅ Student {student_id} graded: {awarded}/{maximum}")
        return EvaluationOutcome(evaluation=completed, retry=RetryContext(max_retries=retry.max_retries))

    # ============== BATCH ==============

    async def evaluate_batch(
        self,
        test_id: str,
        subject_id: str,
        student_ids: List[str],
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[Callable[[Dict], object]] = None,
    ) -> List[Dict]:
        """
        Evaluate students one after another, each with a fresh RetryContext.
        A failure is recorded for that student and the batch moves on; a set
        cancel_event stops it.
        """
        results = []

        for idx, student_id in enumerate(student_ids):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"⏹️ Batch for test {test_id} cancelled before student {idx + 1}/{len(student_ids)}")
                results.extend({"student_id": s, "status": "cancelled"} for s in student_ids[idx:])
                break

            item = {"student_id": student_id}
            try:
                outcome = await self.evaluate(student_id, test_id, subject_id, cancel_event=cancel_event)
                awarded, maximum = outcome.evaluation.evaluation_data.summary.total_score
                item.update(status="completed", evaluation_id=outcome.evaluation.id, marks=awarded, max_marks=maximum)
            except NoAnswerSheet as e:
                item.update(status="skipped", error=str(e))
            except EvaluationCancelled as e:
                item.update(status="cancelled", error=str(e))
            except MissingTestDocuments:
                raise
            except PaperCheckError as e:
                item.update(status="failed", error=str(e))
            except Exception as e:
                logger.error(f"Batch evaluation error for student {student_id}: {e}", exc_info=True)
                item.update(status="failed", error=str(e))

            results.append(item)
            if on_progress is not None:
                maybe = on_progress(item)
                if asyncio.iscoroutine(maybe):
                    await maybe

        done = sum(1 for r in results if r["status"] == "completed")
        logger.info(f"=== BATCH EVALUATION END === test {test_id}: {done}/{len(student_ids)} completed")
        return results
