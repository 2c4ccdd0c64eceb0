"""
Background batch grading jobs.

Progress lives in the grading_jobs collection; the running asyncio task
and its cancel event live in this process's registry.
"""

import asyncio
import uuid
from typing import Dict, List, Optional, Tuple

from papercheck.config import logger
from papercheck.errors import JobNotFound
from papercheck.models.evaluation import utc_now_iso
from papercheck.services.evaluation import EvaluationService

ACTIVE_STATUSES = ("pending", "processing")


class GradingJobManager:
    def __init__(self, db):
        self.db = db
        self._jobs: Dict[str, Tuple[asyncio.Task, asyncio.Event]] = {}

    async def start(
        self,
        service: EvaluationService,
        test_id: str,
        subject_id: str,
        student_ids: List[str],
        owner_id: Optional[str] = None,
    ) -> Dict:
        job_id = f"job_{uuid.uuid4().hex[:12]}"
        now = utc_now_iso()
        job_record = {
            "job_id": job_id,
            "test_id": test_id,
            "subject_id": subject_id,
            "owner_id": owner_id,
            "status": "pending",
            "total_students": len(student_ids),
            "processed_students": 0,
            "successful": 0,
            "failed": 0,
            "results": [],
            "created_at": now,
            "updated_at": now,
        }
        await self.db.grading_jobs.insert_one(dict(job_record))

        cancel_event = asyncio.Event()
        task = asyncio.create_task(self._run(job_id, service, test_id, subject_id, student_ids, cancel_event))
        self._jobs[job_id] = (task, cancel_event)
        task.add_done_callback(lambda _: self._jobs.pop(job_id, None))
        logger.info(f"=== BATCH JOB {job_id} === {len(student_ids)} students on test {test_id}")
        return job_record

    async def _update(self, job_id: str, fields: Dict) -> None:
        await self.db.grading_jobs.update_one(
            {"job_id": job_id}, {"$set": {**fields, "updated_at": utc_now_iso()}}
        )

    async def _run(self, job_id, service, test_id, subject_id, student_ids, cancel_event) -> None:
        results = []

        async def on_progress(item: Dict) -> None:
            results.append(item)
            await self._update(job_id, {
                "processed_students": len(results),
                "successful": sum(1 for r in results if r["status"] == "completed"),
                "failed": sum(1 for r in results if r["status"] == "failed"),
                "results": results,
            })

        try:
            await self._update(job_id, {"status": "processing"})
            final = await service.evaluate_batch(
                test_id, subject_id, student_ids, cancel_event=cancel_event, on_progress=on_progress
            )
            status = "cancelled" if cancel_event.is_set() else "completed"
            await self._update(job_id, {"status": status, "results": final})
            logger.info(f"Grading job {job_id} {status}")
        except asyncio.CancelledError:
            await self._update(job_id, {"status": "cancelled", "error": "Cancelled by user"})
            raise
        except Exception as e:
            logger.error(f"Grading job {job_id} failed: {e}", exc_info=True)
            await self._update(job_id, {"status": "failed", "error": str(e)})

    async def get(self, job_id: str) -> Dict:
        job = await self.db.grading_jobs.find_one({"job_id": job_id}, {"_id": 0})
        if not job:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    async def cancel(self, job_id: str) -> Dict:
        """Signal the batch to stop; the student in flight is cut off at its next backoff."""
        job = await self.get(job_id)
        if job["status"] not in ACTIVE_STATUSES:
            return {"message": f"Job already {job['status']}", "job_id": job_id}

        running = self._jobs.get(job_id)
        if running is not None:
            running[1].set()
        await self._update(job_id, {"status": "cancelled", "error": "Cancelled by user"})
        logger.info(f"Grading job {job_id} cancelled")
        return {"message": "Job cancelled successfully", "job_id": job_id}

    async def shutdown(self) -> None:
        running = list(self._jobs.values())
        for task, event in running:
            event.set()
            task.cancel()
        await asyncio.gather(*(task for task, _ in running), return_exceptions=True)
