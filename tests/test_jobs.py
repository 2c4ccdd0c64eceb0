import asyncio

import pytest

from papercheck.errors import JobNotFound
from papercheck.services.background import worker_loop
from papercheck.services.evaluation import EvaluationService
from papercheck.services.jobs import GradingJobManager

from conftest import StubGrader, grading_result, run


def _service(db, grader):
    return EvaluationService(db, grader, None, retry_base_delay=0)


def test_job_records_progress_and_completes(db, seeded):
    manager = GradingJobManager(db)

    async def scenario():
        job = await manager.start(_service(db, StubGrader()), "T1", "SUBJ", ["S1", "S2"], owner_id="teacher-1")
        task, _ = manager._jobs[job["job_id"]]
        await task
        return await manager.get(job["job_id"])

    job = run(scenario())
    assert job["status"] == "completed"
    assert job["total_students"] == 2
    assert job["processed_students"] == 2
    assert job["successful"] == 1
    assert [r["status"] for r in job["results"]] == ["completed", "skipped"]


def test_cancel_stops_the_batch_after_the_current_student(db, seeded):
    run(db.test_answers.insert_one({
        "student_id": "S2", "test_id": "T1", "subject_id": "SUBJ",
        "answer_sheet_url": seeded.put("s2.pdf", b"%PDF-1.4"),
    }))
    started = None
    release = None

    async def slow_grade(request):
        started.set()
        await release.wait()
        return grading_result()

    grader = StubGrader(slow_grade)
    manager = GradingJobManager(db)

    async def scenario():
        nonlocal started, release
        started, release = asyncio.Event(), asyncio.Event()
        job = await manager.start(_service(db, grader), "T1", "SUBJ", ["S1", "S2"])
        task, _ = manager._jobs[job["job_id"]]
        await started.wait()
        reply = await manager.cancel(job["job_id"])
        release.set()
        await task
        return reply, await manager.get(job["job_id"])

    reply, job = run(scenario())
    assert reply["message"] == "Job cancelled successfully"
    assert job["status"] == "cancelled"
    assert [r["status"] for r in job["results"]] == ["completed", "cancelled"]
    assert len(grader.requests) == 1


def test_cancelling_a_finished_or_unknown_job(db):
    run(db.grading_jobs.insert_one({"job_id": "job_done", "status": "completed"}))
    manager = GradingJobManager(db)

    assert run(manager.cancel("job_done"))["message"] == "Job already completed"
    with pytest.raises(JobNotFound):
        run(manager.get("job_missing"))


def test_worker_loop_runs_grade_sync(db):
    run(db.paper_evaluations.insert_one({
        "id": "E1", "test_id": "T1", "student_id": "S1", "status": "completed",
        "evaluation_data": {
            "status": "completed",
            "answers": [{"score": [4, 5]}],
            "summary": {"totalScore": [4, 5], "percentage": 80},
        },
    }))
    run(worker_loop(db, interval=0, max_passes=2))
    assert run(db.test_grades.find_one({"student_id": "S1"}))["marks"] == 4
