import pytest

from papercheck.errors import EvaluationNotFound, GradebookSyncFailed, InvalidEvaluationState, QuestionNotFound
from papercheck.services import scores
from papercheck.services.gradebook import sync_grades_from_evaluations
from papercheck.services.scores import set_question_score

from conftest import run


def _seed_completed(db, scores_=((8, 10), (5, 5), (3, 5)), evaluation_id="E1", status="completed"):
    answers = [{"question_no": i + 1, "score": list(s), "remarks": ""} for i, s in enumerate(scores_)]
    awarded = sum(s[0] for s in scores_)
    maximum = sum(s[1] for s in scores_)
    data = {"status": status}
    if status == "completed":
        data.update(answers=answers, summary={"totalScore": [awarded, maximum], "percentage": 80})
    run(db.paper_evaluations.insert_one({
        "id": evaluation_id, "test_id": "T1", "student_id": "S1", "subject_id": "SUBJ",
        "status": status, "evaluation_data": data,
    }))


def _stored(db, evaluation_id="E1"):
    return run(db.paper_evaluations.find_one({"id": evaluation_id}))["evaluation_data"]


def test_negative_score_clamps_to_zero(db):
    _seed_completed(db)
    result = run(set_question_score(db, "E1", 0, -5))

    data = _stored(db)
    assert data["answers"][0]["score"] == [0, 10]
    assert data["summary"]["totalScore"] == [8, 20]
    assert data["summary"]["percentage"] == 40
    assert result.grade_synced is True


def test_score_above_max_clamps_to_max(db):
    _seed_completed(db)
    run(set_question_score(db, "E1", 0, 999))
    assert _stored(db)["answers"][0]["score"] == [10, 10]


def test_summary_never_drifts_from_answers(db):
    _seed_completed(db)
    for index, value in [(1, 2), (2, 4.5), (0, 7), (1, 100), (2, -1)]:
        run(set_question_score(db, "E1", index, value))
        data = _stored(db)
        assert data["summary"]["totalScore"][0] == sum(a["score"][0] for a in data["answers"])
        assert data["summary"]["totalScore"][1] == sum(a["score"][1] for a in data["answers"])


def test_only_the_edited_question_changes(db):
    _seed_completed(db)
    run(set_question_score(db, "E1", 1, 1))
    assert [a["score"] for a in _stored(db)["answers"]] == [[8, 10], [1, 5], [3, 5]]


def test_gradebook_follows_manual_edit(db):
    _seed_completed(db)
    run(set_question_score(db, "E1", 2, 5))

    grade = run(db.test_grades.find_one({"test_id": "T1", "student_id": "S1"}))
    assert grade["marks"] == 18
    assert grade["remarks"] == "Updated manually: 18/20"


def test_gradebook_failure_is_a_degraded_success(db, monkeypatch):
    _seed_completed(db)

    async def broken_upsert(*args, **kwargs):
        raise GradebookSyncFailed("test_grades unavailable")

    monkeypatch.setattr(scores, "upsert_grade", broken_upsert)
    result = run(set_question_score(db, "E1", 0, 4))

    assert result.grade_synced is False
    assert result.warning
    assert _stored(db)["answers"][0]["score"] == [4, 10]
    assert run(db.test_grades.find_one({"student_id": "S1"})) is None


def test_edit_rejects_missing_or_unfinished_evaluations(db):
    with pytest.raises(EvaluationNotFound):
        run(set_question_score(db, "nope", 0, 1))

    _seed_completed(db, evaluation_id="E2", status="in_progress")
    with pytest.raises(InvalidEvaluationState):
        run(set_question_score(db, "E2", 0, 1))

    _seed_completed(db, evaluation_id="E3")
    with pytest.raises(QuestionNotFound):
        run(set_question_score(db, "E3", 3, 1))


def test_grade_sync_repairs_stale_rows_once(db):
    _seed_completed(db)
    run(db.test_grades.insert_one({"id": "G1", "test_id": "T1", "student_id": "S1", "marks": 0, "remarks": "stale"}))

    assert run(sync_grades_from_evaluations(db)) == 1
    grade = run(db.test_grades.find_one({"id": "G1"}))
    assert grade["marks"] == 16
    assert grade["remarks"] == "Auto-evaluated: 16/20"

    assert run(sync_grades_from_evaluations(db)) == 0


def test_grade_sync_creates_missing_rows(db):
    _seed_completed(db)
    assert run(sync_grades_from_evaluations(db)) == 1
    assert run(db.test_grades.count_documents({"test_id": "T1", "student_id": "S1"})) == 1
