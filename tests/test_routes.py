import pytest
from fastapi.testclient import TestClient

from main import app
from papercheck import deps
from papercheck.errors import RetryableGradingError
from papercheck.services.jobs import GradingJobManager

from conftest import ChatRecorder, StubGrader, make_pdf, run
from papercheck.services.extraction import ExtractionClient


@pytest.fixture
def grader():
    return StubGrader()


@pytest.fixture
def client(db, seeded, grader):
    app.dependency_overrides[deps.get_db] = lambda: db
    app.dependency_overrides[deps.get_store] = lambda: seeded
    app.dependency_overrides[deps.get_grading_function] = lambda: grader
    app.dependency_overrides[deps.get_local_grading_function] = lambda: grader
    app.dependency_overrides[deps.get_extraction_client] = lambda: ExtractionClient(chat_factory=ChatRecorder())
    app.dependency_overrides[deps.get_job_manager] = lambda: GradingJobManager(db)
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health_and_version(client):
    assert client.get("/health").json()["status"] == "healthy"
    assert "grading_backend" in client.get("/api/version").json()


def test_upload_then_evaluate_then_edit_score(client, db):
    response = client.post(
        "/api/tests/T1/students/S1/answer-sheet",
        files={"file": ("scan.pdf", make_pdf(2), "application/pdf")},
        headers={"X-User-Id": "teacher-1"},
    )
    assert response.status_code == 200
    assert response.json()["subject_id"] == "SUBJ"

    response = client.post("/api/tests/T1/students/S1/evaluate")
    assert response.status_code == 200
    evaluation = response.json()
    assert evaluation["status"] == "completed"
    assert evaluation["evaluation_data"]["summary"]["totalScore"] == [13, 15]

    response = client.put(f"/api/evaluations/{evaluation['id']}/answers/0/score", json={"score": 999})
    assert response.status_code == 200
    body = response.json()
    assert body["grade_synced"] is True
    assert body["evaluation"]["evaluation_data"]["answers"][0]["score"] == [10, 10]

    listing = client.get("/api/tests/T1/evaluations").json()
    assert len(listing["evaluations"]) == 1
    assert listing["grades"][0]["marks"] == 15


def test_evaluate_without_answer_sheet_is_404(client):
    response = client.post("/api/tests/T1/students/S2/evaluate")
    assert response.status_code == 404
    assert "No answer sheet" in response.json()["detail"]


def test_exhausted_retries_surface_as_bad_gateway(client, grader, monkeypatch):
    monkeypatch.setattr(deps, "EVALUATION_RETRY_BASE_DELAY", 0)
    grader.outcomes = [RetryableGradingError("Timeout while downloading", kind="download_timeout")]

    response = client.post("/api/tests/T1/students/S1/evaluate")

    assert response.status_code == 502
    assert len(grader.requests) == 3


def test_score_edit_on_unknown_evaluation_is_404(client):
    assert client.put("/api/evaluations/missing/answers/0/score", json={"score": 1}).status_code == 404


def test_delete_evaluation_route(client):
    evaluation = client.post("/api/tests/T1/students/S1/evaluate").json()

    response = client.delete("/api/tests/T1/students/S1/evaluation")
    assert response.status_code == 200
    assert response.json()["evaluation_id"] == evaluation["id"]
    assert client.delete("/api/tests/T1/students/S1/evaluation").status_code == 404


def test_document_routes(client, seeded):
    response = client.post(
        "/api/tests/T2/documents",
        files={"file": ("key.txt", b"Q1: 42", "text/plain")},
        data={"role": "answerKey", "topic": "Unit 2 key"},
        headers={"X-User-Id": "teacher-1"},
    )
    assert response.status_code == 200
    document = response.json()

    extracted = client.post(f"/api/documents/{document['id']}/extract-text").json()
    assert extracted["ocr_text"] == "Q1: 42"

    edited = client.put(f"/api/documents/{document['id']}/ocr-text", json={"text": "Q1: forty-two"}).json()
    assert edited["ocr_text"] == "Q1: forty-two"

    assert client.delete(f"/api/documents/{document['id']}", headers={"X-User-Id": "teacher-2"}).status_code == 403
    assert client.delete(f"/api/documents/{document['id']}", headers={"X-User-Id": "teacher-1"}).status_code == 200


def test_files_route_serves_stored_blobs(client, seeded):
    seeded.put("answer_sheets_zip/x.zip", b"zipbytes", "application/zip")

    response = client.get("/api/files/answer_sheets_zip/x.zip")
    assert response.status_code == 200
    assert response.content == b"zipbytes"
    assert response.headers["content-type"] == "application/zip"
    assert client.get("/api/files/missing.pdf").status_code == 404


def test_evaluate_paper_function_reports_retryable_code(client, grader):
    grader.outcomes = [RetryableGradingError("Invalid image URL", kind="invalid_image_url")]
    body = {
        "questionPaper": {"url": "http://x/qp.pdf", "topic": "qp"},
        "answerKey": {"url": "http://x/ak.pdf", "topic": "ak"},
        "studentAnswer": {"url": "http://x/sheet.pdf"},
        "studentInfo": {"id": "S1", "name": "Asha"},
        "testId": "T1",
    }

    response = client.post("/api/functions/evaluate-paper", json=body)

    assert response.status_code == 500
    assert response.json() == {"error": "Invalid image URL", "code": "invalid_image_url"}


def test_extract_text_function_returns_pdf_sentinel(client):
    body = {"fileUrl": "http://files.test/api/files/paper.pdf", "fileName": "paper.pdf", "fileType": "questionPaper"}
    assert client.post("/api/functions/extract-text", json=body).json() == {"is_pdf": True}


def test_grading_job_routes(client, db):
    run(db.grading_jobs.insert_one({"job_id": "job_1", "status": "completed", "owner_id": "teacher-1"}))

    assert client.get("/api/grading-jobs/job_1").json()["status"] == "completed"
    assert client.get("/api/grading-jobs/job_x").status_code == 404
    assert client.post("/api/grading-jobs/job_1/cancel", headers={"X-User-Id": "teacher-2"}).status_code == 403
    reply = client.post("/api/grading-jobs/job_1/cancel", headers={"X-User-Id": "teacher-1"}).json()
    assert reply["message"] == "Job already completed"
