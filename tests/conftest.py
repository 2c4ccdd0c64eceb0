import asyncio
import io

import fitz
import pytest
from mongomock_motor import AsyncMongoMockClient
from PIL import Image

from papercheck.errors import DownloadFailed, StoreError
from papercheck.models.grading import GradingResult
from papercheck.utils.file_utils import strip_query

FILES_BASE = "http://files.test/api/files"


def run(coro):
    return asyncio.run(coro)


def make_pdf(pages=1, label="Page"):
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=595, height=842)
        page.insert_text((72, 100), f"{label} {i + 1}", fontsize=28)
    data = doc.tobytes()
    doc.close()
    return data


def make_image(width=400, height=300, color=(200, 30, 30), mode="RGB", fmt="PNG"):
    img = Image.new(mode, (width, height), color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def grading_result(scores=((8, 10), (5, 5)), text="Q1: photosynthesis\nQ2: 42"):
    answers = [
        {"question_no": i + 1, "question": f"Question {i + 1}", "answer": "...", "score": list(s),
         "remarks": "ok", "confidence": 0.9}
        for i, s in enumerate(scores)
    ]
    awarded = sum(s[0] for s in scores)
    maximum = sum(s[1] for s in scores)
    return GradingResult.model_validate({
        "answers": answers,
        "summary": {"totalScore": [awarded, maximum], "percentage": round(100 * awarded / maximum)},
        "text": text,
    })


class FakeStore:
    """In-memory FileStore; the first `fail_times` uploads raise StoreError."""

    def __init__(self, fail_times=0):
        self.files = {}
        self.fail_times = fail_times
        self.upload_calls = 0

    async def upload(self, name, data, content_type):
        self.upload_calls += 1
        if self.upload_calls <= self.fail_times:
            raise StoreError("store unavailable")
        self.files[name] = (data, content_type)
        return name

    def get_public_url(self, name):
        return f"{FILES_BASE}/{name}"

    async def read(self, name):
        return self.files.get(name)

    async def list(self):
        return [{"name": n, "url": self.get_public_url(n), "createdAt": None} for n in self.files]

    async def delete(self, name):
        self.files.pop(name, None)

    async def copy(self, src, dst):
        self.files[dst] = self.files[src]

    def put(self, name, data, content_type="application/octet-stream"):
        self.files[name] = (data, content_type)
        return self.get_public_url(name)


class StubGrader:
    """
    Replays `outcomes` in order (the last one repeats). An outcome is a
    GradingResult to return, an exception to raise, or a callable taking
    the request.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [grading_result()]
        self.requests = []

    async def grade(self, request):
        self.requests.append(request)
        index = min(len(self.requests), len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if callable(outcome) and not isinstance(outcome, GradingResult):
            outcome = outcome(request)
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeChat:
    def __init__(self, reply="Q1: transcribed", error=None, delay=0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.messages = []

    async def send_message(self, message):
        self.messages.append(message)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


class ChatRecorder:
    """chat_factory for ExtractionClient that remembers every chat and system prompt."""

    def __init__(self, **chat_kwargs):
        self.chat_kwargs = chat_kwargs
        self.chats = []
        self.system_prompts = []

    def __call__(self, system_message=""):
        self.system_prompts.append(system_message)
        chat = FakeChat(**self.chat_kwargs)
        self.chats.append(chat)
        return chat


@pytest.fixture
def db():
    return AsyncMongoMockClient()["papercheck_test"]


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def served(monkeypatch, store):
    """Route every download_bytes call to the fake store's contents."""

    async def fake_download(url, timeout=None):
        name = strip_query(url)
        if name.startswith(FILES_BASE + "/"):
            name = name[len(FILES_BASE) + 1:]
        found = store.files.get(name)
        if found is None:
            raise DownloadFailed(f"Failed to download {url}: HTTP 404")
        return found[0]

    from papercheck.services import extraction, grading, rasterizer
    for module in (extraction, grading, rasterizer):
        monkeypatch.setattr(module, "download_bytes", fake_download)
    return store


@pytest.fixture
def seeded(db, served):
    """Subject SUBJ with tests T1/T2, a question paper and answer key on T1, and S1's PDF answer sheet."""
    store = served
    qp_url = store.put("SUBJ_Biology_questionPaper_1.txt", b"Q1: Explain photosynthesis (10)\nQ2: 6*7 (5)", "text/plain")
    ak_url = store.put("SUBJ_Biology_answerKey_1.txt", b"Q1: light -> sugar\nQ2: 42", "text/plain")
    sheet_url = store.put("SUBJ_S1_answerSheet_1.pdf", make_pdf(2, "Answer"), "application/pdf")

    async def seed():
        await db.subjects.insert_one({"id": "SUBJ", "name": "Biology"})
        await db.tests.insert_many([
            {"id": "T1", "subject_id": "SUBJ", "name": "Unit 1"},
            {"id": "T2", "subject_id": "SUBJ", "name": "Unit 2"},
        ])
        await db.students.insert_one({"id": "S1", "name": "Asha", "roll_number": "12", "class": "10A"})
        await db.documents.insert_many([
            {"id": "qp1", "url": qp_url, "role": "questionPaper", "name": "qp.txt", "topic": "Unit 1 paper",
             "subject_id": "SUBJ", "test_id": "T1", "owner_id": "teacher-1", "created_at": "2024-01-01T00:00:00+00:00"},
            {"id": "ak1", "url": ak_url, "role": "answerKey", "name": "ak.txt", "topic": "Unit 1 key",
             "subject_id": "SUBJ", "test_id": "T1", "owner_id": "teacher-1", "created_at": "2024-01-01T00:00:00+00:00"},
        ])
        await db.test_answers.insert_one({
            "student_id": "S1", "test_id": "T1", "subject_id": "SUBJ", "answer_sheet_url": sheet_url,
        })

    run(seed())
    return store
