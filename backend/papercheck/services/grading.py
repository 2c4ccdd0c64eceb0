"""
Grading function - turns (question paper, answer key, answer sheet) into
per-question scores.

Two implementations share the Grader interface:
  - RemoteGradingClient POSTs the request to a deployed grading function.
  - LocalGradingFunction runs OCR and the Gemini grader in-process.

Both report transient problems as RetryableGradingError (tagged with a
kind) and everything else as FatalGradingError.
"""

import json
import re
import uuid
from typing import Callable, Optional, Protocol

import httpx
from pydantic import ValidationError

from papercheck.config import (
    logger, get_llm_api_key, GEMINI_MODEL, GRADING_BACKEND,
    GRADING_FUNCTION_URL, GRADING_TIMEOUT_SECONDS,
)
from papercheck.errors import (
    DownloadFailed, DownloadTimeout, EmptyBundle, ExtractionFailed,
    FatalGradingError, RasterizationFailed, RetryableGradingError, UnsupportedFormat,
)
from papercheck.models.evaluation import EvaluationSummary
from papercheck.models.grading import GradingRequest, GradingResult
from papercheck.services.bundles import unpack_bundle
from papercheck.services.extraction import ExtractionClient, ai_call_with_timeout
from papercheck.services.llm import LlmChat, UserMessage
from papercheck.services.rasterizer import rasterize
from papercheck.utils.file_utils import detect_document_kind, download_bytes, strip_query


class Grader(Protocol):
    async def grade(self, request: GradingRequest) -> GradingResult: ...


def _parse_result(payload, text: Optional[str] = None) -> GradingResult:
    if not isinstance(payload, dict):
        raise FatalGradingError("Malformed grading response: expected a JSON object")
    payload = {"summary": {"totalScore": [0, 0]}, **payload}
    if text is not None:
        payload["text"] = text
    try:
        result = GradingResult.model_validate(payload)
    except ValidationError as e:
        raise FatalGradingError(f"Malformed grading response: {e.errors()[0].get('msg', e)}") from e
    # Totals are always derived from the per-question scores
    result.summary = EvaluationSummary.from_answers(result.answers)
    return result


# ============== REMOTE ==============

class RemoteGradingClient:
    """Invokes a grading function deployed behind HTTP."""

    def __init__(self, url: str = GRADING_FUNCTION_URL, timeout: float = GRADING_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        if not url:
            raise FatalGradingError("GRADING_FUNCTION_URL is not configured")
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def grade(self, request: GradingRequest) -> GradingResult:
        body = request.model_dump(by_alias=True)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=body)
        except httpx.TimeoutException as e:
            raise RetryableGradingError(
                f"Timeout while waiting for grading function after {self.timeout}s",
                kind=RetryableGradingError.DOWNLOAD_TIMEOUT,
            ) from e
        except httpx.HTTPError as e:
            raise FatalGradingError(f"Grading function unreachable: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        error = payload.get("error") if isinstance(payload, dict) else None
        if response.status_code >= 400 or error:
            message = error or f"Grading function returned HTTP {response.status_code}"
            code = payload.get("code") if isinstance(payload, dict) else None
            if code in RetryableGradingError.KINDS:
                raise RetryableGradingError(message, kind=code)
            raise FatalGradingError(message)

        return _parse_result(payload)


# ============== LOCAL ==============

EVALUATOR_SYSTEM_PROMPT = """You are an AI evaluator responsible for grading a student's answer sheet.
The user will provide you with the question paper, the answer key, and the student's answer sheet.
Analyse the question paper to understand the questions and their marks.
Analyse the answer key to understand the correct answers and valuation criteria.
Assess the answers generously. Award 0 marks for completely incorrect or unattempted answers.
Your task is to grade the answer sheet and return it in a JSON format."""

EVALUATOR_USER_PROMPT = """Question Paper ({qp_topic}):
{qp_text}

Answer Key ({ak_topic}):
{ak_text}

Student Answer Sheet:
{student_text}

Provide the response as a JSON object that contains:

student_name: "{name}"
roll_no: "{roll_number}"
class: "{class_name}"
subject: "{subject}"

answers: an array of objects containing the following fields:
- question_no: the question number
- question: the question content
- answer: the student's answer
- score: an array containing [assigned_score, total_score]
- remarks: any remarks or comments regarding the answer
- confidence: a number between 0 and 1 indicating confidence in the grading

Return ONLY the JSON object without any additional text or markdown formatting."""


def create_grading_chat(system_message: str = EVALUATOR_SYSTEM_PROMPT) -> LlmChat:
    api_key = get_llm_api_key()
    if not api_key:
        raise FatalGradingError("AI grading not configured (missing API key)")
    return LlmChat(
        api_key=api_key,
        session_id=f"grade_{uuid.uuid4().hex[:8]}",
        system_message=system_message,
    ).with_model("gemini", GEMINI_MODEL).with_params(temperature=0.2, response_mime_type="application/json")


def parse_grading_json(resp_text: str) -> dict:
    """Model output to a dict: direct parse, then fenced block, then first {...} span."""
    resp_text = (resp_text or "").strip()
    try:
        return json.loads(resp_text)
    except json.JSONDecodeError:
        pass

    if resp_text.startswith("```"):
        inner = resp_text.split("```")[1]
        if inner.startswith("json"):
            inner = inner[4:]
        try:
            return json.loads(inner.strip())
        except json.JSONDecodeError:
            pass

    json_match = re.search(r"\{.*\}", resp_text, re.DOTALL)
    if json_match:
        try:
            return json.loads(json_match.group())
        except json.JSONDecodeError:
            pass

    raise FatalGradingError(f"Failed to parse evaluation results: {resp_text[:200]}")


class LocalGradingFunction:
    """
    In-process grading: OCR each document, then ask the model for a
    per-question JSON grading.
    """

    def __init__(
        self,
        extraction_client: Optional[ExtractionClient] = None,
        chat_factory: Callable[[], object] = create_grading_chat,
        timeout: float = GRADING_TIMEOUT_SECONDS,
    ):
        self.extraction_client = extraction_client or ExtractionClient()
        self.chat_factory = chat_factory
        self.timeout = timeout

    async def _fetch(self, url: str) -> bytes:
        try:
            return await download_bytes(url)
        except DownloadTimeout as e:
            raise RetryableGradingError(str(e), kind=RetryableGradingError.DOWNLOAD_TIMEOUT) from e
        except DownloadFailed as e:
            raise RetryableGradingError(str(e), kind=RetryableGradingError.DOWNLOAD_FAILED) from e

    async def _ocr(self, pages, role: str) -> str:
        try:
            return await self.extraction_client.extract(pages, role)
        except ExtractionFailed as e:
            raise RetryableGradingError(str(e), kind=RetryableGradingError.EXTRACTION_FAILED) from e

    async def document_text(self, url: str, role: str) -> str:
        """Text of a PDF, image or plain-text document at url."""
        data = await self._fetch(url)
        kind = detect_document_kind(data, strip_query(url))
        if kind == "text":
            return data.decode("utf-8", errors="replace")
        try:
            pages = await rasterize(data, kind)
        except UnsupportedFormat as e:
            raise RetryableGradingError(
                f"Invalid image URL {strip_query(url)}: {e}",
                kind=RetryableGradingError.INVALID_IMAGE_URL,
            ) from e
        except RasterizationFailed as e:
            raise FatalGradingError(str(e)) from e
        return await self._ocr(pages, role)

    async def bundle_text(self, zip_url: str) -> str:
        data = await self._fetch(zip_url)
        try:
            images = unpack_bundle(data)
        except (UnsupportedFormat, EmptyBundle) as e:
            raise RetryableGradingError(
                f"Invalid page bundle {strip_query(zip_url)}: {e}",
                kind=RetryableGradingError.INVALID_IMAGE_URL,
            ) from e
        return await self._ocr(images, "answerSheet")

    async def grade(self, request: GradingRequest) -> GradingResult:
        info = request.student_info
        logger.info(f"📝 Grading answer sheet for student {info.name or info.id} (test {request.test_id})")

        qp_text = await self.document_text(request.question_paper.url, "questionPaper")
        ak_text = await self.document_text(request.answer_key.url, "answerKey")
        if request.student_answer.zip_url:
            student_text = await self.bundle_text(request.student_answer.zip_url)
        else:
            student_text = await self.document_text(request.student_answer.url, "answerSheet")

        prompt = EVALUATOR_USER_PROMPT.format(
            qp_topic=request.question_paper.topic or "question paper",
            qp_text=qp_text,
            ak_topic=request.answer_key.topic or "answer key",
            ak_text=ak_text,
            student_text=student_text,
            name=info.name or "Unknown",
            roll_number=info.roll_number or "Unknown",
            class_name=info.class_name or "Unknown",
            subject=info.subject or "Unknown",
        )
        if request.retry_attempt:
            prompt += f"\n\nThis is retry attempt {request.retry_attempt}."

        chat = self.chat_factory()
        try:
            resp_text = await ai_call_with_timeout(
                chat, UserMessage(text=prompt), timeout_seconds=self.timeout, operation_name="Paper grading"
            )
        except TimeoutError as e:
            raise RetryableGradingError(str(e), kind=RetryableGradingError.DOWNLOAD_TIMEOUT) from e
        except Exception as e:
            logger.error(f"AI grading error: {e}")
            raise FatalGradingError(f"AI grading failed: {e}") from e

        result = _parse_result(parse_grading_json(resp_text), text=student_text)
        awarded, maximum = result.summary.total_score
        logger.info(f"✅ Evaluation completed: {awarded}/{maximum} ({result.summary.percentage}%)")
        return result


def get_grader() -> Grader:
    """Grader selected by GRADING_BACKEND."""
    if GRADING_BACKEND == "remote":
        return RemoteGradingClient()
    return LocalGradingFunction()
