"""
OCR / text extraction with a vision model.

One request per call: a role-specific system prompt plus up to
MAX_IMAGES_PER_CALL page images attached inline.
"""

import asyncio
import base64
import inspect
import uuid
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from papercheck.config import logger, get_llm_api_key, GEMINI_MODEL
from papercheck.errors import ExtractionFailed, EmptyBundle, UnsupportedFormat
from papercheck.models.grading import ExtractionRequest
from papercheck.services.bundles import unpack_bundle
from papercheck.services.llm import LlmChat, UserMessage, ImageContent
from papercheck.services.rasterizer import RasterPage
from papercheck.utils.file_utils import detect_document_kind, download_bytes, strip_query, url_extension

SUPPORTED_IMAGE_FORMATS = ("png", "jpg", "jpeg", "webp", "gif")
MAX_IMAGES_PER_CALL = 20
BATCH_TIMEOUT_SECONDS = 120
SINGLE_TIMEOUT_SECONDS = 60

MIME_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
}


# ============== PROMPTS ==============

QUESTION_PAPER_PROMPT = """You are an OCR expert specialized in extracting text from question papers.

For each question in the document:
1. Identify the question number clearly.
2. Extract the complete question text along with any subparts.
3. Format each question on a new line starting with "Q<number>:" followed by the question.
4. Preserve the structure of mathematical equations, diagram descriptions, and any special formatting.
5. Include all instructions, marks allocations, and other relevant information.

Your response should be structured, accurate, and preserve the original content's organization."""

ANSWER_KEY_PROMPT = """You are an OCR expert specialized in extracting text from answer keys.

For each answer in the document:
1. Identify the question number clearly.
2. Extract the complete answer text along with any marking guidelines.
3. Format each answer on a new line starting with "Q<number>:" followed by the answer.
4. Preserve the structure of mathematical equations, diagrams, and any special formatting.
5. Include all marking schemes, points allocation, and other evaluation criteria.

Your response should be structured, accurate, and preserve the original content's organization."""

ANSWER_SHEET_PROMPT = """You are an OCR expert specialized in extracting text from handwritten answer sheets and documents.

For each question in the document:
1. Identify the question number clearly.
2. Extract the complete answer text.
3. Format each answer on a new line starting with "Q<number>:" followed by the answer.
4. If the handwriting is difficult to read, make your best effort and indicate uncertainty with [?].
5. Maintain the structure of mathematical equations, diagram descriptions, and any special formatting.
6. If you identify multiple pages, process each and maintain continuity between questions.

Your response should be structured, accurate, and preserve the original content's organization."""


def get_system_prompt(role_hint: Optional[str] = None) -> str:
    """System prompt for the document role; answer sheets and anything else get the handwriting prompt."""
    if role_hint == "questionPaper":
        return QUESTION_PAPER_PROMPT
    if role_hint == "answerKey":
        return ANSWER_KEY_PROMPT
    return ANSWER_SHEET_PROMPT


# ============== AI CALL HELPERS ==============

async def ai_call_with_timeout(chat_model, message, timeout_seconds=60, operation_name="AI call"):
    """
    Wrapper for AI calls with timeout protection.
    Prevents indefinite hanging on API timeouts.
    """
    try:
        async def make_api_call():
            send_message = chat_model.send_message
            if inspect.iscoroutinefunction(send_message):
                return await send_message(message)
            return await asyncio.to_thread(send_message, message)

        return await asyncio.wait_for(make_api_call(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.error(f"⏱️ TIMEOUT after {timeout_seconds}s: {operation_name}")
        raise TimeoutError(f"{operation_name} exceeded {timeout_seconds}s timeout")


def create_gemini_chat(system_message: str = "") -> LlmChat:
    """Deterministic-leaning Gemini chat for transcription."""
    api_key = get_llm_api_key()
    if not api_key:
        raise ExtractionFailed("OCR extraction failed: AI service not configured (missing API key)")
    return LlmChat(
        api_key=api_key,
        session_id=f"extract_{uuid.uuid4().hex[:8]}",
        system_message=system_message,
    ).with_model("gemini", GEMINI_MODEL).with_params(temperature=0.2)


NamedImage = Tuple[str, bytes]


def _as_named_image(page: Union[RasterPage, NamedImage]) -> NamedImage:
    if isinstance(page, RasterPage):
        return page.filename, page.data
    return page


def image_format(name: str) -> str:
    return url_extension(name).lstrip(".")


class ExtractionClient:
    """Sends page images to a vision model and returns the transcription verbatim."""

    def __init__(
        self,
        chat_factory: Callable[[str], object] = create_gemini_chat,
        batch_timeout: float = BATCH_TIMEOUT_SECONDS,
        single_timeout: float = SINGLE_TIMEOUT_SECONDS,
    ):
        self.chat_factory = chat_factory
        self.batch_timeout = batch_timeout
        self.single_timeout = single_timeout

    def _validate(self, pages: Sequence[Union[RasterPage, NamedImage]]) -> List[ImageContent]:
        contents = []
        for page in pages:
            name, data = _as_named_image(page)
            fmt = image_format(name)
            if fmt not in SUPPORTED_IMAGE_FORMATS:
                logger.warning(f"⚠️ Dropping unsupported image format for OCR: {name}")
                continue
            contents.append(ImageContent(
                image_base64=base64.b64encode(data).decode(),
                mime_type=MIME_TYPES[fmt],
            ))
        return contents

    async def extract(
        self,
        pages: Sequence[Union[RasterPage, NamedImage]],
        role_hint: str = "answerSheet",
    ) -> str:
        contents = self._validate(pages)
        if not contents:
            raise ExtractionFailed("OCR extraction failed: no supported images to process")

        if len(contents) > MAX_IMAGES_PER_CALL:
            logger.warning(f"OCR request has {len(contents)} images, sending first {MAX_IMAGES_PER_CALL}")
            contents = contents[:MAX_IMAGES_PER_CALL]

        if len(contents) == 1:
            timeout = self.single_timeout
            prompt = "Extract all the text from this document, focusing on identifying question numbers and their corresponding content:"
        else:
            timeout = self.batch_timeout
            prompt = (
                f"Extract all the text from these {len(contents)} pages, focusing on identifying "
                f"question numbers and their corresponding content:"
            )

        chat = self.chat_factory(get_system_prompt(role_hint))
        message = UserMessage(text=prompt, file_contents=contents)
        logger.info(f"🔍 OCR extraction ({role_hint}): {len(contents)} image(s), timeout {timeout}s")
        try:
            text = await ai_call_with_timeout(chat, message, timeout_seconds=timeout, operation_name="OCR extraction")
        except TimeoutError as e:
            raise ExtractionFailed(f"OCR extraction failed: {e}", detail=str(e)) from e
        except ExtractionFailed:
            raise
        except Exception as e:
            logger.error(f"OCR extraction error: {e}")
            raise ExtractionFailed(f"OCR extraction failed: {e}", detail=str(e)) from e

        if text is None:
            raise ExtractionFailed("OCR extraction failed: empty response from model")
        logger.info(f"OCR extraction successful, extracted text length: {len(text)}")
        return text


# ============== EXTRACTION FUNCTION ==============

async def extract_document(request: ExtractionRequest, client: ExtractionClient) -> Dict:
    """
    Extract text from a stored document.

    Returns {"text": ...}, or {"is_pdf": True} when a PDF arrives without a
    page bundle - the caller has to bundle it first.
    """
    if request.zip_url:
        zip_bytes = await download_bytes(request.zip_url)
        try:
            images = unpack_bundle(zip_bytes)
        except (EmptyBundle, UnsupportedFormat) as e:
            raise ExtractionFailed(f"OCR extraction failed: {e}", detail=str(e)) from e
        logger.info(f"Extracting {request.file_type} text from bundle with {len(images)} pages")
        return {"text": await client.extract(images, request.file_type)}

    name = request.file_name or strip_query(request.file_url).rsplit("/", 1)[-1]
    kind = detect_document_kind(None, name if url_extension(name) else request.file_url)

    if kind == "pdf":
        return {"is_pdf": True}

    data = await download_bytes(request.file_url)
    if kind == "text":
        return {"text": data.decode("utf-8", errors="replace")}
    return {"text": await client.extract([(name, data)], request.file_type)}
