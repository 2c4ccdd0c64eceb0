"""
Function endpoints - the grading and extraction invocation contracts.

Failures answer with HTTP 500 and {"error": ..., "code": ...}; code is one
of the retryable kinds when a retry can help, which is what
RemoteGradingClient keys its classification on.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from papercheck.config import logger
from papercheck.deps import get_extraction_client, get_local_grading_function
from papercheck.errors import DownloadFailed, DownloadTimeout, PaperCheckError, RetryableGradingError
from papercheck.models.grading import ExtractionRequest, GradingRequest
from papercheck.services.extraction import ExtractionClient, extract_document
from papercheck.services.grading import LocalGradingFunction

router = APIRouter(prefix="/functions", tags=["functions"])


def error_response(message: str, code: str = None) -> JSONResponse:
    body = {"error": message}
    if code:
        body["code"] = code
    return JSONResponse(status_code=500, content=body)


@router.post("/evaluate-paper")
async def evaluate_paper(
    body: GradingRequest,
    grader: LocalGradingFunction = Depends(get_local_grading_function),
):
    logger.info(f"Received evaluation request for student: {body.student_info.name or body.student_info.id}")
    try:
        result = await grader.grade(body)
        return result.model_dump(by_alias=True)
    except RetryableGradingError as e:
        return error_response(str(e), e.kind)
    except PaperCheckError as e:
        return error_response(str(e))
    except Exception as e:
        logger.error(f"Error in evaluate-paper function: {e}", exc_info=True)
        return error_response(str(e))


@router.post("/extract-text")
async def extract_text(body: ExtractionRequest, client: ExtractionClient = Depends(get_extraction_client)):
    try:
        return await extract_document(body, client)
    except DownloadTimeout as e:
        return error_response(str(e), RetryableGradingError.DOWNLOAD_TIMEOUT)
    except DownloadFailed as e:
        return error_response(str(e), RetryableGradingError.DOWNLOAD_FAILED)
    except PaperCheckError as e:
        return error_response(str(e))
    except Exception as e:
        logger.error(f"Error in extract-text function: {e}", exc_info=True)
        return error_response(str(e))
