"""
Typed error hierarchy for the evaluation pipeline.

Retry decisions in the orchestrator are made on these types (and the
``kind`` tag of RetryableGradingError), never on message text.
"""

from typing import Optional


class PaperCheckError(Exception):
    """Base class for all domain errors."""


# ============== RASTERIZER ==============

class UnsupportedFormat(PaperCheckError):
    """Input bytes could not be parsed as the declared document kind."""


class RasterizationFailed(PaperCheckError):
    """Every page failed to render; nothing usable was produced."""


class DownloadFailed(PaperCheckError):
    """A source URL could not be fetched (non-2xx, connection error)."""


class DownloadTimeout(DownloadFailed):
    """A source URL fetch exceeded its timeout."""


# ============== FILE STORE / PACKAGER ==============

class StoreError(PaperCheckError):
    """Transient failure talking to the file store."""


class PersistFailed(PaperCheckError):
    """Upload still failing after all retry attempts."""


class BundleTooLarge(PaperCheckError):
    """Archive exceeds the bundle size cap."""


class EmptyBundle(PaperCheckError):
    """No pages to package."""


# ============== EXTRACTION ==============

class ExtractionFailed(PaperCheckError):
    """OCR/extraction call failed, timed out, or had no usable images."""

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


# ============== ORCHESTRATOR ==============

class NoAnswerSheet(PaperCheckError):
    """No answer sheet uploaded for the (student, subject, test)."""


class MissingTestDocuments(PaperCheckError):
    """The test has no question paper or no answer key."""


class GradingError(PaperCheckError):
    """Base for failures reported by the grading function."""


class RetryableGradingError(GradingError):
    """Transient grading failure, eligible for automatic re-attempt."""

    DOWNLOAD_TIMEOUT = "download_timeout"
    INVALID_IMAGE_URL = "invalid_image_url"
    DOWNLOAD_FAILED = "download_failed"
    EXTRACTION_FAILED = "extraction_failed"

    KINDS = (DOWNLOAD_TIMEOUT, INVALID_IMAGE_URL, DOWNLOAD_FAILED, EXTRACTION_FAILED)

    def __init__(self, message: str, kind: str = DOWNLOAD_FAILED):
        if kind not in self.KINDS:
            raise ValueError(f"Unknown retryable grading error kind: {kind}")
        super().__init__(message)
        self.kind = kind


class FatalGradingError(GradingError):
    """Any grading failure that a retry will not fix."""


class EvaluationCancelled(PaperCheckError):
    """A batch evaluation was cancelled by its caller."""


class EvaluationReset(PaperCheckError):
    """The evaluation row was deleted by an answer-sheet re-upload before grading finished."""


# ============== RECORDS ==============

class EvaluationNotFound(PaperCheckError):
    pass


class InvalidEvaluationState(PaperCheckError):
    pass


class QuestionNotFound(PaperCheckError):
    pass


class GradebookSyncFailed(PaperCheckError):
    """Evaluation was saved but the gradebook row could not be updated."""


class DocumentNotFound(PaperCheckError):
    pass


class NotDocumentOwner(PaperCheckError):
    pass


class TestNotFound(PaperCheckError):
    pass


class JobNotFound(PaperCheckError):
    pass
