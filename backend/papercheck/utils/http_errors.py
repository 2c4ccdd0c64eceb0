"""Domain error -> HTTPException mapping used by the route handlers."""

from fastapi import HTTPException

from papercheck import errors

STATUS_CODES = (
    ((errors.EvaluationNotFound, errors.QuestionNotFound, errors.DocumentNotFound,
      errors.TestNotFound, errors.JobNotFound, errors.NoAnswerSheet, errors.MissingTestDocuments), 404),
    ((errors.NotDocumentOwner,), 403),
    ((errors.InvalidEvaluationState, errors.EvaluationCancelled, errors.EvaluationReset), 409),
    ((errors.BundleTooLarge,), 413),
    ((errors.UnsupportedFormat, errors.RasterizationFailed, errors.EmptyBundle), 422),
    ((errors.GradingError, errors.ExtractionFailed, errors.DownloadFailed,
      errors.PersistFailed, errors.StoreError), 502),
)


def to_http_exception(error: errors.PaperCheckError) -> HTTPException:
    for types, status_code in STATUS_CODES:
        if isinstance(error, types):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
