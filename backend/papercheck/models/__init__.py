"""Pydantic models for PaperCheck"""

from .evaluation import (
    AnswerScore,
    EvaluationSummary,
    PendingData,
    InProgressData,
    CompletedData,
    FailedData,
    EvaluationData,
    PaperEvaluation,
    TestGrade,
    TestAnswer,
    ScoreUpdate,
    ScoreUpdateResult,
)
from .grading import (
    PaperRef,
    StudentAnswerRef,
    StudentInfo,
    GradingRequest,
    GradingResult,
    ExtractionRequest,
)
from .document import Document, DocumentRole, OcrTextUpdate
