"""Evaluation, gradebook and answer-sheet Pydantic models"""

import math
from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def percentage_of(awarded: float, maximum: float) -> int:
    """Whole-number percentage, halves rounded up; 0 when there is no maximum."""
    if maximum <= 0:
        return 0
    return int(math.floor(100 * awarded / maximum + 0.5))


def format_marks(value: float) -> str:
    """13.0 -> '13', 7.5 -> '7.5'"""
    value = float(value)
    return str(int(value)) if value.is_integer() else f"{value:g}"


class AnswerScore(BaseModel):
    """One graded question as returned by the grading function"""
    model_config = ConfigDict(extra="allow")
    question_no: Union[int, str, None] = None
    question: Optional[str] = None
    answer: Optional[str] = None
    score: List[float]  # [awarded, max]
    remarks: Optional[str] = None
    confidence: Optional[float] = None

    @field_validator("score")
    @classmethod
    def _score_pair(cls, value: List[float]) -> List[float]:
        if len(value) != 2:
            raise ValueError("score must be an [awarded, max] pair")
        return value


class EvaluationSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")
    total_score: List[float] = Field(alias="totalScore")  # [awarded, max]
    percentage: float = 0

    @classmethod
    def from_answers(cls, answers: List[AnswerScore]) -> "EvaluationSummary":
        awarded = sum(a.score[0] for a in answers)
        maximum = sum(a.score[1] for a in answers)
        return cls(total_score=[awarded, maximum], percentage=percentage_of(awarded, maximum))


# ============== evaluation_data (tagged by status) ==============

class PendingData(BaseModel):
    status: Literal["pending"] = "pending"


class InProgressData(BaseModel):
    """In-flight grading; carries the last error while a retry is scheduled."""
    status: Literal["in_progress"] = "in_progress"
    error: Optional[str] = None
    retry_attempt: Optional[int] = None
    last_error_timestamp: Optional[str] = None


class CompletedData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")
    status: Literal["completed"] = "completed"
    answers: List[AnswerScore] = Field(min_length=1)
    summary: EvaluationSummary
    text: Optional[str] = None


class FailedData(BaseModel):
    status: Literal["failed"] = "failed"
    error: str
    retries_attempted: int = 0


EvaluationData = Annotated[
    Union[PendingData, InProgressData, CompletedData, FailedData],
    Field(discriminator="status"),
]


class PaperEvaluation(BaseModel):
    """One grading record per (test, student) - paper_evaluations collection"""
    model_config = ConfigDict(extra="ignore")
    id: str
    test_id: str
    student_id: str
    subject_id: Optional[str] = None
    status: Literal["pending", "in_progress", "completed", "failed"] = "pending"
    evaluation_data: EvaluationData = Field(default_factory=PendingData)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _tag_evaluation_data(cls, data):
        # Rows written by older clients store an untagged payload ({} while in progress)
        if isinstance(data, dict):
            payload = data.get("evaluation_data")
            if isinstance(payload, dict) and "status" not in payload:
                data = {**data, "evaluation_data": {**payload, "status": data.get("status", "pending")}}
        return data


class TestGrade(BaseModel):
    """Gradebook row - test_grades collection"""
    model_config = ConfigDict(extra="ignore")
    test_id: str
    student_id: str
    marks: float = 0
    remarks: Optional[str] = None


class TestAnswer(BaseModel):
    """Uploaded answer sheet - test_answers collection"""
    model_config = ConfigDict(extra="ignore")
    student_id: str
    test_id: str
    subject_id: str
    answer_sheet_url: str
    zip_url: Optional[str] = None
    text_content: Optional[str] = None


class ScoreUpdate(BaseModel):
    score: float


class ScoreUpdateResult(BaseModel):
    evaluation: PaperEvaluation
    grade_synced: bool = True
    warning: Optional[str] = None
