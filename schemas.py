"""Pydantic schemas for sessions, turns, assessments and reports."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

__all__ = [
    "SESSION_STATUSES",
    "SPEAKERS",
    "QUESTION_TYPES",
    "normalize_question_type",
    "TurnMetrics",
    "SessionRecord",
    "TurnRecord",
    "AssessmentOption",
    "AssessmentQuestion",
    "SessionAssessmentAnswer",
    "GradeResult",
    "CompetencyScore",
    "CompetencyInput",
    "TriggerVerdict",
    "CompetencySummary",
    "CompetencyOverview",
    "ComparisonMetric",
    "CoachingRecommendation",
    "SessionSummary",
    "GeneratedQuestionPayload",
    "parse_json_safe",
]

SessionStatus = Literal["not-started", "in-progress", "completed", "paused", "abandoned"]
Speaker = Literal["user", "ai-coach", "client", "system"]
QuestionType = Literal["multiple-choice", "true-false", "short-answer"]
FeedbackType = Literal["positive", "neutral", "negative"]
Trend = Literal["improving", "declining", "stable"]
ChangeType = Literal["increase", "decrease", "stable"]

SESSION_STATUSES = ("not-started", "in-progress", "completed", "paused", "abandoned")
SPEAKERS = ("user", "ai-coach", "client", "system")
QUESTION_TYPES = ("multiple-choice", "true-false", "short-answer")

_QUESTION_TYPE_ALIASES = {
    "multiple-choice": "multiple-choice",
    "multiple_choice": "multiple-choice",
    "mcq": "multiple-choice",
    "true-false": "true-false",
    "true_false": "true-false",
    "truefalse": "true-false",
    "short-answer": "short-answer",
    "short_answer": "short-answer",
    "open-ended": "short-answer",
}


def normalize_question_type(value: Any) -> str:
    key = str(value or "").strip().lower()
    try:
        return _QUESTION_TYPE_ALIASES[key]
    except KeyError:
        raise ValueError(f"unsupported question type: {value!r}") from None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TurnMetrics(BaseModel):
    """Real-time delivery metrics attached to a turn or a session snapshot."""

    sentiment: Literal["positive", "negative", "neutral"] | None = None
    pacing: float | None = Field(default=None, ge=0, description="Words per minute.")
    clarity: float | None = Field(default=None, ge=0, le=100)
    empathy: float | None = Field(default=None, ge=0, le=100)
    directness: float | None = Field(default=None, ge=0, le=100)

    model_config = {
        "extra": "allow",
    }


class SessionRecord(BaseModel):
    id: str
    user_id: str
    scenario_id: str
    status: SessionStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    current_turn: int = 0
    total_turns: int = 0
    overall_score: float | None = None
    xp_earned: int = 0
    real_time_metrics: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TurnRecord(BaseModel):
    id: str
    session_id: str
    turn_number: int = Field(ge=1)
    speaker: Speaker
    message: str
    metrics: Dict[str, Any] | None = None
    created_at: datetime | None = None


class AssessmentOption(BaseModel):
    id: str
    text: str
    is_correct: bool = False


class AssessmentQuestion(BaseModel):
    id: str
    scenario_id: str
    question_type: QuestionType
    prompt: str
    options: List[AssessmentOption] = Field(default_factory=list)
    reference_answer: str | None = None
    explanation: str | None = None
    order_index: int = 0
    source: Literal["static", "dynamic"] = "static"
    session_id: str | None = Field(
        default=None,
        description="Owning session for dynamically generated questions.",
    )
    created_at: datetime | None = None

    @field_validator("question_type", mode="before")
    @classmethod
    def _coerce_question_type(cls, value: Any) -> str:
        return normalize_question_type(value)

    def correct_option(self) -> Optional[AssessmentOption]:
        for option in self.options:
            if option.is_correct:
                return option
        return None


class SessionAssessmentAnswer(BaseModel):
    id: str
    session_id: str
    assessment_id: str
    submitted_answer: str
    is_correct: bool
    score: int = Field(ge=0, le=100)
    feedback: str
    answered_at: datetime


class GradeResult(BaseModel):
    is_correct: bool
    score: int = Field(ge=0, le=100)
    feedback: str


class CompetencyScore(BaseModel):
    id: str
    session_id: str
    competency_name: str
    score: float = Field(ge=0, le=100)
    feedback: str | None = None
    feedback_type: FeedbackType = "neutral"
    created_at: datetime | None = None


class CompetencyInput(BaseModel):
    """Competency score supplied when a session is completed."""

    name: str = Field(min_length=1)
    score: float = Field(ge=0, le=100)
    feedback: str | None = None
    feedback_type: FeedbackType | None = None


class TriggerVerdict(BaseModel):
    trigger: bool
    reason: str
    assessment: AssessmentQuestion | None = None


class CompetencySummary(BaseModel):
    name: str
    score: int
    trend: Trend | None = None
    samples: int = 0


class CompetencyOverview(BaseModel):
    competencies: List[CompetencySummary] = Field(default_factory=list)
    streak: int = 0
    window_days: int = 30


class ComparisonMetric(BaseModel):
    name: str
    current: float
    previous: float
    change: float
    change_type: ChangeType


class CoachingRecommendation(BaseModel):
    id: str
    title: str
    description: str
    action_type: Literal["scenario", "resource", "micro-drill"]
    action_label: str
    related_scenario_id: str | None = None


class SessionSummary(BaseModel):
    """Executive report assembled for a completed session."""

    session_id: str
    scenario_id: str
    scenario_title: str
    overall_score: float
    xp_earned: int = 0
    duration_minutes: int = 0
    total_turns: int = 0
    competencies: List[CompetencyScore] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    improvement_areas: List[str] = Field(default_factory=list)
    assessments_answered: int = 0
    assessment_accuracy: float | None = None
    previous_best: List[ComparisonMetric] = Field(default_factory=list)
    recommendations: List[CoachingRecommendation] = Field(default_factory=list)
    streak: int = 0
    headline: str = ""
    generated_at: datetime = Field(default_factory=_utcnow)


class GeneratedQuestionPayload(BaseModel):
    """Shape returned by the dynamic question generator."""

    question_text: str = Field(min_length=1)
    options: List[str]
    correct_answer: str = Field(min_length=1)
    explanation: str | None = None

    @field_validator("options")
    @classmethod
    def _four_options(cls, value: List[str]) -> List[str]:
        cleaned = [str(option).strip() for option in value if str(option).strip()]
        if len(cleaned) != 4:
            raise ValueError("exactly four options are required")
        return cleaned


_T = TypeVar("_T", bound=BaseModel)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{" and (idx == 0 or text[idx - 1] != "\\"):
                depth += 1
            elif char == "}" and (idx == 0 or text[idx - 1] != "\\"):
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def _strip_code_fences(text: str) -> str:
    stripped = text.strip()
    if "```json" in stripped:
        return stripped.split("```json", 1)[1].split("```", 1)[0].strip()
    if stripped.startswith("```"):
        parts = stripped.split("```")
        if len(parts) >= 3:
            return parts[1].strip()
    return stripped


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass."""

    text = _strip_code_fences(text)
    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = text[end:]
    if trailing.strip():
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    try:
        return model.model_validate_json(snippet)
    except (ValidationError, ValueError):
        if first_error:
            raise first_error
        raise
