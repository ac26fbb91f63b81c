"""Pydantic models for rows crossing the database boundary and API payloads."""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

__all__ = [
    "DEFAULT_EXPLANATION",
    "DEFAULT_QUESTION_EMBER_SCORE",
    "Difficulty",
    "SessionType",
    "AnswerOption",
    "Explanations",
    "QuestionRecord",
    "PracticeSessionRecord",
    "QuestionAttemptRecord",
    "HeatmapCell",
    "WeaknessHeatmap",
    "RecommendationSessionRequest",
    "CreateSessionRequest",
    "AttemptRequest",
    "CompleteSessionRequest",
    "MockSessionRequest",
    "FlagQuestionRequest",
    "normalise_question_text",
    "normalise_recommendation_request",
    "parse_timestamp",
    "format_timestamp",
    "parse_json_safe",
]

Difficulty = Literal["foundation", "standard", "challenge"]
SessionType = Literal["quick", "focus", "mock", "quick_byte"]
MasteryLevel = Literal["mastered", "proficient", "developing", "needs_focus"]
Trend = Literal["improving", "declining", "stable"]

DEFAULT_EXPLANATION = "Explanation not available."
DEFAULT_QUESTION_EMBER_SCORE = 75

MINUTES_PER_QUESTION = 1.5
_RECOMMENDATION_MIN_QUESTIONS = 5
_RECOMMENDATION_MAX_QUESTIONS = 30
_RECOMMENDATION_DEFAULT_MINUTES = 15
_FLAT_DEFAULT_QUESTIONS = 10

_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


def normalise_question_text(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace for duplicate checks."""
    stripped = _PUNCTUATION.sub(" ", (text or "").lower())
    return _WHITESPACE.sub(" ", stripped).strip()


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC text so stored timestamps compare lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_json_safe(raw: Any, default: Any) -> Any:
    """Decode a JSON column, returning ``default`` on empty or malformed input."""
    if raw is None or raw == "":
        return default
    if not isinstance(raw, (str, bytes, bytearray)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


# ----------------------------------------------------------------------
# stored rows
# ----------------------------------------------------------------------
class AnswerOption(BaseModel):
    id: str
    text: str


class Explanations(BaseModel):
    step_by_step: str = DEFAULT_EXPLANATION
    visual: Optional[str] = None
    worked_example: Optional[str] = None

    @field_validator("step_by_step", mode="before")
    @classmethod
    def _default_step_by_step(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_EXPLANATION
        return value


class QuestionRecord(BaseModel):
    id: str
    subject: str
    topic: Optional[str] = None
    subtopic: Optional[str] = None
    difficulty: Difficulty
    question_text: str
    options: List[AnswerOption] = Field(default_factory=list)
    correct_answer: str
    explanations: Explanations = Field(default_factory=Explanations)
    ember_score: int = DEFAULT_QUESTION_EMBER_SCORE
    curriculum_reference: Optional[str] = None
    review_status: Optional[str] = None
    helpful_count: int = 0
    practice_count: int = 0
    is_published: bool = True

    @property
    def normalised_text(self) -> str:
        return normalise_question_text(self.question_text)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QuestionRecord":
        data = dict(row)
        options = parse_json_safe(data.get("options"), [])
        clean_options = []
        if isinstance(options, list):
            for option in options:
                if isinstance(option, Mapping) and "id" in option:
                    clean_options.append({"id": str(option["id"]), "text": str(option.get("text") or "")})
        data["options"] = clean_options
        explanations = parse_json_safe(data.get("explanations"), {})
        data["explanations"] = explanations if isinstance(explanations, Mapping) else {}
        if data.get("ember_score") is None:
            data["ember_score"] = DEFAULT_QUESTION_EMBER_SCORE
        data["is_published"] = bool(data.get("is_published", 1))
        data["helpful_count"] = data.get("helpful_count") or 0
        data["practice_count"] = data.get("practice_count") or 0
        data.pop("created_at", None)
        return cls.model_validate(data)

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(
            include={
                "id",
                "question_text",
                "subject",
                "topic",
                "subtopic",
                "difficulty",
                "ember_score",
                "curriculum_reference",
                "correct_answer",
                "options",
                "explanations",
            }
        )


class PracticeSessionRecord(BaseModel):
    id: str
    child_id: str
    session_type: SessionType
    question_ids: List[str] = Field(default_factory=list)
    total_questions: int = 0
    correct_answers: Optional[int] = None
    time_limit_seconds: Optional[int] = None
    time_spent_seconds: Optional[int] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    mock_template_id: Optional[str] = None
    flagged_questions: List[str] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PracticeSessionRecord":
        data = dict(row)
        ids = parse_json_safe(data.get("question_ids"), [])
        data["question_ids"] = [str(qid) for qid in ids] if isinstance(ids, list) else []
        flagged = parse_json_safe(data.get("flagged_questions"), [])
        data["flagged_questions"] = [str(qid) for qid in flagged] if isinstance(flagged, list) else []
        data["started_at"] = parse_timestamp(data.get("started_at"))
        data["completed_at"] = parse_timestamp(data.get("completed_at"))
        return cls.model_validate(data)


class QuestionAttemptRecord(BaseModel):
    id: str
    session_id: str
    child_id: str
    question_id: str
    selected_answer: Optional[str] = None
    is_correct: bool
    time_taken_seconds: Optional[int] = None
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QuestionAttemptRecord":
        data = dict(row)
        data["is_correct"] = bool(data.get("is_correct"))
        data["created_at"] = parse_timestamp(data.get("created_at"))
        return cls.model_validate(data)


class HeatmapCell(BaseModel):
    subject: str
    topic: str
    attempts: int
    correct: int
    accuracy: float
    last_practiced_at: Optional[datetime] = None
    trend: Trend = "stable"
    mastery_level: MasteryLevel = "needs_focus"


class WeaknessHeatmap(BaseModel):
    child_id: str
    generated_at: datetime
    window_days: int
    cells: List[HeatmapCell] = Field(default_factory=list)
    summary: Dict[str, int] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.cells


# ----------------------------------------------------------------------
# request payloads
# ----------------------------------------------------------------------
class RecommendationSessionRequest(BaseModel):
    """Normalised body of a create-session-from-recommendation call."""

    child_id: str
    subject: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    difficulty: Optional[Difficulty] = None
    question_count: int


class CreateSessionRequest(BaseModel):
    childId: str = Field(min_length=1)
    sessionType: SessionType
    subject: Optional[str] = None
    topics: Optional[List[str]] = None
    difficulty: Optional[Difficulty] = None
    count: Optional[int] = Field(default=None, ge=1, le=100)


class AttemptRequest(BaseModel):
    childId: str = Field(min_length=1)
    questionId: str = Field(min_length=1)
    selectedAnswer: str
    timeTakenSeconds: Optional[int] = Field(default=None, ge=0)


class CompleteSessionRequest(BaseModel):
    answers: Dict[str, str] = Field(default_factory=dict)
    timings: Dict[str, int] = Field(default_factory=dict)
    timeElapsedSeconds: Optional[int] = Field(default=None, ge=0)
    flaggedQuestions: Optional[List[str]] = None


class MockSessionRequest(BaseModel):
    childId: str = Field(min_length=1)
    templateId: str = Field(min_length=1)


class FlagQuestionRequest(BaseModel):
    childId: str = Field(min_length=1)
    questionId: str = Field(min_length=1)


def _clean_difficulty(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    lowered = str(value).strip().lower()
    if lowered not in ("foundation", "standard", "challenge"):
        raise ValueError("Invalid difficulty. Must be foundation, standard, or challenge")
    return lowered


def _clean_subject(value: Any) -> Optional[str]:
    subject = str(value).strip().lower()
    return None if subject in ("all", "mixed", "") else subject


def normalise_recommendation_request(body: Mapping[str, Any]) -> RecommendationSessionRequest:
    """Accept both the nested ``recommendation`` body and the flat body.

    Raises ``ValueError`` with a user-facing message when required fields are
    missing or malformed.
    """

    if not isinstance(body, Mapping):
        raise ValueError("Request body must be a JSON object")

    child_id = str(body.get("childId") or "").strip()

    recommendation = body.get("recommendation")
    if recommendation is not None:
        if not child_id:
            raise ValueError("Child ID is required")
        if not isinstance(recommendation, Mapping) or not recommendation.get("subject"):
            raise ValueError("Recommendation configuration is required")
        topics = recommendation.get("topics") or []
        if not isinstance(topics, list):
            raise ValueError("Recommendation topics must be a list")
        try:
            minutes = float(recommendation.get("estimatedMinutes") or _RECOMMENDATION_DEFAULT_MINUTES)
        except (TypeError, ValueError) as exc:
            raise ValueError("estimatedMinutes must be a number") from exc
        count = int(minutes / MINUTES_PER_QUESTION + 0.5)
        count = max(_RECOMMENDATION_MIN_QUESTIONS, min(_RECOMMENDATION_MAX_QUESTIONS, count))
        subject = recommendation["subject"]
        difficulty = _clean_difficulty(recommendation.get("difficulty"))
        topic_list = [str(topic) for topic in topics if str(topic).strip()]
    else:
        if not child_id:
            raise ValueError("Child ID is required")
        subject = body.get("subject")
        if not subject:
            raise ValueError("Subject is required")
        topic = body.get("topic")
        topic_list = [str(topic)] if topic else []
        difficulty = _clean_difficulty(body.get("difficulty"))
        raw_count = body.get("questionCount")
        try:
            count = int(raw_count) if raw_count else _FLAT_DEFAULT_QUESTIONS
        except (TypeError, ValueError) as exc:
            raise ValueError("questionCount must be an integer") from exc
        if count < 1:
            raise ValueError("questionCount must be positive")

    try:
        return RecommendationSessionRequest(
            child_id=child_id,
            subject=_clean_subject(subject),
            topics=topic_list,
            difficulty=difficulty,
            question_count=count,
        )
    except ValidationError as exc:
        raise ValueError("Invalid request data. Please check your input.") from exc
