"""Ember Score calculations.

Two scores share the Ember name:

* the learner score, a bounded mastery number per child and subject that is
  computed from session performance factors and nudged after every answer;
* the question quality score, a 0-100 trust rating built from curriculum
  alignment, expert review, and community feedback.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

SCORE_FLOOR = 60
SCORE_CEILING = 100
MAX_SCORE_DELTA = 5

DIFFICULTY_TIERS = ("foundation", "standard", "challenge")

_FACTOR_WEIGHTS = {"accuracy": 0.5, "consistency": 0.3, "speed": 0.2}
_DIFFICULTY_MULTIPLIER = {"foundation": 0.9, "standard": 1.0, "challenge": 1.1}
_STREAK_BONUS_PER_STEP = 0.5
_STREAK_BONUS_CAP = 5.0

_CORRECT_BASE = 3.0
_INCORRECT_BASE = 2.0
_CORRECT_DIFFICULTY_WEIGHT = {"foundation": 0.8, "standard": 1.0, "challenge": 1.3}
_INCORRECT_DIFFICULTY_WEIGHT = {"foundation": 1.3, "standard": 1.0, "challenge": 0.8}
_TIME_WEIGHT = {"fast": 1.2, "normal": 1.0, "slow": 0.8}

FAST_ANSWER_SECONDS = 30
SLOW_ANSWER_SECONDS = 90


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def _clamp_score(value: float) -> int:
    return int(_clamp(_round_half_up(value), SCORE_FLOOR, SCORE_CEILING))


@dataclass
class PerformanceFactors:
    accuracy: float
    speed: float
    consistency: float
    difficulty: str = "standard"
    streak: int = 0


@dataclass
class AnswerOutcome:
    correct: bool
    difficulty: str = "standard"
    time_rating: str = "normal"


def calculate_ember_score(factors: PerformanceFactors) -> int:
    """Return the learner Ember Score for a set of performance factors.

    Factors outside ``[0, 1]`` are clamped before weighting, and the result is
    always inside ``[SCORE_FLOOR, SCORE_CEILING]``.
    """

    weighted = (
        _FACTOR_WEIGHTS["accuracy"] * _clamp(float(factors.accuracy), 0.0, 1.0)
        + _FACTOR_WEIGHTS["consistency"] * _clamp(float(factors.consistency), 0.0, 1.0)
        + _FACTOR_WEIGHTS["speed"] * _clamp(float(factors.speed), 0.0, 1.0)
    )
    banded = SCORE_FLOOR + (SCORE_CEILING - SCORE_FLOOR) * weighted
    streak = max(0, int(factors.streak or 0))
    banded += min(_STREAK_BONUS_CAP, streak * _STREAK_BONUS_PER_STEP)
    multiplier = _DIFFICULTY_MULTIPLIER.get(factors.difficulty, 1.0)
    return _clamp_score(banded * multiplier)


def update_ember_score(current: float, outcome: AnswerOutcome) -> int:
    """Nudge ``current`` after one answered question.

    Correct answers never lower the score and incorrect answers never raise it;
    a single event moves the score by at most ``MAX_SCORE_DELTA`` points.
    """

    time_weight = _TIME_WEIGHT.get(outcome.time_rating, 1.0)
    if outcome.correct:
        raw = _CORRECT_BASE * _CORRECT_DIFFICULTY_WEIGHT.get(outcome.difficulty, 1.0) * time_weight
        sign = 1
    else:
        raw = _INCORRECT_BASE * _INCORRECT_DIFFICULTY_WEIGHT.get(outcome.difficulty, 1.0) * time_weight
        sign = -1
    delta = max(1, min(MAX_SCORE_DELTA, _round_half_up(raw)))
    start = _clamp(float(current), SCORE_FLOOR, SCORE_CEILING)
    return _clamp_score(start + sign * delta)


def time_rating_for(seconds: Optional[float]) -> str:
    if seconds is None:
        return "normal"
    if seconds < FAST_ANSWER_SECONDS:
        return "fast"
    if seconds > SLOW_ANSWER_SECONDS:
        return "slow"
    return "normal"


def get_score_color(score: float) -> str:
    if score >= 80:
        return "green"
    if score >= 70:
        return "yellow"
    return "orange"


# ----------------------------------------------------------------------
# question quality
# ----------------------------------------------------------------------
_CURRICULUM_PATTERN = re.compile(r"^(KS[1-4]|Y[3-6]|Year [3-6])", re.IGNORECASE)

_REVIEW_POINTS = {"reviewed": 40, "spot_checked": 25}
_UNREVIEWED_POINTS = 10

_COMMUNITY_BASE = 16.0
_COMMUNITY_MAX = 20.0
_REPORT_PENALTY = 2.0
_HELPFUL_STEP = 0.5
_HELPFUL_CAP = 4.0
_USAGE_STEP = 0.1
_USAGE_CAP = 4.0

_COMPONENT_MAX = {
    "curriculum_alignment": ("Curriculum Alignment", 40),
    "expert_verification": ("Expert Verification", 40),
    "community_feedback": ("Community Feedback", 20),
}


@dataclass
class QualityInputs:
    curriculum_reference: Optional[str] = None
    review_status: Optional[str] = None
    helpful_count: int = 0
    practice_count: int = 0
    pending_reports: int = 0


@dataclass
class QualityScore:
    score: float
    tier: str
    breakdown: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "tier": self.tier, "breakdown": dict(self.breakdown)}


def curriculum_alignment_points(reference: Optional[str]) -> int:
    if not reference or not reference.strip():
        return 0
    return 40 if _CURRICULUM_PATTERN.match(reference) else 20


def expert_verification_points(review_status: Optional[str]) -> int:
    return _REVIEW_POINTS.get(review_status or "", _UNREVIEWED_POINTS)


def community_feedback_points(helpful_count: int, practice_count: int, pending_reports: int) -> float:
    pending = max(0, int(pending_reports))
    points = _COMMUNITY_BASE - pending * _REPORT_PENALTY
    points += min(_HELPFUL_CAP, max(0, helpful_count) * _HELPFUL_STEP)
    # usage only counts while no report is outstanding
    if pending == 0 and practice_count > 0:
        points += min(_USAGE_CAP, (practice_count / 100.0) * _USAGE_STEP)
    return _clamp(points, 0.0, _COMMUNITY_MAX)


def quality_tier(score: float) -> str:
    if score >= 90:
        return "verified"
    if score >= 75:
        return "confident"
    return "draft"


def score_question_quality(inputs: QualityInputs) -> QualityScore:
    breakdown = {
        "curriculum_alignment": float(curriculum_alignment_points(inputs.curriculum_reference)),
        "expert_verification": float(expert_verification_points(inputs.review_status)),
        "community_feedback": community_feedback_points(
            inputs.helpful_count, inputs.practice_count, inputs.pending_reports
        ),
    }
    total = _clamp(sum(breakdown.values()), 0.0, 100.0)
    return QualityScore(score=total, tier=quality_tier(total), breakdown=breakdown)


def format_score_breakdown(breakdown: Dict[str, float]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for key, (label, max_score) in _COMPONENT_MAX.items():
        value = float(breakdown.get(key, 0.0))
        rows.append(
            {
                "component": label,
                "score": value,
                "max_score": max_score,
                "percentage": value / max_score * 100.0,
            }
        )
    return rows
