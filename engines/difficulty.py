"""Adaptive difficulty tiers for practice questions."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, Optional, Sequence, Tuple

DIFFICULTY_ORDER: Tuple[str, ...] = ("foundation", "standard", "challenge")

DEFAULT_RECENT_ACCURACY = 0.5
MIN_ATTEMPTS_FOR_RECOMMENDATION = 5


@dataclass(frozen=True)
class AdaptiveConfig:
    increase_threshold: float = 0.75
    decrease_threshold: float = 0.45
    window_size: int = 5
    cooldown_questions: int = 3
    min_questions_before_adjust: int = 3


DEFAULT_CONFIG = AdaptiveConfig()


@dataclass
class PerformanceWindow:
    correct: int = 0
    incorrect: int = 0

    @property
    def total(self) -> int:
        return self.correct + self.incorrect

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0


@dataclass
class PerformanceTracker:
    child_id: str
    topic_id: str
    current_difficulty: str = "foundation"
    outcomes: Deque[bool] = field(default_factory=deque)
    questions_since_last_adjustment: int = 0
    total_questions_in_topic: int = 0
    last_adjustment_at: Optional[datetime] = None

    def window(self) -> PerformanceWindow:
        correct = sum(1 for outcome in self.outcomes if outcome)
        return PerformanceWindow(correct=correct, incorrect=len(self.outcomes) - correct)


@dataclass
class DifficultyAdjustment:
    current_level: str
    recommended_level: str
    should_adjust: bool
    reason: str
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "currentLevel": self.current_level,
            "recommendedLevel": self.recommended_level,
            "shouldAdjust": self.should_adjust,
            "reason": self.reason,
            "confidence": round(self.confidence, 3),
        }


def adjacent_difficulty(current: str, direction: str) -> str:
    index = DIFFICULTY_ORDER.index(current) if current in DIFFICULTY_ORDER else 0
    if direction == "up":
        return DIFFICULTY_ORDER[min(index + 1, len(DIFFICULTY_ORDER) - 1)]
    return DIFFICULTY_ORDER[max(index - 1, 0)]


def tier_distance(first: str, second: str) -> int:
    if first not in DIFFICULTY_ORDER or second not in DIFFICULTY_ORDER:
        return len(DIFFICULTY_ORDER)
    return abs(DIFFICULTY_ORDER.index(first) - DIFFICULTY_ORDER.index(second))


def determine_adjustment(tracker: PerformanceTracker, config: AdaptiveConfig = DEFAULT_CONFIG) -> DifficultyAdjustment:
    current = tracker.current_difficulty
    window = tracker.window()

    def hold(reason: str, confidence: float = 0.0) -> DifficultyAdjustment:
        return DifficultyAdjustment(current, current, False, reason, confidence)

    if window.total < config.min_questions_before_adjust:
        return hold(
            f"Need {config.min_questions_before_adjust} questions before adjusting (have {window.total})"
        )

    if tracker.questions_since_last_adjustment < config.cooldown_questions:
        remaining = config.cooldown_questions - tracker.questions_since_last_adjustment
        return hold(f"Cooldown: {remaining} more questions needed")

    accuracy = window.accuracy
    if accuracy < config.decrease_threshold:
        easier = adjacent_difficulty(current, "down")
        if easier == current:
            return hold("Already at easiest difficulty")
        return DifficultyAdjustment(
            current,
            easier,
            True,
            f"Low accuracy ({accuracy * 100:.1f}%) - making questions easier",
            1.0 - accuracy,
        )

    if accuracy > config.increase_threshold:
        harder = adjacent_difficulty(current, "up")
        if harder == current:
            return hold("Already at hardest difficulty")
        return DifficultyAdjustment(
            current,
            harder,
            True,
            f"High accuracy ({accuracy * 100:.1f}%) - increasing challenge",
            accuracy,
        )

    return hold(f"Accuracy ({accuracy * 100:.1f}%) is in target range", 0.5)


def update_after_attempt(
    tracker: PerformanceTracker,
    correct: bool,
    config: AdaptiveConfig = DEFAULT_CONFIG,
    now: Optional[datetime] = None,
) -> Tuple[PerformanceTracker, DifficultyAdjustment]:
    """Record one outcome and apply any adjustment it triggers.

    The tracker keeps the last ``window_size`` outcomes; an applied adjustment
    restarts the cooldown.
    """

    outcomes = deque(tracker.outcomes, maxlen=config.window_size)
    outcomes.append(bool(correct))
    updated = PerformanceTracker(
        child_id=tracker.child_id,
        topic_id=tracker.topic_id,
        current_difficulty=tracker.current_difficulty,
        outcomes=outcomes,
        questions_since_last_adjustment=tracker.questions_since_last_adjustment + 1,
        total_questions_in_topic=tracker.total_questions_in_topic + 1,
        last_adjustment_at=tracker.last_adjustment_at,
    )
    adjustment = determine_adjustment(updated, config)
    if adjustment.should_adjust:
        updated.current_difficulty = adjustment.recommended_level
        updated.questions_since_last_adjustment = 0
        updated.last_adjustment_at = now or datetime.now(timezone.utc)
    return updated, adjustment


def tracker_from_history(
    child_id: str,
    topic_id: str,
    outcomes: Sequence[bool],
    config: AdaptiveConfig = DEFAULT_CONFIG,
    initial_difficulty: str = "foundation",
) -> PerformanceTracker:
    """Rebuild a tracker by replaying oldest-first outcomes for a topic."""

    tracker = PerformanceTracker(child_id=child_id, topic_id=topic_id, current_difficulty=initial_difficulty)
    for outcome in outcomes:
        tracker, _ = update_after_attempt(tracker, outcome, config)
    return tracker


def current_streak(outcomes: Sequence[bool]) -> int:
    streak = 0
    for outcome in reversed(outcomes):
        if not outcome:
            break
        streak += 1
    return streak


def recent_accuracy(correctness: Sequence[bool]) -> float:
    if not correctness:
        return DEFAULT_RECENT_ACCURACY
    return sum(1 for flag in correctness if flag) / len(correctness)


def difficulty_weights(recent_rate: float) -> Dict[str, float]:
    """Share of each tier to serve for a child with ``recent_rate`` accuracy."""
    if recent_rate > 0.8:
        return {"foundation": 0.2, "standard": 0.3, "challenge": 0.5}
    if recent_rate > 0.6:
        return {"foundation": 0.3, "standard": 0.4, "challenge": 0.3}
    return {"foundation": 0.5, "standard": 0.4, "challenge": 0.1}


def recommended_difficulty(correctness: Sequence[bool]) -> str:
    if len(correctness) < MIN_ATTEMPTS_FOR_RECOMMENDATION:
        return "standard"
    rate = recent_accuracy(correctness)
    if rate > 0.8:
        return "challenge"
    if rate > 0.6:
        return "standard"
    return "foundation"
