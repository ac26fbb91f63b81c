"""Topic priority ranking shared by question selection and study planning."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from engines.topic_catalog import TOPIC_CATALOG, TopicCatalog

MASTERY_TARGET = 85.0
WEAK_THRESHOLD = 70.0
MAX_WEAK_AREAS = 5

NEVER_PRACTISED_BOOST = 30.0


@dataclass
class TopicWeight:
    topic: str
    subject: str
    accuracy: float
    importance: int
    priority: float
    days_since_practice: Optional[float]
    suggested_questions: int
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def days_between(earlier: Optional[datetime], now: datetime) -> Optional[float]:
    if earlier is None:
        return None
    if earlier.tzinfo is None and now.tzinfo is not None:
        earlier = earlier.replace(tzinfo=now.tzinfo)
    elif earlier.tzinfo is not None and now.tzinfo is None:
        now = now.replace(tzinfo=earlier.tzinfo)
    return max(0.0, (now - earlier).total_seconds() / 86400.0)


def recency_boost(days_since: Optional[float]) -> float:
    if days_since is None:
        return NEVER_PRACTISED_BOOST
    if days_since < 3:
        return 0.0
    if days_since <= 7:
        return 5.0
    if days_since <= 14:
        return 10.0
    return 20.0


def calculate_priority(accuracy: float, importance: float, days_since: Optional[float]) -> float:
    gap = max(0.0, MASTERY_TARGET - float(accuracy))
    return gap * (1.0 + float(importance) / 10.0) + recency_boost(days_since)


def suggested_questions(accuracy: float) -> int:
    if accuracy < 50:
        return 15
    if accuracy < 70:
        return 12
    if accuracy < MASTERY_TARGET:
        return 10
    return 8


def rank_topics(
    cells: Iterable[Any],
    now: datetime,
    catalog: Optional[TopicCatalog] = None,
) -> List[TopicWeight]:
    """Return topic weights sorted by descending priority.

    ``cells`` are heatmap rows exposing ``subject``, ``topic``, ``accuracy``,
    ``attempts`` and ``last_practiced_at``. Ties keep their input order.
    """

    catalog = catalog or TOPIC_CATALOG
    weights: List[TopicWeight] = []
    for cell in cells:
        accuracy = float(cell.accuracy)
        importance = catalog.importance(cell.topic)
        days_since = days_between(cell.last_practiced_at, now)
        weights.append(
            TopicWeight(
                topic=cell.topic,
                subject=cell.subject,
                accuracy=accuracy,
                importance=importance,
                priority=round(calculate_priority(accuracy, importance, days_since), 2),
                days_since_practice=None if days_since is None else round(days_since, 2),
                suggested_questions=suggested_questions(accuracy),
                attempts=int(getattr(cell, "attempts", 0) or 0),
            )
        )
    return sorted(weights, key=lambda weight: -weight.priority)


def weak_areas(weights: Iterable[TopicWeight], limit: int = MAX_WEAK_AREAS) -> List[TopicWeight]:
    """Topics below the weak threshold, highest priority first."""
    ranked = sorted(weights, key=lambda weight: -weight.priority)
    return [weight for weight in ranked if weight.accuracy < WEAK_THRESHOLD][: max(0, limit)]
