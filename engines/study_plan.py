"""Weekly study plan generation from the weakness heatmap."""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from engines.topic_catalog import TopicCatalog
from engines.topic_weighting import (
    MASTERY_TARGET,
    WEAK_THRESHOLD,
    TopicWeight,
    rank_topics,
    weak_areas,
)
from event_log import log_event

logger = logging.getLogger(__name__)

MINUTES_PER_QUESTION = 1.5
DEFAULT_DAILY_MINUTES = 20
DEFAULT_ACTIVE_DAYS: Tuple[int, ...] = (1, 2, 3, 4, 5, 6)  # 0 = Sunday
DEFAULT_MAX_ACTIVITIES = 3
MIN_MINUTES_FOR_ACTIVITY = 5
MAX_FOCUS_AREAS = 3
TARGET_ACCURACY = 75
QUICK_ACTIVITY_MINUTES = 8
QUICK_TOPIC_LIMIT = 3

FOCUS_MODES = ("weak_areas", "balanced", "review")
DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def day_number(day: date) -> int:
    """Day of week with Sunday as 0."""
    return (day.weekday() + 1) % 7


def week_bounds(now: datetime) -> Tuple[date, date]:
    """Monday to Sunday; on a Sunday the plan covers the coming week."""
    today = now.date()
    start = today - timedelta(days=day_number(today) - 1)
    return start, start + timedelta(days=6)


def _activity_id() -> str:
    return f"activity_{uuid4().hex[:12]}"


@dataclass
class PlanOptions:
    daily_minutes: int = DEFAULT_DAILY_MINUTES
    active_days: Tuple[int, ...] = DEFAULT_ACTIVE_DAYS
    max_activities_per_day: int = DEFAULT_MAX_ACTIVITIES
    focus_mode: str = "weak_areas"

    def __post_init__(self) -> None:
        if self.daily_minutes <= 0:
            raise ValueError("daily_minutes must be positive")
        if self.max_activities_per_day <= 0:
            raise ValueError("max_activities_per_day must be positive")
        if self.focus_mode not in FOCUS_MODES:
            raise ValueError(f"focus_mode must be one of {', '.join(FOCUS_MODES)}")
        days = tuple(sorted(set(int(day) for day in self.active_days)))
        if not days or any(day < 0 or day > 6 for day in days):
            raise ValueError("active_days must contain day numbers between 0 (Sunday) and 6 (Saturday)")
        self.active_days = days


@dataclass
class PlannedActivity:
    id: str
    type: str
    subject: str
    topic: str
    difficulty: str
    question_count: int
    estimated_minutes: float
    reason: str
    priority: str
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "subject": self.subject,
            "topic": self.topic,
            "difficulty": self.difficulty,
            "questionCount": self.question_count,
            "estimatedMinutes": self.estimated_minutes,
            "reason": self.reason,
            "priority": self.priority,
            "completed": self.completed,
        }


@dataclass
class DailyPlan:
    date: date
    day_of_week: str
    activities: List[PlannedActivity] = field(default_factory=list)
    recommended_minutes: float = 0.0
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "dayOfWeek": self.day_of_week,
            "activities": [activity.to_dict() for activity in self.activities],
            "recommendedMinutes": self.recommended_minutes,
            "completed": self.completed,
        }


@dataclass
class FocusArea:
    topic: str
    subject: str
    reason: str
    current_accuracy: float
    target_accuracy: float
    importance: int
    suggested_questions: int
    priority: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "subject": self.subject,
            "reason": self.reason,
            "currentAccuracy": self.current_accuracy,
            "targetAccuracy": self.target_accuracy,
            "importance": self.importance,
            "suggestedQuestions": self.suggested_questions,
            "priority": self.priority,
        }


@dataclass
class StudyGoal:
    id: str
    description: str
    target_value: float
    unit: str
    deadline: date
    current_value: float = 0
    progress: float = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "targetValue": self.target_value,
            "currentValue": self.current_value,
            "unit": self.unit,
            "progress": self.progress,
            "deadline": self.deadline.isoformat(),
        }


@dataclass
class StudyPlan:
    child_id: str
    week_start: date
    week_end: date
    generated_at: datetime
    reasoning: str
    daily_plans: List[DailyPlan]
    focus_areas: List[FocusArea]
    weekly_goals: List[StudyGoal]
    total_recommended_minutes: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "childId": self.child_id,
            "weekOf": self.week_start.isoformat(),
            "weekStart": self.week_start.isoformat(),
            "weekEnd": self.week_end.isoformat(),
            "generatedAt": self.generated_at.isoformat(),
            "reasoning": self.reasoning,
            "dailyPlans": [day.to_dict() for day in self.daily_plans],
            "focusAreas": [area.to_dict() for area in self.focus_areas],
            "weeklyGoals": [goal.to_dict() for goal in self.weekly_goals],
            "totalRecommendedMinutes": self.total_recommended_minutes,
        }


def _focus_area(weight: TopicWeight) -> FocusArea:
    accuracy = weight.accuracy
    if accuracy < 50:
        reason = f"Needs significant improvement ({accuracy:g}% accuracy)"
    else:
        reason = f"Below target mastery ({accuracy:g}% vs {MASTERY_TARGET:g}% target)"
    if weight.priority > 60:
        priority = "high"
    elif weight.priority > 35:
        priority = "medium"
    else:
        priority = "low"
    return FocusArea(
        topic=weight.topic,
        subject=weight.subject,
        reason=reason,
        current_accuracy=accuracy,
        target_accuracy=MASTERY_TARGET,
        importance=weight.importance,
        suggested_questions=weight.suggested_questions,
        priority=priority,
    )


def _plan_reasoning(focus_areas: Sequence[FocusArea]) -> str:
    if not focus_areas:
        return (
            "All tracked topics are above the mastery target, so this week balances "
            "maintenance practice across core subjects."
        )
    listed = ", ".join(
        f"{area.topic} ({area.subject}) at {area.current_accuracy:.0f}%" for area in focus_areas
    )
    return (
        f"Prioritising {listed} because they sit below the {WEAK_THRESHOLD:g}% mastery "
        "threshold and are high-weight topics this term."
    )


def _activity_for(weight: TopicWeight, remaining_minutes: float) -> PlannedActivity:
    minutes = min(remaining_minutes, weight.suggested_questions * MINUTES_PER_QUESTION)
    if weight.priority > 50:
        priority = "high"
    elif weight.priority > 25:
        priority = "medium"
    else:
        priority = "low"
    need = "Needs improvement" if weight.accuracy < WEAK_THRESHOLD else "Maintain mastery"
    return PlannedActivity(
        id=_activity_id(),
        type="practice" if weight.accuracy < 80 else "review",
        subject=weight.subject,
        topic=weight.topic,
        difficulty="foundation" if weight.accuracy < 50 else "standard",
        question_count=_round_half_up(minutes / MINUTES_PER_QUESTION),
        estimated_minutes=minutes,
        reason=f"Priority: {_round_half_up(weight.priority)} - {need}",
        priority=priority,
    )


class StudyPlanGenerator:
    """Compose ranked topics into a seven-day schedule."""

    def __init__(self, store, catalog: Optional[TopicCatalog] = None) -> None:
        self.store = store
        self.catalog = catalog

    def _ranked_topics(self, child_id: str, now: datetime) -> Optional[List[TopicWeight]]:
        try:
            heatmap = self.store.weakness_heatmap(child_id, now)
        except sqlite3.Error:
            logger.exception("Error fetching performance data for child %s", child_id)
            return None
        if heatmap.is_empty:
            return None
        return rank_topics(heatmap.cells, now, self.catalog)

    def generate_weekly_plan(
        self,
        child_id: str,
        options: Optional[PlanOptions] = None,
        now: Optional[datetime] = None,
    ) -> Optional[StudyPlan]:
        """Return the plan for the week of ``now`` (the next week on a Sunday), or None when unavailable."""

        options = options or PlanOptions()
        now = now or datetime.now(timezone.utc)
        topics = self._ranked_topics(child_id, now)
        if not topics:
            logger.info("No performance data for child %s; study plan unavailable", child_id)
            return None

        if options.focus_mode == "review":
            # strongest topics first for consolidation weeks
            topics = sorted(topics, key=lambda weight: -weight.accuracy)

        focus_areas = [_focus_area(weight) for weight in weak_areas(topics)[:MAX_FOCUS_AREAS]]
        week_start, week_end = week_bounds(now)

        daily_plans: List[DailyPlan] = []
        topic_index = 0
        for offset in range(7):
            day = week_start + timedelta(days=offset)
            number = day_number(day)
            if number not in options.active_days:
                continue

            activities: List[PlannedActivity] = []
            remaining = float(options.daily_minutes)
            used_subjects: set[str] = set()
            while (
                len(activities) < options.max_activities_per_day
                and remaining > MIN_MINUTES_FOR_ACTIVITY
                and topic_index < len(topics)
            ):
                if options.focus_mode == "balanced" and topics[topic_index].subject in used_subjects:
                    for other in range(topic_index + 1, len(topics)):
                        if topics[other].subject not in used_subjects:
                            topics[topic_index], topics[other] = topics[other], topics[topic_index]
                            break
                weight = topics[topic_index]
                activity = _activity_for(weight, remaining)
                activities.append(activity)
                remaining -= activity.estimated_minutes
                used_subjects.add(weight.subject)
                topic_index += 1
                if topic_index >= len(topics):
                    topic_index = 0

            daily_plans.append(
                DailyPlan(
                    date=day,
                    day_of_week=DAY_NAMES[number],
                    activities=activities,
                    recommended_minutes=options.daily_minutes - remaining,
                )
            )

        total_questions = sum(a.question_count for day in daily_plans for a in day.activities)
        goals = [
            StudyGoal("goal_questions", "Complete practice questions", total_questions, "questions", week_end),
            StudyGoal("goal_accuracy", "Achieve target accuracy", TARGET_ACCURACY, "%", week_end),
            StudyGoal("goal_streak", "Practice every active day", len(options.active_days), "days", week_end),
        ]
        plan = StudyPlan(
            child_id=child_id,
            week_start=week_start,
            week_end=week_end,
            generated_at=now,
            reasoning=_plan_reasoning(focus_areas),
            daily_plans=daily_plans,
            focus_areas=focus_areas,
            weekly_goals=goals,
            total_recommended_minutes=sum(day.recommended_minutes for day in daily_plans),
        )
        log_event(
            "study_plan_generated",
            child_id=child_id,
            focus_mode=options.focus_mode,
            topics=len(topics),
            focus_areas=[area.topic for area in focus_areas],
            active_days=len(daily_plans),
            total_questions=total_questions,
            total_minutes=plan.total_recommended_minutes,
        )
        return plan

    def get_daily_recommendation(
        self,
        child_id: str,
        day: Optional[date] = None,
        options: Optional[PlanOptions] = None,
    ) -> Optional[DailyPlan]:
        if day is None:
            now = datetime.now(timezone.utc)
        else:
            now = datetime.combine(day, time(12, 0), tzinfo=timezone.utc)
        plan = self.generate_weekly_plan(child_id, options, now)
        if plan is None:
            return None
        target = now.date()
        for daily in plan.daily_plans:
            if daily.date == target:
                return daily
        return None

    def get_quick_recommendations(
        self,
        child_id: str,
        minutes: int = 15,
        now: Optional[datetime] = None,
    ) -> List[PlannedActivity]:
        """Short list of activities for the weakest topics in ``minutes``."""

        now = now or datetime.now(timezone.utc)
        try:
            heatmap = self.store.weakness_heatmap(child_id, now)
        except sqlite3.Error:
            logger.exception("Error fetching performance data for child %s", child_id)
            return []

        if heatmap.is_empty:
            return [
                PlannedActivity(
                    id=_activity_id(),
                    type="practice",
                    subject="verbal_reasoning",
                    topic="General Practice",
                    difficulty="standard",
                    question_count=_round_half_up(minutes / MINUTES_PER_QUESTION),
                    estimated_minutes=minutes,
                    reason="Start building your performance data",
                    priority="medium",
                )
            ]

        weakest = sorted(heatmap.cells, key=lambda cell: cell.accuracy)[:QUICK_TOPIC_LIMIT]
        activities: List[PlannedActivity] = []
        remaining = float(minutes)
        for cell in weakest:
            if remaining <= 0:
                break
            activity_minutes = min(remaining, QUICK_ACTIVITY_MINUTES)
            activities.append(
                PlannedActivity(
                    id=_activity_id(),
                    type="practice",
                    subject=cell.subject,
                    topic=cell.topic,
                    difficulty="foundation" if cell.accuracy < 50 else "standard",
                    question_count=_round_half_up(activity_minutes / MINUTES_PER_QUESTION),
                    estimated_minutes=activity_minutes,
                    reason=f"{cell.accuracy:g}% accuracy - needs practice",
                    priority="high" if cell.accuracy < 50 else "medium",
                )
            )
            remaining -= activity_minutes
        return activities
