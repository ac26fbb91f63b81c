"""Question selection for practice sessions.

``QuestionSelector.select_questions`` builds a session's question set:
duplicate-free, balanced across subjects when no subject is requested, biased
away from recently attempted questions, and skewed toward the difficulty mix
that suits the child's recent accuracy. ``select_next_question`` ranks single
candidates for adaptive, one-at-a-time delivery.
"""

from __future__ import annotations

import logging
import math
import random
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from engines.difficulty import (
    DIFFICULTY_ORDER,
    difficulty_weights,
    recent_accuracy,
    recommended_difficulty,
    tier_distance,
)
from event_log import log_event
from schemas import QuestionRecord

logger = logging.getLogger(__name__)

SESSION_TYPES = ("quick", "focus", "mock", "quick_byte")
DEFAULT_QUESTION_COUNTS: Dict[str, int] = {"quick": 10, "focus": 25, "mock": 50, "quick_byte": 5}


@dataclass(frozen=True)
class QuestionCriteria:
    child_id: str
    session_type: str = "quick"
    count: Optional[int] = None
    subject: Optional[str] = None
    topics: Optional[Tuple[str, ...]] = None
    difficulty: Optional[str] = None

    def __post_init__(self) -> None:
        if self.session_type not in SESSION_TYPES:
            raise ValueError(f"Unknown session type: {self.session_type}")
        if self.difficulty is not None and self.difficulty not in DIFFICULTY_ORDER:
            raise ValueError(f"Unknown difficulty: {self.difficulty}")
        if self.count is not None and self.count < 1:
            raise ValueError("count must be positive")
        if self.topics is not None:
            object.__setattr__(self, "topics", tuple(self.topics) or None)

    @property
    def resolved_count(self) -> int:
        return self.count if self.count is not None else DEFAULT_QUESTION_COUNTS[self.session_type]

    def without_topics(self) -> "QuestionCriteria":
        return replace(self, topics=None)


def dedupe_questions(questions: Iterable[QuestionRecord]) -> List[QuestionRecord]:
    """Drop repeats by id or by normalised question text, keeping the first."""
    seen_ids: set[str] = set()
    seen_text: set[str] = set()
    unique: List[QuestionRecord] = []
    for question in questions:
        text = question.normalised_text
        if question.id in seen_ids or text in seen_text:
            continue
        seen_ids.add(question.id)
        seen_text.add(text)
        unique.append(question)
    return unique


def apportion(total: int, weights: Dict[str, float]) -> Dict[str, int]:
    """Split ``total`` across keys by weight using largest remainders.

    Ties on the remainder go to keys earlier in ``weights``.
    """

    if total <= 0 or not weights:
        return {key: 0 for key in weights}
    weight_sum = sum(max(0.0, w) for w in weights.values())
    if weight_sum <= 0:
        weights = {key: 1.0 for key in weights}
        weight_sum = float(len(weights))
    exact = {key: total * max(0.0, w) / weight_sum for key, w in weights.items()}
    shares = {key: int(math.floor(value)) for key, value in exact.items()}
    leftover = total - sum(shares.values())
    order = sorted(exact, key=lambda key: -(exact[key] - shares[key]))
    for key in order[:leftover]:
        shares[key] += 1
    return shares


def balanced_quotas(total: int, capacities: Dict[str, int]) -> Dict[str, int]:
    """Even split of ``total`` over groups, re-spreading what a group cannot hold."""
    quotas = {key: 0 for key in capacities}
    remaining = total
    active = [key for key, cap in capacities.items() if cap > 0]
    while remaining > 0 and active:
        share = apportion(remaining, {key: 1.0 for key in active})
        placed = 0
        for key in active:
            add = min(share[key], capacities[key] - quotas[key])
            quotas[key] += add
            placed += add
        remaining -= placed
        active = [key for key in active if quotas[key] < capacities[key]]
        if placed == 0:
            break
    return quotas


# ----------------------------------------------------------------------
# adaptive single-question scoring
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class AdaptiveWeights:
    difficulty_match: float = 0.40
    topic_coverage: float = 0.25
    recency_avoidance: float = 0.20
    weak_area_focus: float = 0.15


@dataclass
class AdaptiveCriteria:
    child_id: str
    topic: str
    current_difficulty: str = "foundation"
    exclude_ids: Sequence[str] = field(default_factory=tuple)


@dataclass
class ScoredQuestion:
    question: QuestionRecord
    score: float
    breakdown: Dict[str, float]

    def to_dict(self) -> Dict[str, object]:
        return {
            "questionId": self.question.id,
            "score": round(self.score, 4),
            "breakdown": {key: round(value, 4) for key, value in self.breakdown.items()},
        }


def difficulty_match_score(question_difficulty: str, target: str) -> float:
    distance = tier_distance(question_difficulty, target)
    if distance == 0:
        return 1.0
    if distance == 1:
        return 0.5
    return 0.1


def coverage_score(subtopic: Optional[str], attempts_by_subtopic: Dict[str, Tuple[int, int]]) -> float:
    if not subtopic:
        return 0.5
    attempts = attempts_by_subtopic.get(subtopic, (0, 0))[0]
    if attempts == 0:
        return 1.0
    return 1.0 / (1.0 + math.log10(attempts + 1))


def recency_score(last_seen: Optional[datetime], now: datetime) -> float:
    if last_seen is None:
        return 1.0
    days = (now - last_seen).total_seconds() / 86400.0
    if days < 1:
        return 0.0
    if days < 2:
        return 0.3
    if days < 7:
        return 0.7
    return 1.0


def weak_area_score(subtopic: Optional[str], attempts_by_subtopic: Dict[str, Tuple[int, int]]) -> float:
    if not subtopic:
        return 0.5
    attempts, correct = attempts_by_subtopic.get(subtopic, (0, 0))
    if attempts == 0:
        return 0.7
    return 1.0 - correct / attempts


class QuestionSelector:
    """Pick practice questions for a child from the practice store."""

    def __init__(
        self,
        store,
        *,
        recent_window_days: int = 7,
        recent_attempt_limit: int = 50,
        performance_sample_size: int = 20,
        adaptive_weights: AdaptiveWeights = AdaptiveWeights(),
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.recent_window_days = recent_window_days
        self.recent_attempt_limit = recent_attempt_limit
        self.performance_sample_size = performance_sample_size
        self.adaptive_weights = adaptive_weights
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, store, settings, rng: Optional[random.Random] = None) -> "QuestionSelector":
        return cls(
            store,
            recent_window_days=settings.recent_window_days,
            recent_attempt_limit=settings.recent_attempt_limit,
            performance_sample_size=settings.performance_sample_size,
            rng=rng,
        )

    # ------------------------------------------------------------------
    # session selection
    # ------------------------------------------------------------------
    def select_questions(self, criteria: QuestionCriteria, now: Optional[datetime] = None) -> List[QuestionRecord]:
        """Return up to ``criteria.resolved_count`` questions; empty when nothing matches."""

        now = now or datetime.now(timezone.utc)
        count = criteria.resolved_count
        try:
            candidates = dedupe_questions(
                self.store.list_questions(
                    subject=criteria.subject,
                    topics=list(criteria.topics) if criteria.topics else None,
                    difficulty=criteria.difficulty,
                )
            )
            if not candidates:
                logger.info("No questions match criteria %s", criteria)
                return []

            recent_ids = set(
                self.store.recent_question_ids(
                    criteria.child_id,
                    now - timedelta(days=self.recent_window_days),
                    self.recent_attempt_limit,
                )
            )
            fresh = [question for question in candidates if question.id not in recent_ids]
            # repeats are allowed once fresh questions cannot fill the session
            pool = fresh if len(fresh) >= count else candidates

            tier_weights: Optional[Dict[str, float]] = None
            rate: Optional[float] = None
            if criteria.difficulty is None:
                rate = recent_accuracy(
                    self.store.recent_correctness(criteria.child_id, self.performance_sample_size)
                )
                tier_weights = difficulty_weights(rate)
        except sqlite3.Error:
            logger.exception("Question selection failed for child %s", criteria.child_id)
            return []

        selected = self._pick(pool, count, tier_weights, balance_subjects=criteria.subject is None)
        self._rng.shuffle(selected)
        selected = selected[:count]
        log_event(
            "questions_selected",
            child_id=criteria.child_id,
            session_type=criteria.session_type,
            requested=count,
            returned=len(selected),
            candidates=len(candidates),
            fresh=len(fresh),
            repeats_allowed=pool is candidates and len(fresh) < len(candidates),
            recent_accuracy=None if rate is None else round(rate, 3),
        )
        return selected

    def select_with_fallback(self, criteria: QuestionCriteria, now: Optional[datetime] = None) -> List[QuestionRecord]:
        """Select questions, retrying once without topic filters when nothing matched."""
        selected = self.select_questions(criteria, now)
        if selected or not criteria.topics:
            return selected
        log_event(
            "question_selection_fallback",
            child_id=criteria.child_id,
            subject=criteria.subject,
            topics=list(criteria.topics),
        )
        return self.select_questions(criteria.without_topics(), now)

    def select_mock_questions(self, child_id: str, template, now: Optional[datetime] = None) -> List[QuestionRecord]:
        """Compose a mock test from a ``MockTestTemplate``.

        Every subject gets exactly its template quota when the bank allows,
        split across tiers by the template's difficulty mix. A tier that runs
        short is topped up from the subject's other tiers. Questions are
        returned grouped by subject in template order, easiest tier first.
        """

        now = now or datetime.now(timezone.utc)
        selected: List[QuestionRecord] = []
        shortfall: Dict[str, int] = {}
        try:
            recent_ids = set(
                self.store.recent_question_ids(
                    child_id,
                    now - timedelta(days=self.recent_window_days),
                    self.recent_attempt_limit,
                )
            )
            for subject, quota in template.subject_quotas().items():
                candidates = dedupe_questions(self.store.list_questions(subject=subject))
                fresh = [question for question in candidates if question.id not in recent_ids]
                pool = fresh if len(fresh) >= quota else candidates
                picked = self._pick_by_tier(pool, quota, template.difficulty_distribution)
                if len(picked) < quota:
                    shortfall[subject] = quota - len(picked)
                selected.extend(picked)
        except sqlite3.Error:
            logger.exception("Mock test selection failed for child %s", child_id)
            return []

        log_event(
            "mock_questions_selected",
            child_id=child_id,
            template_id=template.id,
            requested=template.total_questions,
            returned=len(selected),
            shortfall=shortfall,
        )
        return selected

    def recommended_difficulty(self, child_id: str, subject: Optional[str] = None) -> str:
        try:
            history = self.store.recent_correctness(child_id, self.performance_sample_size, subject=subject)
        except sqlite3.Error:
            logger.exception("Could not load recent attempts for child %s", child_id)
            return "standard"
        return recommended_difficulty(history)

    def _pick(
        self,
        pool: Sequence[QuestionRecord],
        count: int,
        tier_weights: Optional[Dict[str, float]],
        *,
        balance_subjects: bool,
    ) -> List[QuestionRecord]:
        groups: Dict[str, List[QuestionRecord]] = {}
        if balance_subjects:
            for question in pool:
                groups.setdefault(question.subject, []).append(question)
        else:
            groups["*"] = list(pool)

        keys = list(groups)
        self._rng.shuffle(keys)
        quotas = balanced_quotas(count, {key: len(groups[key]) for key in keys})

        chosen: List[QuestionRecord] = []
        for key in keys:
            chosen.extend(self._pick_by_tier(groups[key], quotas[key], tier_weights))

        if len(chosen) < count:
            taken = {question.id for question in chosen}
            rest = [question for question in pool if question.id not in taken]
            self._rng.shuffle(rest)
            chosen.extend(rest[: count - len(chosen)])
        return chosen

    def _pick_by_tier(
        self,
        group: Sequence[QuestionRecord],
        quota: int,
        tier_weights: Optional[Dict[str, float]],
    ) -> List[QuestionRecord]:
        if quota <= 0:
            return []
        shuffled = list(group)
        self._rng.shuffle(shuffled)
        if not tier_weights:
            return shuffled[:quota]

        by_tier: Dict[str, List[QuestionRecord]] = {tier: [] for tier in DIFFICULTY_ORDER}
        for question in shuffled:
            by_tier.setdefault(question.difficulty, []).append(question)
        tier_quotas = apportion(quota, {tier: tier_weights.get(tier, 0.0) for tier in DIFFICULTY_ORDER})

        picked: List[QuestionRecord] = []
        for tier in DIFFICULTY_ORDER:
            picked.extend(by_tier[tier][: tier_quotas[tier]])
        if len(picked) < quota:
            taken = {question.id for question in picked}
            picked.extend([q for q in shuffled if q.id not in taken][: quota - len(picked)])
        return picked

    # ------------------------------------------------------------------
    # adaptive delivery
    # ------------------------------------------------------------------
    def _score(
        self,
        question: QuestionRecord,
        target: str,
        subtopic_stats: Dict[str, Tuple[int, int]],
        last_seen: Dict[str, datetime],
        now: datetime,
    ) -> ScoredQuestion:
        weights = self.adaptive_weights
        breakdown = {
            "difficultyMatch": difficulty_match_score(question.difficulty, target),
            "topicCoverage": coverage_score(question.subtopic, subtopic_stats),
            "recencyAvoidance": recency_score(last_seen.get(question.id), now),
            "weakAreaFocus": weak_area_score(question.subtopic, subtopic_stats),
        }
        total = (
            breakdown["difficultyMatch"] * weights.difficulty_match
            + breakdown["topicCoverage"] * weights.topic_coverage
            + breakdown["recencyAvoidance"] * weights.recency_avoidance
            + breakdown["weakAreaFocus"] * weights.weak_area_focus
        )
        return ScoredQuestion(question=question, score=total, breakdown=breakdown)

    def _score_candidates(self, criteria: AdaptiveCriteria, now: datetime) -> Tuple[List[ScoredQuestion], Dict[str, Tuple[int, int]], Dict[str, datetime]]:
        candidates = dedupe_questions(
            self.store.list_questions(topics=[criteria.topic], exclude_ids=list(criteria.exclude_ids))
        )
        if not candidates:
            return [], {}, {}
        stats = self.store.subtopic_stats(criteria.child_id, criteria.topic)
        last_seen = self.store.last_attempt_times(criteria.child_id, [q.id for q in candidates])
        scored = [
            self._score(question, criteria.current_difficulty, stats, last_seen, now) for question in candidates
        ]
        return scored, stats, last_seen

    def select_next_question(self, criteria: AdaptiveCriteria, now: Optional[datetime] = None) -> Optional[QuestionRecord]:
        """Highest scoring candidate in the topic, ties broken at random."""

        now = now or datetime.now(timezone.utc)
        try:
            scored, _, _ = self._score_candidates(criteria, now)
        except sqlite3.Error:
            logger.exception("Adaptive selection failed for child %s", criteria.child_id)
            return None
        if not scored:
            return None
        best = max(item.score for item in scored)
        top = [item for item in scored if abs(item.score - best) < 1e-9]
        chosen = self._rng.choice(top)
        log_event(
            "adaptive_question_selected",
            child_id=criteria.child_id,
            topic=criteria.topic,
            difficulty=criteria.current_difficulty,
            question_id=chosen.question.id,
            score=round(chosen.score, 4),
        )
        return chosen.question

    def select_multiple_questions(
        self,
        criteria: AdaptiveCriteria,
        count: int,
        now: Optional[datetime] = None,
    ) -> List[QuestionRecord]:
        """Greedy pick of ``count`` questions, rescoring coverage after each pick."""

        now = now or datetime.now(timezone.utc)
        try:
            scored, stats, last_seen = self._score_candidates(criteria, now)
        except sqlite3.Error:
            logger.exception("Adaptive selection failed for child %s", criteria.child_id)
            return []
        remaining = [item.question for item in scored]
        stats = dict(stats)
        picked: List[QuestionRecord] = []
        while remaining and len(picked) < count:
            ranked = [self._score(q, criteria.current_difficulty, stats, last_seen, now) for q in remaining]
            best = max(ranked, key=lambda item: item.score)
            picked.append(best.question)
            remaining = [q for q in remaining if q.id != best.question.id]
            if best.question.subtopic:
                attempts, correct = stats.get(best.question.subtopic, (0, 0))
                stats[best.question.subtopic] = (attempts + 1, correct)
        return picked

    def explain_question_score(
        self,
        question: QuestionRecord,
        criteria: AdaptiveCriteria,
        now: Optional[datetime] = None,
    ) -> ScoredQuestion:
        now = now or datetime.now(timezone.utc)
        stats = self.store.subtopic_stats(criteria.child_id, criteria.topic)
        last_seen = self.store.last_attempt_times(criteria.child_id, [question.id])
        return self._score(question, criteria.current_difficulty, stats, last_seen, now)
