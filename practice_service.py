"""Practice session lifecycle on the server side.

Creates sessions from selected questions, records per-answer attempts, and
finalizes sessions by reconciling the client's local answers with the stored
attempt rows before computing the session summary and Ember Score.
"""
from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from engines.difficulty import DIFFICULTY_ORDER
from engines.mock_templates import MOCK_TEMPLATES, MockTemplateCatalog
from engines.question_selector import QuestionCriteria, QuestionSelector
from engines.scoring import (
    AnswerOutcome,
    PerformanceFactors,
    calculate_ember_score,
    get_score_color,
    time_rating_for,
    update_ember_score,
)
from engines.session_state import MOCK_TIME_LIMIT_SECONDS, AttemptPayload
from env_validation import Settings
from event_log import log_event
from schemas import PracticeSessionRecord, QuestionRecord, RecommendationSessionRequest

logger = logging.getLogger(__name__)

SPEED_REFERENCE_SECONDS = 120.0


class UnknownChildError(LookupError):
    """Raised when a session is requested for a child that does not exist."""


class UnknownSessionError(LookupError):
    """Raised when a session id does not match a stored session."""


class UnknownTemplateError(LookupError):
    """Raised when a mock test template id is not in the catalog."""


class SessionClosedError(ValueError):
    """Raised when a change is requested on a session that is already complete."""


@dataclass
class CreatedSession:
    session: PracticeSessionRecord
    questions: List[QuestionRecord]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session.id,
            "childId": self.session.child_id,
            "sessionType": self.session.session_type,
            "timeLimitSeconds": self.session.time_limit_seconds,
            "mockTemplateId": self.session.mock_template_id,
            "startedAt": self.session.started_at.isoformat(),
            "questions": [question.to_public() for question in self.questions],
        }


@dataclass
class GroupResult:
    """Results for one subject or tier; unanswered questions count against the percentage."""

    name: str
    total: int = 0
    answered: int = 0
    correct: int = 0
    time_seconds: int = 0
    timed: int = 0

    @property
    def percentage(self) -> float:
        return round(self.correct / self.total * 100.0, 1) if self.total else 0.0

    @property
    def average_time(self) -> float:
        return round(self.time_seconds / self.timed, 1) if self.timed else 0.0

    def to_dict(self, label: str) -> Dict[str, Any]:
        return {
            label: self.name,
            "correct": self.correct,
            "answered": self.answered,
            "total": self.total,
            "percentage": self.percentage,
            "avgTimeSeconds": self.average_time,
        }


@dataclass
class SessionSummary:
    session_id: str
    total_questions: int
    answered: int
    correct_answers: int
    time_spent_seconds: int
    ember_score: int
    reconciled_attempts: int = 0
    difficulty: str = "standard"
    longest_streak: int = 0
    completed_at: Optional[datetime] = None
    topics: Dict[str, int] = field(default_factory=dict)
    by_subject: List[GroupResult] = field(default_factory=list)
    by_difficulty: List[GroupResult] = field(default_factory=list)
    flagged_questions: List[str] = field(default_factory=list)
    time_limit_seconds: Optional[int] = None

    @property
    def accuracy(self) -> float:
        return round(self.correct_answers / self.answered * 100.0, 1) if self.answered else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "totalQuestions": self.total_questions,
            "answered": self.answered,
            "correctAnswers": self.correct_answers,
            "accuracy": self.accuracy,
            "timeSpentSeconds": self.time_spent_seconds,
            "emberScore": self.ember_score,
            "scoreColor": get_score_color(self.ember_score),
            "difficulty": self.difficulty,
            "longestStreak": self.longest_streak,
            "reconciledAttempts": self.reconciled_attempts,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "topics": dict(self.topics),
            "bySubject": [group.to_dict("subject") for group in self.by_subject],
            "byDifficulty": [group.to_dict("difficulty") for group in self.by_difficulty],
            "flaggedQuestions": list(self.flagged_questions),
            "timeLimitSeconds": self.time_limit_seconds,
        }


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def longest_streak(outcomes: Sequence[bool]) -> int:
    best = run = 0
    for outcome in outcomes:
        run = run + 1 if outcome else 0
        best = max(best, run)
    return best


def consistency(outcomes: Sequence[bool]) -> float:
    """1 minus the accuracy gap between the first and second half of the session."""
    if len(outcomes) < 2:
        return 1.0
    middle = len(outcomes) // 2
    first, second = outcomes[:middle], outcomes[middle:]
    first_rate = sum(first) / len(first)
    second_rate = sum(second) / len(second)
    return 1.0 - abs(first_rate - second_rate)


class PracticeService:
    """Create, track and complete practice sessions against a ``PracticeStore``."""

    def __init__(
        self,
        store,
        selector: QuestionSelector,
        *,
        mock_time_limit_seconds: int = MOCK_TIME_LIMIT_SECONDS,
        templates: Optional[MockTemplateCatalog] = None,
    ) -> None:
        self.store = store
        self.selector = selector
        self.mock_time_limit_seconds = mock_time_limit_seconds
        self.templates = templates if templates is not None else MOCK_TEMPLATES

    @classmethod
    def from_settings(cls, store, settings: Settings, selector: Optional[QuestionSelector] = None) -> "PracticeService":
        return cls(
            store,
            selector or QuestionSelector.from_settings(store, settings),
            mock_time_limit_seconds=settings.mock_time_limit_seconds,
        )

    # ------------------------------------------------------------------
    # session creation
    # ------------------------------------------------------------------
    def _require_child(self, child_id: str) -> None:
        if self.store.get_child(child_id) is None:
            raise UnknownChildError(child_id)

    def _open_session(
        self,
        criteria: QuestionCriteria,
        questions: List[QuestionRecord],
        now: Optional[datetime],
        *,
        time_limit: Optional[int] = None,
        template_id: Optional[str] = None,
    ) -> CreatedSession:
        if time_limit is None and criteria.session_type == "mock":
            time_limit = self.mock_time_limit_seconds
        session = self.store.create_session(
            criteria.child_id,
            criteria.session_type,
            [question.id for question in questions],
            time_limit_seconds=time_limit,
            started_at=now,
            mock_template_id=template_id,
        )
        log_event(
            "practice_session_created",
            session_id=session.id,
            child_id=criteria.child_id,
            session_type=criteria.session_type,
            subject=criteria.subject,
            topics=list(criteria.topics or ()),
            question_count=len(questions),
            mock_template_id=template_id,
        )
        return CreatedSession(session=session, questions=questions)

    def create_session(self, criteria: QuestionCriteria, now: Optional[datetime] = None) -> Optional[CreatedSession]:
        """Select questions and open a session; None when nothing matched or the store failed."""

        try:
            self._require_child(criteria.child_id)
            questions = self.selector.select_with_fallback(criteria, now)
            if not questions:
                return None
            return self._open_session(criteria, questions, now)
        except sqlite3.Error:
            logger.exception("Could not create %s session for child %s", criteria.session_type, criteria.child_id)
            return None

    def create_session_from_recommendation(
        self,
        request: RecommendationSessionRequest,
        now: Optional[datetime] = None,
    ) -> Optional[CreatedSession]:
        criteria = QuestionCriteria(
            child_id=request.child_id,
            session_type="focus",
            count=request.question_count,
            subject=request.subject,
            topics=tuple(request.topics) or None,
            difficulty=request.difficulty,
        )
        return self.create_session(criteria, now)

    def create_mock_session(
        self,
        child_id: str,
        template_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[CreatedSession]:
        """Open a mock test laid out by a template.

        Raises ``UnknownTemplateError`` or ``UnknownChildError``; returns None
        when the bank has no questions for the template or the store failed.
        """

        template = self.templates.get(template_id)
        if template is None:
            raise UnknownTemplateError(template_id)
        try:
            self._require_child(child_id)
            questions = self.selector.select_mock_questions(child_id, template, now)
            if not questions:
                return None
            criteria = QuestionCriteria(child_id=child_id, session_type="mock", count=len(questions))
            return self._open_session(
                criteria,
                questions,
                now,
                time_limit=template.time_limit_seconds,
                template_id=template.id,
            )
        except sqlite3.Error:
            logger.exception("Could not create mock session %s for child %s", template_id, child_id)
            return None

    def toggle_flag(self, session_id: str, child_id: str, question_id: str) -> Optional[bool]:
        """Flip the review flag on one question of an open session.

        Returns the new flag state, or None when the question is not part of
        the session.
        """

        session = self.store.get_session(session_id)
        if session is None or session.child_id != child_id:
            raise UnknownSessionError(session_id)
        if session.is_complete:
            raise SessionClosedError(session_id)
        if question_id not in session.question_ids:
            return None
        flagged = [qid for qid in session.flagged_questions if qid != question_id]
        now_flagged = len(flagged) == len(session.flagged_questions)
        if now_flagged:
            flagged.append(question_id)
        order = {qid: idx for idx, qid in enumerate(session.question_ids)}
        self.store.set_flagged_questions(session_id, sorted(flagged, key=lambda qid: order.get(qid, len(order))))
        log_event("question_flag_toggled", session_id=session_id, question_id=question_id, flagged=now_flagged)
        return now_flagged

    # ------------------------------------------------------------------
    # attempts
    # ------------------------------------------------------------------
    def _store_attempt(
        self,
        session: PracticeSessionRecord,
        question: QuestionRecord,
        selected_answer: str,
        time_taken_seconds: Optional[int],
        now: Optional[datetime],
    ) -> Optional[bool]:
        """Write the attempt and nudge the Ember Score; None when the row was skipped."""
        is_correct = selected_answer == question.correct_answer
        stored = self.store.record_attempt(
            session_id=session.id,
            child_id=session.child_id,
            question_id=question.id,
            selected_answer=selected_answer,
            is_correct=is_correct,
            time_taken_seconds=time_taken_seconds,
            created_at=now,
            open_session_only=True,
        )
        if stored is None:
            return None
        current = self.store.get_ember_score(session.child_id, question.subject)
        updated = update_ember_score(
            current,
            AnswerOutcome(
                correct=is_correct,
                difficulty=question.difficulty,
                time_rating=time_rating_for(time_taken_seconds),
            ),
        )
        self.store.set_ember_score(session.child_id, question.subject, updated)
        return is_correct

    def submit_attempt(
        self,
        session_id: str,
        child_id: str,
        question_id: str,
        selected_answer: str,
        time_taken_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Persist one answer. Returns False instead of raising when it cannot be stored."""

        try:
            session = self.store.get_session(session_id)
            if session is None or session.child_id != child_id:
                logger.warning("Attempt for unknown session %s (child %s)", session_id, child_id)
                return False
            if session.is_complete:
                logger.warning("Dropping attempt for finalized session %s (question %s)", session_id, question_id)
                return False
            if question_id not in session.question_ids:
                logger.warning("Question %s is not part of session %s", question_id, session_id)
                return False
            questions = self.store.get_questions([question_id])
            if not questions:
                logger.warning("Attempt references missing question %s", question_id)
                return False
            if self._store_attempt(session, questions[0], selected_answer, time_taken_seconds, now) is None:
                logger.info(
                    "Attempt for session %s question %s already recorded or session closed", session_id, question_id
                )
                return False
            return True
        except sqlite3.Error:
            logger.exception("Error submitting attempt for session %s", session_id)
            return False

    def submit_payload(self, payload: AttemptPayload) -> bool:
        """Sink for ``AttemptSubmitter``."""
        return self.submit_attempt(
            payload.session_id,
            payload.child_id,
            payload.question_id,
            payload.selected_answer,
            payload.time_taken_seconds,
        )

    # ------------------------------------------------------------------
    # completion
    # ------------------------------------------------------------------
    def complete_session(
        self,
        session_id: str,
        answers: Optional[Mapping[str, str]] = None,
        timings: Optional[Mapping[str, int]] = None,
        time_elapsed_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
        flagged: Optional[Sequence[str]] = None,
    ) -> Optional[SessionSummary]:
        """Finalize a session, filling in attempts the per-answer path dropped.

        Raises ``UnknownSessionError`` for an unknown id; returns None when the
        store fails.
        """

        now = now or datetime.now(timezone.utc)
        answers = dict(answers or {})
        timings = dict(timings or {})
        try:
            session = self.store.get_session(session_id)
            if session is None:
                raise UnknownSessionError(session_id)

            questions = {q.id: q for q in self.store.get_questions(session.question_ids)}
            recorded = {attempt.question_id for attempt in self.store.list_session_attempts(session_id)}

            reconciled = 0
            for question_id, selected in answers.items():
                if question_id in recorded or question_id not in questions:
                    continue
                if self._store_attempt(session, questions[question_id], selected, timings.get(question_id), now) is not None:
                    reconciled += 1

            latest: Dict[str, Any] = {}
            for attempt in self.store.list_session_attempts(session_id):
                latest[attempt.question_id] = attempt
            ordered = [latest[qid] for qid in session.question_ids if qid in latest]
            outcomes = [attempt.is_correct for attempt in ordered]
            correct = sum(outcomes)

            times = [
                attempt.time_taken_seconds if attempt.time_taken_seconds is not None else timings.get(attempt.question_id)
                for attempt in ordered
            ]
            times = [t for t in times if t is not None]
            if not time_elapsed_seconds:
                time_elapsed_seconds = sum(times)

            tiers = Counter(questions[a.question_id].difficulty for a in ordered if a.question_id in questions)
            difficulty = tiers.most_common(1)[0][0] if tiers else "standard"
            speed = _clamp01(1.0 - (sum(times) / len(times)) / SPEED_REFERENCE_SECONDS) if times else 0.5
            streak = longest_streak(outcomes)
            ember = calculate_ember_score(
                PerformanceFactors(
                    accuracy=correct / len(ordered) if ordered else 0.0,
                    speed=speed,
                    consistency=consistency(outcomes),
                    difficulty=difficulty,
                    streak=streak,
                )
            )

            if flagged is not None:
                wanted = set(flagged)
                flagged = [qid for qid in session.question_ids if qid in wanted]
            self.store.finalize_session(
                session_id,
                correct_answers=correct,
                completed_at=now,
                time_spent_seconds=time_elapsed_seconds,
                flagged_questions=flagged,
            )
        except sqlite3.Error:
            logger.exception("Error completing session %s", session_id)
            return None

        topics = Counter(questions[a.question_id].topic or "" for a in ordered if a.question_id in questions)
        by_subject: Dict[str, GroupResult] = {}
        by_difficulty: Dict[str, GroupResult] = {}
        for question_id in session.question_ids:
            question = questions.get(question_id)
            if question is None:
                continue
            attempt = latest.get(question_id)
            for groups, key in ((by_subject, question.subject), (by_difficulty, question.difficulty)):
                group = groups.setdefault(key, GroupResult(name=key))
                group.total += 1
                if attempt is None:
                    continue
                group.answered += 1
                group.correct += int(attempt.is_correct)
                seconds = attempt.time_taken_seconds
                if seconds is None:
                    seconds = timings.get(question_id)
                if seconds is not None:
                    group.time_seconds += seconds
                    group.timed += 1
        summary = SessionSummary(
            session_id=session_id,
            total_questions=session.total_questions,
            answered=len(ordered),
            correct_answers=correct,
            time_spent_seconds=int(time_elapsed_seconds or 0),
            ember_score=ember,
            reconciled_attempts=reconciled,
            difficulty=difficulty,
            longest_streak=streak,
            completed_at=now,
            topics=dict(topics),
            by_subject=list(by_subject.values()),
            by_difficulty=[by_difficulty[tier] for tier in DIFFICULTY_ORDER if tier in by_difficulty],
            flagged_questions=list(session.flagged_questions if flagged is None else flagged),
            time_limit_seconds=session.time_limit_seconds,
        )
        log_event(
            "practice_session_completed",
            session_id=session_id,
            child_id=session.child_id,
            answered=summary.answered,
            correct=summary.correct_answers,
            reconciled=reconciled,
            ember_score=ember,
        )
        return summary

    def completion_handler(self, snapshot: Mapping[str, Any]) -> Optional[SessionSummary]:
        """Completion hook for ``SessionStateManager``."""
        return self.complete_session(
            snapshot["sessionId"],
            snapshot.get("answers"),
            snapshot.get("questionTimings"),
            snapshot.get("timeElapsed"),
            flagged=snapshot.get("flaggedQuestions"),
        )
