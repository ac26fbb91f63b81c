"""In-progress practice session state machine.

States run ``idle -> active -> (paused <-> active) -> complete``. Every mutation
is mirrored to a ``SessionDraftCache`` so an interrupted session can resume;
the durable record is written by the completion handler, with per-answer
submissions sent fire-and-forget along the way.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from engines.caching import SessionDraftCache
from schemas import QuestionRecord

logger = logging.getLogger(__name__)

MOCK_TIME_LIMIT_SECONDS = 45 * 60


class SessionStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETE = "complete"


@dataclass
class AttemptPayload:
    session_id: str
    child_id: str
    question_id: str
    selected_answer: str
    correct_answer: str
    time_taken_seconds: int

    @property
    def is_correct(self) -> bool:
        return self.selected_answer == self.correct_answer


class AttemptSubmitter:
    """Send attempts to ``sink`` on a worker thread without waiting or retrying.

    A failed submission is logged and dropped; session completion reconciles
    the missing rows from the locally held answers.
    """

    def __init__(self, sink: Callable[[AttemptPayload], Any], max_workers: int = 2) -> None:
        self._sink = sink
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="attempt-submit")

    def _deliver(self, payload: AttemptPayload) -> bool:
        try:
            result = self._sink(payload)
        except Exception:
            logger.exception(
                "Attempt submission failed for session %s question %s",
                payload.session_id,
                payload.question_id,
            )
            return False
        if result is False:
            logger.warning(
                "Attempt submission rejected for session %s question %s",
                payload.session_id,
                payload.question_id,
            )
            return False
        return True

    def submit(self, payload: AttemptPayload) -> Future:
        return self._executor.submit(self._deliver, payload)

    def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class SessionStateManager:
    """Track one practice session from first question to completion."""

    def __init__(
        self,
        session_id: str,
        child_id: str,
        session_type: str,
        *,
        submitter: Optional[AttemptSubmitter] = None,
        on_complete: Optional[Callable[[Dict[str, Any]], Any]] = None,
        cache: Optional[SessionDraftCache] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_id = session_id
        self.child_id = child_id
        self.session_type = session_type
        self._submitter = submitter
        self._on_complete = on_complete
        self._cache = cache
        self._clock = clock
        self._lock = threading.RLock()

        self.status = SessionStatus.IDLE
        self.questions: List[QuestionRecord] = []
        self.current_index = 0
        self.answers: Dict[str, str] = {}
        self.question_start_times: Dict[str, float] = {}
        self.question_timings: Dict[str, int] = {}
        self.flagged: set[str] = set()
        self.started_at: Optional[float] = None
        self.time_elapsed = 0
        self.time_limit: Optional[int] = None
        self.completion_result: Any = None

    # ------------------------------------------------------------------
    # read-only views
    # ------------------------------------------------------------------
    @property
    def current_question(self) -> Optional[QuestionRecord]:
        if 0 <= self.current_index < len(self.questions):
            return self.questions[self.current_index]
        return None

    @property
    def is_complete(self) -> bool:
        return self.status is SessionStatus.COMPLETE

    @property
    def is_paused(self) -> bool:
        return self.status is SessionStatus.PAUSED

    @property
    def flagged_questions(self) -> List[str]:
        with self._lock:
            return [question.id for question in self.questions if question.id in self.flagged]

    def is_flagged(self, question_id: Optional[str] = None) -> bool:
        if question_id is None:
            question = self.current_question
            question_id = question.id if question else None
        return question_id in self.flagged

    def selected_answer(self) -> Optional[str]:
        question = self.current_question
        return self.answers.get(question.id) if question else None

    def progress(self) -> Dict[str, int]:
        with self._lock:
            answered = len(self.answers)
            total = len(self.questions)
        percentage = int(math.floor(answered / total * 100 + 0.5)) if total else 0
        return {"answered": answered, "total": total, "percentage": percentage}

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    def start(self, questions: Sequence[QuestionRecord], time_limit: Optional[int] = None) -> None:
        with self._lock:
            if self.status is not SessionStatus.IDLE:
                raise RuntimeError(f"Cannot start a session that is {self.status.value}")
            if not questions:
                raise ValueError("A session needs at least one question")
            self.questions = list(questions)
            self.time_limit = time_limit
            self.started_at = self._clock()
            self.status = SessionStatus.ACTIVE
            self._mark_shown()
            self._mirror()

    def submit_answer(self, answer_id: str) -> bool:
        """Record an answer for the current question; ignored unless active."""

        with self._lock:
            question = self.current_question
            if self.status is not SessionStatus.ACTIVE or question is None:
                return False
            shown_at = self.question_start_times.get(question.id, self._clock())
            spent = max(1, int(math.floor(self._clock() - shown_at)))
            self.answers[question.id] = answer_id
            self.question_timings[question.id] = spent
            self._mirror()
            payload = AttemptPayload(
                session_id=self.session_id,
                child_id=self.child_id,
                question_id=question.id,
                selected_answer=answer_id,
                correct_answer=question.correct_answer,
                time_taken_seconds=spent,
            )
        if self._submitter is not None:
            self._submitter.submit(payload)
        return True

    def toggle_flag(self, question_id: Optional[str] = None) -> bool:
        """Flag or unflag a question for review, the current one by default; ignored unless active."""

        with self._lock:
            if self.status is not SessionStatus.ACTIVE:
                return False
            if question_id is None:
                question = self.current_question
                question_id = question.id if question else None
            if question_id is None or question_id not in {q.id for q in self.questions}:
                return False
            if question_id in self.flagged:
                self.flagged.discard(question_id)
            else:
                self.flagged.add(question_id)
            self._mirror()
            return True

    def next(self) -> bool:
        """Advance to the next question; on the last question complete the session."""

        with self._lock:
            if self.status is not SessionStatus.ACTIVE:
                return False
            if self.current_index < len(self.questions) - 1:
                self.current_index += 1
                self._mark_shown()
                self._mirror()
                return True
        self.complete()
        return True

    def previous(self) -> bool:
        with self._lock:
            if self.status is not SessionStatus.ACTIVE or self.current_index == 0:
                return False
            self.current_index -= 1
            self._mark_shown()
            self._mirror()
            return True

    def pause(self) -> bool:
        with self._lock:
            if self.status is not SessionStatus.ACTIVE:
                return False
            self.status = SessionStatus.PAUSED
            self._mirror()
            return True

    def resume(self) -> bool:
        with self._lock:
            if self.status is not SessionStatus.PAUSED:
                return False
            self.status = SessionStatus.ACTIVE
            self._mirror()
            return True

    def tick(self) -> bool:
        """Advance elapsed time by one second; returns True once the time limit ends the session."""

        with self._lock:
            if self.status is not SessionStatus.ACTIVE:
                return False
            self.time_elapsed += 1
            expired = self.time_limit is not None and self.time_elapsed >= self.time_limit
            if not expired:
                self._mirror()
                return False
        logger.info("Time limit reached for session %s; submitting", self.session_id)
        self.complete()
        return True

    def complete(self) -> Any:
        """Finish the session once; runs the completion handler and clears the draft."""

        with self._lock:
            if self.status is SessionStatus.COMPLETE:
                return self.completion_result
            previous = self.status
            self.status = SessionStatus.COMPLETE
            snapshot = self.snapshot()
        if self._on_complete is not None:
            try:
                self.completion_result = self._on_complete(snapshot)
            except Exception:
                # reopen so a later complete() retries persistence
                with self._lock:
                    self.status = previous
                raise
        if self._cache is not None:
            self._cache.clear(self.session_id)
        return self.completion_result

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def _mark_shown(self) -> None:
        question = self.current_question
        if question is not None and question.id not in self.question_start_times:
            self.question_start_times[question.id] = self._clock()

    def _mirror(self) -> None:
        if self._cache is None or self.status is SessionStatus.COMPLETE:
            return
        try:
            self._cache.save(self.session_id, self.snapshot())
        except OSError:
            logger.warning("Could not mirror session %s to draft cache", self.session_id, exc_info=True)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "sessionId": self.session_id,
                "childId": self.child_id,
                "type": self.session_type,
                "status": self.status.value,
                "questions": [question.model_dump() for question in self.questions],
                "currentIndex": self.current_index,
                "answers": dict(self.answers),
                "questionStartTimes": dict(self.question_start_times),
                "questionTimings": dict(self.question_timings),
                "flaggedQuestions": [q.id for q in self.questions if q.id in self.flagged],
                "startedAt": self.started_at,
                "timeElapsed": self.time_elapsed,
                "timeLimit": self.time_limit,
                "isPaused": self.status is SessionStatus.PAUSED,
                "isComplete": self.status is SessionStatus.COMPLETE,
            }

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any], **kwargs: Any) -> "SessionStateManager":
        manager = cls(snapshot["sessionId"], snapshot["childId"], snapshot["type"], **kwargs)
        manager.questions = [QuestionRecord.model_validate(item) for item in snapshot.get("questions", [])]
        manager.current_index = int(snapshot.get("currentIndex", 0))
        manager.answers = {str(k): str(v) for k, v in (snapshot.get("answers") or {}).items()}
        manager.question_start_times = {
            str(k): float(v) for k, v in (snapshot.get("questionStartTimes") or {}).items()
        }
        manager.question_timings = {str(k): int(v) for k, v in (snapshot.get("questionTimings") or {}).items()}
        manager.flagged = {str(qid) for qid in snapshot.get("flaggedQuestions") or []}
        manager.started_at = snapshot.get("startedAt")
        manager.time_elapsed = int(snapshot.get("timeElapsed", 0))
        manager.time_limit = snapshot.get("timeLimit")
        manager.status = SessionStatus(snapshot.get("status", SessionStatus.ACTIVE.value))
        return manager

    @classmethod
    def resume_from_cache(
        cls,
        cache: SessionDraftCache,
        session_id: str,
        **kwargs: Any,
    ) -> Optional["SessionStateManager"]:
        snapshot = cache.load(session_id)
        if not snapshot or snapshot.get("isComplete"):
            return None
        return cls.from_snapshot(snapshot, cache=cache, **kwargs)


class SessionTimer(threading.Thread):
    """Daemon thread calling ``manager.tick()`` once per interval until completion."""

    def __init__(self, manager: SessionStateManager, interval: float = 1.0) -> None:
        super().__init__(name=f"session-timer-{manager.session_id}", daemon=True)
        self.manager = manager
        self.interval = interval
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self.interval):
            if self.manager.is_complete:
                break
            try:
                self.manager.tick()
            except Exception:
                logger.exception("Session timer tick failed for %s", self.manager.session_id)
                break

    def stop(self) -> None:
        self._stopped.set()
