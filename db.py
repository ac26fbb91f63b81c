"""SQLite-backed practice store.

``PracticeStore`` owns the questions, sessions, attempts and per-subject
Ember Scores. One store is constructed per process (see ``app.py``) and handed
to the engines that need it. Rows are mapped to the models in ``schemas`` on
the way out, and ``sqlite3.Error`` propagates to the caller.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from uuid import uuid4

from db_pool import SQLiteConnectionPool
from env_validation import Settings
from schemas import (
    HeatmapCell,
    PracticeSessionRecord,
    QuestionAttemptRecord,
    QuestionRecord,
    WeaknessHeatmap,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

DEFAULT_CHILD_EMBER_SCORE = 75
HEATMAP_WINDOW_DAYS = 30
HEATMAP_MIN_ATTEMPTS = 2
TREND_WINDOW_DAYS = 7
TREND_THRESHOLD = 5.0

MASTERY_BANDS: Tuple[Tuple[float, str], ...] = (
    (85.0, "mastered"),
    (70.0, "proficient"),
    (55.0, "developing"),
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        email TEXT,
        subscription_tier TEXT DEFAULT 'free',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS children (
        id TEXT PRIMARY KEY,
        parent_id TEXT,
        name TEXT NOT NULL,
        year_group INTEGER,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS questions (
        id TEXT PRIMARY KEY,
        subject TEXT NOT NULL,
        topic TEXT,
        subtopic TEXT,
        difficulty TEXT NOT NULL CHECK (difficulty IN ('foundation', 'standard', 'challenge')),
        question_text TEXT NOT NULL,
        options TEXT NOT NULL,
        correct_answer TEXT NOT NULL,
        explanations TEXT,
        ember_score INTEGER,
        curriculum_reference TEXT,
        review_status TEXT,
        helpful_count INTEGER NOT NULL DEFAULT 0,
        practice_count INTEGER NOT NULL DEFAULT 0,
        is_published INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_questions_subject_topic ON questions(subject, topic)",
    """
    CREATE TABLE IF NOT EXISTS practice_sessions (
        id TEXT PRIMARY KEY,
        child_id TEXT NOT NULL REFERENCES children(id),
        session_type TEXT NOT NULL,
        question_ids TEXT NOT NULL,
        total_questions INTEGER NOT NULL,
        correct_answers INTEGER,
        time_limit_seconds INTEGER,
        time_spent_seconds INTEGER,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        mock_template_id TEXT,
        flagged_questions TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS question_attempts (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES practice_sessions(id),
        child_id TEXT NOT NULL,
        question_id TEXT NOT NULL REFERENCES questions(id),
        selected_answer TEXT,
        is_correct INTEGER NOT NULL,
        time_taken_seconds INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_attempts_child_created ON question_attempts(child_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_attempts_session ON question_attempts(session_id)",
    """
    CREATE TABLE IF NOT EXISTS child_ember_scores (
        child_id TEXT NOT NULL,
        subject TEXT NOT NULL,
        score INTEGER NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (child_id, subject)
    )
    """,
)


# columns added after the first release; older databases get them on init()
_ADDED_COLUMNS: Tuple[Tuple[str, str, str], ...] = (
    ("practice_sessions", "mock_template_id", "TEXT"),
    ("practice_sessions", "flagged_questions", "TEXT NOT NULL DEFAULT '[]'"),
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _add_column_if_missing(con: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    existing = {row[1] for row in con.execute(f"PRAGMA table_info({table})").fetchall()}
    if column not in existing:
        con.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def mastery_level(accuracy: float) -> str:
    for threshold, label in MASTERY_BANDS:
        if accuracy >= threshold:
            return label
    return "needs_focus"


def _trend(recent_n: int, recent_c: int, prior_n: int, prior_c: int) -> str:
    if not recent_n or not prior_n:
        return "stable"
    delta = recent_c / recent_n * 100.0 - prior_c / prior_n * 100.0
    if delta > TREND_THRESHOLD:
        return "improving"
    if delta < -TREND_THRESHOLD:
        return "declining"
    return "stable"


class PracticeStore:
    """Data access for the practice core."""

    def __init__(self, database: str, max_connections: int = 5) -> None:
        self.database = database
        self._pool = SQLiteConnectionPool(database, max_connections=max_connections)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PracticeStore":
        return cls(settings.db_path, max_connections=settings.db_max_connections)

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------
    def _exec(self, sql: str, params: Iterable = ()) -> int:
        with self._pool.get_connection() as con:
            cur = con.execute(sql, tuple(params))
            con.commit()
            return cur.rowcount

    def _query(self, sql: str, params: Union[Iterable, Mapping[str, Any]] = ()) -> List[sqlite3.Row]:
        bound = params if isinstance(params, Mapping) else tuple(params)
        with self._pool.get_connection() as con:
            return con.execute(sql, bound).fetchall()

    def init(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._pool.get_connection() as con:
            for statement in _SCHEMA:
                con.execute(statement)
            for table, column, definition in _ADDED_COLUMNS:
                _add_column_if_missing(con, table, column, definition)
            con.commit()
        logger.info("Practice store ready at %s", self.database)

    def close(self) -> None:
        self._pool.close_all()

    # ------------------------------------------------------------------
    # accounts
    # ------------------------------------------------------------------
    def upsert_profile(self, profile_id: str, email: Optional[str] = None, subscription_tier: str = "free") -> None:
        self._exec(
            """
            INSERT INTO profiles (id, email, subscription_tier, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                email = excluded.email,
                subscription_tier = excluded.subscription_tier
            """,
            (profile_id, email, subscription_tier, format_timestamp(_now())),
        )

    def upsert_child(
        self,
        child_id: str,
        name: str,
        *,
        parent_id: Optional[str] = None,
        year_group: Optional[int] = None,
        is_active: bool = True,
    ) -> None:
        self._exec(
            """
            INSERT INTO children (id, parent_id, name, year_group, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                parent_id = excluded.parent_id,
                name = excluded.name,
                year_group = excluded.year_group,
                is_active = excluded.is_active
            """,
            (child_id, parent_id, name, year_group, int(is_active), format_timestamp(_now())),
        )

    def get_child(self, child_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query(
            "SELECT id, parent_id, name, year_group, is_active FROM children WHERE id = ?",
            (child_id,),
        )
        if not rows:
            return None
        child = dict(rows[0])
        child["is_active"] = bool(child["is_active"])
        return child

    # ------------------------------------------------------------------
    # questions
    # ------------------------------------------------------------------
    def upsert_questions(self, questions: Iterable[QuestionRecord]) -> int:
        created_at = format_timestamp(_now())
        rows = [
            (
                q.id,
                q.subject,
                q.topic,
                q.subtopic,
                q.difficulty,
                q.question_text,
                json.dumps([option.model_dump() for option in q.options]),
                q.correct_answer,
                json.dumps(q.explanations.model_dump()),
                q.ember_score,
                q.curriculum_reference,
                q.review_status,
                q.helpful_count,
                q.practice_count,
                int(q.is_published),
                created_at,
            )
            for q in questions
        ]
        if not rows:
            return 0
        with self._pool.get_connection() as con:
            con.executemany(
                """
                INSERT INTO questions (
                    id, subject, topic, subtopic, difficulty, question_text, options,
                    correct_answer, explanations, ember_score, curriculum_reference,
                    review_status, helpful_count, practice_count, is_published, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    subject = excluded.subject,
                    topic = excluded.topic,
                    subtopic = excluded.subtopic,
                    difficulty = excluded.difficulty,
                    question_text = excluded.question_text,
                    options = excluded.options,
                    correct_answer = excluded.correct_answer,
                    explanations = excluded.explanations,
                    ember_score = excluded.ember_score,
                    curriculum_reference = excluded.curriculum_reference,
                    review_status = excluded.review_status,
                    helpful_count = excluded.helpful_count,
                    is_published = excluded.is_published
                """,
                rows,
            )
            con.commit()
        return len(rows)

    def list_questions(
        self,
        *,
        subject: Optional[str] = None,
        topics: Optional[Sequence[str]] = None,
        difficulty: Optional[str] = None,
        exclude_ids: Optional[Iterable[str]] = None,
        published_only: bool = True,
    ) -> List[QuestionRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if published_only:
            clauses.append("is_published = 1")
        if subject:
            clauses.append("subject = ?")
            params.append(subject)
        if topics:
            topic_list = list(topics)
            clauses.append(f"topic IN ({_placeholders(topic_list)})")
            params.extend(topic_list)
        if difficulty:
            clauses.append("difficulty = ?")
            params.append(difficulty)
        excluded = list(exclude_ids or [])
        if excluded:
            clauses.append(f"id NOT IN ({_placeholders(excluded)})")
            params.extend(excluded)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._query(f"SELECT * FROM questions {where} ORDER BY created_at, id", params)
        return [QuestionRecord.from_row(row) for row in rows]

    def get_questions(self, question_ids: Sequence[str]) -> List[QuestionRecord]:
        """Return questions for ``question_ids`` in the order given."""
        ids = list(dict.fromkeys(question_ids))
        if not ids:
            return []
        rows = self._query(f"SELECT * FROM questions WHERE id IN ({_placeholders(ids)})", ids)
        by_id = {row["id"]: QuestionRecord.from_row(row) for row in rows}
        return [by_id[qid] for qid in ids if qid in by_id]

    # ------------------------------------------------------------------
    # attempt history
    # ------------------------------------------------------------------
    def recent_question_ids(self, child_id: str, since: datetime, limit: int) -> List[str]:
        rows = self._query(
            """
            SELECT question_id FROM question_attempts
            WHERE child_id = ? AND created_at >= ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (child_id, format_timestamp(since), int(limit)),
        )
        return list(dict.fromkeys(row["question_id"] for row in rows))

    def recent_correctness(self, child_id: str, limit: int, subject: Optional[str] = None) -> List[bool]:
        """Newest-first correctness flags for the child's latest attempts."""
        if subject:
            rows = self._query(
                """
                SELECT a.is_correct FROM question_attempts a
                JOIN questions q ON q.id = a.question_id
                WHERE a.child_id = ? AND q.subject = ?
                ORDER BY a.created_at DESC
                LIMIT ?
                """,
                (child_id, subject, int(limit)),
            )
        else:
            rows = self._query(
                """
                SELECT is_correct FROM question_attempts
                WHERE child_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (child_id, int(limit)),
            )
        return [bool(row["is_correct"]) for row in rows]

    def topic_outcomes(self, child_id: str, topic: str) -> List[Tuple[bool, str]]:
        """Oldest-first (correct, difficulty) pairs for the child in ``topic``."""
        rows = self._query(
            """
            SELECT a.is_correct, q.difficulty FROM question_attempts a
            JOIN questions q ON q.id = a.question_id
            WHERE a.child_id = ? AND q.topic = ?
            ORDER BY a.created_at, a.id
            """,
            (child_id, topic),
        )
        return [(bool(row["is_correct"]), row["difficulty"]) for row in rows]

    def last_attempt_times(self, child_id: str, question_ids: Sequence[str]) -> Dict[str, datetime]:
        ids = list(question_ids)
        if not ids:
            return {}
        rows = self._query(
            f"""
            SELECT question_id, MAX(created_at) AS last_at FROM question_attempts
            WHERE child_id = ? AND question_id IN ({_placeholders(ids)})
            GROUP BY question_id
            """,
            [child_id, *ids],
        )
        result: Dict[str, datetime] = {}
        for row in rows:
            parsed = parse_timestamp(row["last_at"])
            if parsed is not None:
                result[row["question_id"]] = parsed
        return result

    def subtopic_stats(self, child_id: str, topic: Optional[str] = None) -> Dict[str, Tuple[int, int]]:
        """Map subtopic -> (attempts, correct) for the child."""
        params: List[Any] = [child_id]
        topic_clause = ""
        if topic:
            topic_clause = "AND q.topic = ?"
            params.append(topic)
        rows = self._query(
            f"""
            SELECT q.subtopic AS subtopic, COUNT(*) AS attempts, SUM(a.is_correct) AS correct
            FROM question_attempts a
            JOIN questions q ON q.id = a.question_id
            WHERE a.child_id = ? AND q.subtopic IS NOT NULL {topic_clause}
            GROUP BY q.subtopic
            """,
            params,
        )
        return {row["subtopic"]: (int(row["attempts"]), int(row["correct"] or 0)) for row in rows}

    # ------------------------------------------------------------------
    # sessions & attempts
    # ------------------------------------------------------------------
    def create_session(
        self,
        child_id: str,
        session_type: str,
        question_ids: Sequence[str],
        *,
        time_limit_seconds: Optional[int] = None,
        started_at: Optional[datetime] = None,
        mock_template_id: Optional[str] = None,
    ) -> PracticeSessionRecord:
        session_id = str(uuid4())
        started = started_at or _now()
        self._exec(
            """
            INSERT INTO practice_sessions
                (id, child_id, session_type, question_ids, total_questions, time_limit_seconds, started_at,
                 mock_template_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                child_id,
                session_type,
                json.dumps(list(question_ids)),
                len(question_ids),
                time_limit_seconds,
                format_timestamp(started),
                mock_template_id,
            ),
        )
        session = self.get_session(session_id)
        if session is None:
            raise sqlite3.DatabaseError(f"Session {session_id} missing after insert")
        return session

    def get_session(self, session_id: str) -> Optional[PracticeSessionRecord]:
        rows = self._query("SELECT * FROM practice_sessions WHERE id = ?", (session_id,))
        return PracticeSessionRecord.from_row(rows[0]) if rows else None

    def finalize_session(
        self,
        session_id: str,
        *,
        correct_answers: int,
        completed_at: datetime,
        time_spent_seconds: Optional[int] = None,
        flagged_questions: Optional[Sequence[str]] = None,
    ) -> bool:
        flagged = None if flagged_questions is None else json.dumps(list(flagged_questions))
        updated = self._exec(
            """
            UPDATE practice_sessions
            SET correct_answers = ?, completed_at = ?, time_spent_seconds = COALESCE(?, time_spent_seconds),
                flagged_questions = COALESCE(?, flagged_questions)
            WHERE id = ?
            """,
            (correct_answers, format_timestamp(completed_at), time_spent_seconds, flagged, session_id),
        )
        return updated > 0

    def set_flagged_questions(self, session_id: str, question_ids: Sequence[str]) -> bool:
        updated = self._exec(
            "UPDATE practice_sessions SET flagged_questions = ? WHERE id = ?",
            (json.dumps(list(question_ids)), session_id),
        )
        return updated > 0

    def record_attempt(
        self,
        *,
        session_id: str,
        child_id: str,
        question_id: str,
        selected_answer: Optional[str],
        is_correct: bool,
        time_taken_seconds: Optional[int] = None,
        created_at: Optional[datetime] = None,
        open_session_only: bool = False,
    ) -> Optional[QuestionAttemptRecord]:
        """Append one attempt row.

        With ``open_session_only`` the insert is skipped (and None returned) when
        the session is already finalized or its latest attempt at the question
        carries the same answer. The check and the insert run as a single statement.
        """

        attempt_id = str(uuid4())
        created = created_at or _now()
        values = (
            attempt_id,
            session_id,
            child_id,
            question_id,
            selected_answer,
            int(bool(is_correct)),
            time_taken_seconds,
            format_timestamp(created),
        )
        with self._pool.get_connection() as con:
            if open_session_only:
                cur = con.execute(
                    """
                    INSERT INTO question_attempts
                        (id, session_id, child_id, question_id, selected_answer, is_correct, time_taken_seconds, created_at)
                    SELECT ?, ?, ?, ?, ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM practice_sessions WHERE id = ? AND completed_at IS NOT NULL
                    )
                    AND COALESCE((
                        SELECT selected_answer IS ? FROM question_attempts
                        WHERE session_id = ? AND question_id = ?
                        ORDER BY created_at DESC, id DESC
                        LIMIT 1
                    ), 0) = 0
                    """,
                    values + (session_id, selected_answer, session_id, question_id),
                )
            else:
                cur = con.execute(
                    """
                    INSERT INTO question_attempts
                        (id, session_id, child_id, question_id, selected_answer, is_correct, time_taken_seconds, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values,
                )
            if cur.rowcount == 0:
                con.commit()
                return None
            con.execute(
                "UPDATE questions SET practice_count = practice_count + 1 WHERE id = ?",
                (question_id,),
            )
            con.commit()
        return QuestionAttemptRecord(
            id=attempt_id,
            session_id=session_id,
            child_id=child_id,
            question_id=question_id,
            selected_answer=selected_answer,
            is_correct=bool(is_correct),
            time_taken_seconds=time_taken_seconds,
            created_at=created,
        )

    def list_session_attempts(self, session_id: str) -> List[QuestionAttemptRecord]:
        rows = self._query(
            "SELECT * FROM question_attempts WHERE session_id = ? ORDER BY created_at, id",
            (session_id,),
        )
        return [QuestionAttemptRecord.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # per-subject Ember Score
    # ------------------------------------------------------------------
    def get_ember_score(self, child_id: str, subject: str) -> int:
        rows = self._query(
            "SELECT score FROM child_ember_scores WHERE child_id = ? AND subject = ?",
            (child_id, subject),
        )
        return int(rows[0]["score"]) if rows else DEFAULT_CHILD_EMBER_SCORE

    def set_ember_score(self, child_id: str, subject: str, score: int) -> None:
        self._exec(
            """
            INSERT INTO child_ember_scores (child_id, subject, score, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(child_id, subject) DO UPDATE SET
                score = excluded.score,
                updated_at = excluded.updated_at
            """,
            (child_id, subject, int(score), format_timestamp(_now())),
        )

    # ------------------------------------------------------------------
    # aggregates
    # ------------------------------------------------------------------
    def weakness_heatmap(
        self,
        child_id: str,
        now: Optional[datetime] = None,
        *,
        window_days: int = HEATMAP_WINDOW_DAYS,
        min_attempts: int = HEATMAP_MIN_ATTEMPTS,
    ) -> WeaknessHeatmap:
        """Per subject/topic accuracy over the trailing window."""

        now = now or _now()
        window_start = format_timestamp(now - timedelta(days=window_days))
        recent_start = format_timestamp(now - timedelta(days=TREND_WINDOW_DAYS))
        prior_start = format_timestamp(now - timedelta(days=2 * TREND_WINDOW_DAYS))
        rows = self._query(
            """
            SELECT
                q.subject AS subject,
                q.topic AS topic,
                COUNT(*) AS attempts,
                SUM(a.is_correct) AS correct,
                MAX(a.created_at) AS last_practiced_at,
                SUM(CASE WHEN a.created_at >= :recent THEN 1 ELSE 0 END) AS recent_n,
                SUM(CASE WHEN a.created_at >= :recent THEN a.is_correct ELSE 0 END) AS recent_c,
                SUM(CASE WHEN a.created_at >= :prior AND a.created_at < :recent THEN 1 ELSE 0 END) AS prior_n,
                SUM(CASE WHEN a.created_at >= :prior AND a.created_at < :recent THEN a.is_correct ELSE 0 END) AS prior_c
            FROM question_attempts a
            JOIN questions q ON q.id = a.question_id
            WHERE a.child_id = :child AND a.created_at >= :since AND a.created_at <= :until
                AND q.topic IS NOT NULL
            GROUP BY q.subject, q.topic
            HAVING COUNT(*) >= :min_attempts
            ORDER BY q.subject, q.topic
            """,
            {
                "recent": recent_start,
                "prior": prior_start,
                "child": child_id,
                "since": window_start,
                "until": format_timestamp(now),
                "min_attempts": int(min_attempts),
            },
        )
        cells: List[HeatmapCell] = []
        summary = {label: 0 for _, label in MASTERY_BANDS}
        summary["needs_focus"] = 0
        for row in rows:
            attempts = int(row["attempts"])
            correct = int(row["correct"] or 0)
            accuracy = round(correct / attempts * 100.0, 1) if attempts else 0.0
            level = mastery_level(accuracy)
            summary[level] += 1
            cells.append(
                HeatmapCell(
                    subject=row["subject"],
                    topic=row["topic"],
                    attempts=attempts,
                    correct=correct,
                    accuracy=accuracy,
                    last_practiced_at=parse_timestamp(row["last_practiced_at"]),
                    trend=_trend(
                        int(row["recent_n"] or 0),
                        int(row["recent_c"] or 0),
                        int(row["prior_n"] or 0),
                        int(row["prior_c"] or 0),
                    ),
                    mastery_level=level,
                )
            )
        summary["total_topics"] = len(cells)
        return WeaknessHeatmap(
            child_id=child_id,
            generated_at=now,
            window_days=window_days,
            cells=cells,
            summary=summary,
        )
