"""Question bank loading, validation and syncing into the practice store."""
from __future__ import annotations

import json
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from engines.difficulty import DIFFICULTY_ORDER
from engines.scoring import QualityInputs, score_question_quality
from schemas import DEFAULT_EXPLANATION, QuestionRecord


class QuestionValidationError(ValueError):
    """Raised when a question from the JSON bank fails validation."""


MIN_OPTIONS = 4
MAX_OPTIONS = 5


class QuestionBank:
    """Load and validate multiple-choice practice questions."""

    REQUIRED_FIELDS = ("id", "subject", "topic", "difficulty", "question_text", "options", "correct_answer")

    def __init__(self, path: str | Path = "questions.json", *, store=None, auto_sync: bool = True) -> None:
        self.path = Path(path)
        self.store = store
        self._questions: List[QuestionRecord] = []
        self._load(auto_sync=auto_sync)

    # ------------------------------------------------------------------
    # loading & validation
    # ------------------------------------------------------------------
    def _load(self, *, auto_sync: bool) -> None:
        if not self.path.exists():
            raise FileNotFoundError(f"Question bank file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            try:
                raw = json.load(fh)
            except json.JSONDecodeError as exc:
                raise QuestionValidationError(f"Question bank is not valid JSON: {exc}") from exc

        self._questions = self.validate_entries(raw)

        if auto_sync and self.store is not None and self._questions:
            self.store.upsert_questions(self._questions)

    @classmethod
    def validate_entries(cls, raw: Any) -> List[QuestionRecord]:
        if not isinstance(raw, list):
            raise QuestionValidationError("Question bank root must be a JSON list")

        questions: List[QuestionRecord] = []
        seen_ids: set[str] = set()
        for entry in raw:
            if not isinstance(entry, dict):
                raise QuestionValidationError("Each question must be an object")

            for field in cls.REQUIRED_FIELDS:
                if field not in entry or entry[field] in (None, ""):
                    raise QuestionValidationError(f"Question {entry.get('id')} missing required field '{field}'")

            question_id = str(entry["id"])
            if question_id in seen_ids:
                raise QuestionValidationError(f"Duplicate question id detected: {question_id}")
            seen_ids.add(question_id)

            difficulty = str(entry["difficulty"]).strip().lower()
            if difficulty not in DIFFICULTY_ORDER:
                raise QuestionValidationError(
                    f"Question {question_id} difficulty must be one of {', '.join(DIFFICULTY_ORDER)}"
                )

            options = entry["options"]
            if not isinstance(options, list) or not MIN_OPTIONS <= len(options) <= MAX_OPTIONS:
                raise QuestionValidationError(
                    f"Question {question_id} must have between {MIN_OPTIONS} and {MAX_OPTIONS} options"
                )
            option_ids: List[str] = []
            clean_options: List[Dict[str, str]] = []
            for option in options:
                if not isinstance(option, dict) or not option.get("id") or not str(option.get("text") or "").strip():
                    raise QuestionValidationError(f"Question {question_id} options need an id and text")
                option_ids.append(str(option["id"]))
                clean_options.append({"id": str(option["id"]), "text": str(option["text"])})
            duplicates = [oid for oid, n in Counter(option_ids).items() if n > 1]
            if duplicates:
                raise QuestionValidationError(
                    f"Question {question_id} has duplicate option ids: {', '.join(duplicates)}"
                )

            correct = str(entry["correct_answer"])
            if correct not in option_ids:
                raise QuestionValidationError(f"Question {question_id} correct_answer '{correct}' is not an option id")

            explanations = entry.get("explanations") or {}
            if isinstance(explanations, str):
                explanations = {"step_by_step": explanations}
            if not isinstance(explanations, dict):
                raise QuestionValidationError(f"Question {question_id} explanations must be an object")
            explanations.setdefault("step_by_step", DEFAULT_EXPLANATION)

            ember_score = entry.get("ember_score")
            if ember_score is None:
                ember_score = round(
                    score_question_quality(
                        QualityInputs(
                            curriculum_reference=entry.get("curriculum_reference"),
                            review_status=entry.get("review_status"),
                            helpful_count=int(entry.get("helpful_count") or 0),
                            practice_count=int(entry.get("practice_count") or 0),
                        )
                    ).score
                )
            else:
                try:
                    ember_score = int(ember_score)
                except (TypeError, ValueError) as exc:
                    raise QuestionValidationError(f"Question {question_id} ember_score must be an integer") from exc
                if not 0 <= ember_score <= 100:
                    raise QuestionValidationError(f"Question {question_id} ember_score must be between 0 and 100")

            questions.append(
                QuestionRecord(
                    id=question_id,
                    subject=str(entry["subject"]).strip().lower(),
                    topic=str(entry["topic"]).strip(),
                    subtopic=(str(entry["subtopic"]).strip() if entry.get("subtopic") else None),
                    difficulty=difficulty,
                    question_text=str(entry["question_text"]),
                    options=clean_options,
                    correct_answer=correct,
                    explanations=explanations,
                    ember_score=ember_score,
                    curriculum_reference=entry.get("curriculum_reference"),
                    review_status=entry.get("review_status"),
                    helpful_count=int(entry.get("helpful_count") or 0),
                    practice_count=int(entry.get("practice_count") or 0),
                    is_published=bool(entry.get("is_published", True)),
                )
            )
        return questions

    @property
    def questions(self) -> List[QuestionRecord]:
        return list(self._questions)

    # ------------------------------------------------------------------
    # querying
    # ------------------------------------------------------------------
    def filter_questions(
        self,
        *,
        subject: Optional[str] = None,
        topic: Optional[str] = None,
        difficulty: Optional[str] = None,
    ) -> List[QuestionRecord]:
        results = self._questions
        if subject:
            subject_lower = subject.lower()
            results = [q for q in results if q.subject == subject_lower]
        if topic:
            results = [q for q in results if q.topic == topic]
        if difficulty:
            results = [q for q in results if q.difficulty == difficulty]
        return list(results)

    def coverage(self) -> Dict[str, Dict[str, Dict[str, int]]]:
        """Nested subject -> topic -> difficulty -> count of published questions."""

        table: Dict[str, Dict[str, Dict[str, int]]] = {}
        for question in self._questions:
            if not question.is_published:
                continue
            topics = table.setdefault(question.subject, {})
            tiers = topics.setdefault(question.topic or "", {tier: 0 for tier in DIFFICULTY_ORDER})
            tiers[question.difficulty] += 1
        return table

    # ------------------------------------------------------------------
    # alternative constructors
    # ------------------------------------------------------------------
    @classmethod
    def from_entries(cls, entries: Sequence[Dict[str, Any]], *, store=None, auto_sync: bool = False) -> "QuestionBank":
        bank = cls.__new__(cls)
        bank.path = Path("<in-memory>")
        bank.store = store
        bank._questions = cls.validate_entries(list(entries))
        if auto_sync and store is not None and bank._questions:
            store.upsert_questions(bank._questions)
        return bank


def load_questions(path: str | Path, store=None) -> List[QuestionRecord]:
    """Return validated questions from disk, syncing them when a store is given."""
    return QuestionBank(path, store=store, auto_sync=store is not None).questions


def filter_questions(
    questions: Iterable[QuestionRecord],
    *,
    subject: Optional[str] = None,
    topic: Optional[str] = None,
    difficulty: Optional[str] = None,
) -> List[QuestionRecord]:
    bank = QuestionBank.__new__(QuestionBank)
    bank.path = Path("<in-memory>")
    bank.store = None
    bank._questions = list(questions)
    return bank.filter_questions(subject=subject, topic=topic, difficulty=difficulty)
