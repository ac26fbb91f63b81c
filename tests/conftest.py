import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def make_question(
    question_id: str,
    *,
    subject: str = "mathematics",
    topic: str = "Fractions",
    subtopic: Optional[str] = None,
    difficulty: str = "standard",
    correct_answer: str = "a",
    text: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    entry = {
        "id": question_id,
        "subject": subject,
        "topic": topic,
        "difficulty": difficulty,
        "question_text": text or f"Question {question_id}?",
        "options": [
            {"id": "a", "text": "Alpha"},
            {"id": "b", "text": "Bravo"},
            {"id": "c", "text": "Charlie"},
            {"id": "d", "text": "Delta"},
        ],
        "correct_answer": correct_answer,
        "explanations": {"step_by_step": f"Work through {question_id}."},
        "ember_score": 80,
    }
    if subtopic:
        entry["subtopic"] = subtopic
    entry.update(extra)
    return entry


@pytest.fixture
def question_factory():
    return make_question


@pytest.fixture
def temp_store(tmp_path):
    from db import PracticeStore

    store = PracticeStore(str(tmp_path / "test.db"), max_connections=4)
    store.init()
    store.upsert_child("child-1", "Ada", parent_id="parent-1", year_group=5)
    yield store
    store.close()


@pytest.fixture
def seed_questions(temp_store):
    """Insert question dicts into ``temp_store`` and return the records."""
    from question_bank import QuestionBank

    def _seed(entries: List[Dict[str, Any]]):
        return QuestionBank.from_entries(entries, store=temp_store, auto_sync=True).questions

    return _seed
