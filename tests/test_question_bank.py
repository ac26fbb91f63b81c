import json
from pathlib import Path

import pytest

from question_bank import QuestionBank, QuestionValidationError, filter_questions, load_questions


@pytest.fixture
def sample_bank(tmp_path: Path, question_factory) -> Path:
    questions = [
        question_factory("math-001", subject="Mathematics", difficulty="foundation"),
        question_factory("math-002", difficulty="challenge", subtopic="Simplifying"),
        question_factory(
            "eng-001",
            subject="english",
            topic="Grammar",
            ember_score=None,
            curriculum_reference="KS2 English",
            review_status="reviewed",
        ),
        question_factory("eng-002", subject="english", topic="Grammar", is_published=False),
    ]
    path = tmp_path / "questions.json"
    path.write_text(json.dumps(questions), encoding="utf-8")
    return path


def test_question_bank_loads_and_syncs(temp_store, sample_bank: Path):
    bank = QuestionBank(sample_bank, store=temp_store)
    assert len(bank.questions) == 4

    rows = temp_store.list_questions(subject="mathematics")
    assert {row.id for row in rows} == {"math-001", "math-002"}


def test_question_bank_without_sync_leaves_store_untouched(temp_store, sample_bank: Path):
    QuestionBank(sample_bank, store=temp_store, auto_sync=False)
    assert temp_store.list_questions() == []


def test_subject_is_lowercased_and_quality_scored(sample_bank: Path):
    bank = QuestionBank(sample_bank, auto_sync=False)
    by_id = {q.id: q for q in bank.questions}
    assert by_id["math-001"].subject == "mathematics"
    assert by_id["math-001"].ember_score == 80
    # 40 curriculum + 40 reviewed + 16 community
    assert by_id["eng-001"].ember_score == 96


def test_coverage_counts_published_questions(sample_bank: Path):
    coverage = QuestionBank(sample_bank, auto_sync=False).coverage()
    assert coverage["mathematics"]["Fractions"] == {"foundation": 1, "standard": 0, "challenge": 1}
    assert coverage["english"]["Grammar"] == {"foundation": 0, "standard": 1, "challenge": 0}


def test_filtering(sample_bank: Path):
    bank = QuestionBank(sample_bank, auto_sync=False)
    assert [q.id for q in bank.filter_questions(subject="English")] == ["eng-001", "eng-002"]
    assert [q.id for q in bank.filter_questions(difficulty="challenge")] == ["math-002"]
    assert [q.id for q in filter_questions(bank.questions, topic="Grammar", difficulty="standard")] == [
        "eng-001",
        "eng-002",
    ]


def test_load_questions_helper(temp_store, sample_bank: Path):
    questions = load_questions(sample_bank, store=temp_store)
    assert len(questions) == 4
    assert len(temp_store.list_questions(published_only=False)) == 4


def test_string_explanation_and_missing_explanation(question_factory):
    with_text = question_factory("q1", explanations="Halve the top and bottom.")
    without = question_factory("q2")
    del without["explanations"]
    first, second = QuestionBank.validate_entries([with_text, without])
    assert first.explanations.step_by_step == "Halve the top and bottom."
    assert second.explanations.step_by_step == "Explanation not available."


@pytest.mark.parametrize(
    "overrides",
    [
        {"question_text": ""},
        {"difficulty": "expert"},
        {"correct_answer": "z"},
        {"options": [{"id": "a", "text": "One"}, {"id": "b", "text": "Two"}]},
        {"options": [{"id": "a", "text": "x"}, {"id": "a", "text": "y"}, {"id": "b", "text": "z"}, {"id": "c", "text": "w"}]},
        {"options": [{"id": "a", "text": " "}, {"id": "b", "text": "y"}, {"id": "c", "text": "z"}, {"id": "d", "text": "w"}]},
        {"ember_score": 120},
        {"ember_score": "high"},
        {"explanations": ["not", "an", "object"]},
    ],
)
def test_question_validation_rejects(question_factory, overrides):
    entry = question_factory("bad-1")
    entry.update(overrides)
    with pytest.raises(QuestionValidationError):
        QuestionBank.validate_entries([entry])


def test_duplicate_ids_and_bad_roots(question_factory):
    with pytest.raises(QuestionValidationError):
        QuestionBank.validate_entries([question_factory("q1"), question_factory("q1")])
    with pytest.raises(QuestionValidationError):
        QuestionBank.validate_entries({"questions": []})
    with pytest.raises(QuestionValidationError):
        QuestionBank.validate_entries(["q1"])


def test_invalid_json_and_missing_file(tmp_path: Path):
    broken = tmp_path / "broken.json"
    broken.write_text("[{", encoding="utf-8")
    with pytest.raises(QuestionValidationError):
        QuestionBank(broken, auto_sync=False)
    with pytest.raises(FileNotFoundError):
        QuestionBank(tmp_path / "missing.json", auto_sync=False)
