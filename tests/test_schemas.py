import json
from datetime import datetime, timedelta, timezone

import pytest

from schemas import (
    DEFAULT_EXPLANATION,
    DEFAULT_QUESTION_EMBER_SCORE,
    QuestionRecord,
    format_timestamp,
    normalise_question_text,
    normalise_recommendation_request,
    parse_json_safe,
    parse_timestamp,
)


def _row(**overrides):
    row = {
        "id": "q1",
        "subject": "mathematics",
        "topic": "Fractions",
        "subtopic": None,
        "difficulty": "standard",
        "question_text": "What is 1/2 + 1/4?",
        "options": json.dumps([{"id": "a", "text": "3/4"}, {"id": "b", "text": "1/6"}]),
        "correct_answer": "a",
        "explanations": json.dumps({"step_by_step": "Use a common denominator."}),
        "ember_score": 82,
        "is_published": 1,
        "created_at": "2024-03-01T00:00:00.000000Z",
    }
    row.update(overrides)
    return row


def test_parse_json_safe_falls_back_on_bad_input():
    assert parse_json_safe('{"a": 1}', {}) == {"a": 1}
    assert parse_json_safe("{not json", []) == []
    assert parse_json_safe(None, "fallback") == "fallback"
    assert parse_json_safe([1, 2], []) == [1, 2]


def test_question_record_decodes_json_columns():
    record = QuestionRecord.from_row(_row())
    assert [option.id for option in record.options] == ["a", "b"]
    assert record.explanations.step_by_step == "Use a common denominator."
    assert record.ember_score == 82
    assert "created_at" not in record.model_dump()


def test_question_record_defaults_for_broken_rows():
    record = QuestionRecord.from_row(_row(options="oops", explanations="[1, 2]", ember_score=None))
    assert record.options == []
    assert record.explanations.step_by_step == DEFAULT_EXPLANATION
    assert record.ember_score == DEFAULT_QUESTION_EMBER_SCORE


def test_normalised_text_ignores_case_and_punctuation():
    assert normalise_question_text("  What IS 1/2?! ") == normalise_question_text("what is 1 2")


def test_timestamps_are_fixed_width_utc():
    local = datetime(2024, 3, 20, 9, 30, tzinfo=timezone(timedelta(hours=2)))
    text = format_timestamp(local)
    assert text == "2024-03-20T07:30:00.000000Z"
    assert parse_timestamp(text) == local
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None


@pytest.mark.parametrize(
    "minutes, expected",
    [(None, 10), (20, 13), (3, 5), (100, 30)],
)
def test_recommendation_body_minutes_to_count(minutes, expected):
    recommendation = {"subject": "Mathematics", "topics": ["Fractions"]}
    if minutes is not None:
        recommendation["estimatedMinutes"] = minutes
    request = normalise_recommendation_request({"childId": "child-1", "recommendation": recommendation})
    assert request.question_count == expected
    assert request.subject == "mathematics"
    assert request.topics == ["Fractions"]


def test_flat_body_defaults_and_case_insensitive_difficulty():
    request = normalise_recommendation_request(
        {"childId": "child-1", "subject": "all", "topic": "Grammar", "difficulty": "CHALLENGE"}
    )
    assert request.subject is None
    assert request.difficulty == "challenge"
    assert request.question_count == 10


@pytest.mark.parametrize(
    "body, message",
    [
        ({"subject": "english"}, "Child ID is required"),
        ({"childId": "child-1"}, "Subject is required"),
        ({"childId": "child-1", "recommendation": {}}, "Recommendation configuration is required"),
        ({"childId": "child-1", "subject": "english", "difficulty": "expert"}, "Invalid difficulty"),
        ({"childId": "child-1", "subject": "english", "questionCount": "lots"}, "questionCount"),
    ],
)
def test_recommendation_body_rejections(body, message):
    with pytest.raises(ValueError, match=message):
        normalise_recommendation_request(body)
