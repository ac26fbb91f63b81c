import random
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from engines.question_selector import (
    AdaptiveCriteria,
    QuestionCriteria,
    QuestionSelector,
    apportion,
    balanced_quotas,
    dedupe_questions,
)
from question_bank import QuestionBank


def _selector(store, seed=7):
    return QuestionSelector(store, rng=random.Random(seed))


def _record_history(store, question_ids, correct=True, when=None):
    session = store.create_session("child-1", "quick", question_ids)
    for question_id in question_ids:
        store.record_attempt(
            session_id=session.id,
            child_id="child-1",
            question_id=question_id,
            selected_answer="a" if correct else "b",
            is_correct=correct,
            time_taken_seconds=20,
            created_at=when,
        )


def test_criteria_validation_and_default_counts():
    assert QuestionCriteria("child-1").resolved_count == 10
    assert QuestionCriteria("child-1", session_type="mock").resolved_count == 50
    assert QuestionCriteria("child-1", session_type="quick_byte").resolved_count == 5
    assert QuestionCriteria("child-1", count=3).resolved_count == 3
    assert QuestionCriteria("child-1", topics=()).topics is None
    with pytest.raises(ValueError):
        QuestionCriteria("child-1", session_type="marathon")
    with pytest.raises(ValueError):
        QuestionCriteria("child-1", difficulty="expert")
    with pytest.raises(ValueError):
        QuestionCriteria("child-1", count=0)


def test_apportion_uses_largest_remainders():
    assert apportion(10, {"foundation": 0.2, "standard": 0.3, "challenge": 0.5}) == {
        "foundation": 2,
        "standard": 3,
        "challenge": 5,
    }
    shares = apportion(5, {"foundation": 0.5, "standard": 0.4, "challenge": 0.1})
    assert sum(shares.values()) == 5
    assert shares["foundation"] == 3
    assert apportion(0, {"a": 1.0}) == {"a": 0}


def test_balanced_quotas_respread_capacity():
    assert balanced_quotas(10, {"english": 2, "mathematics": 10}) == {"english": 2, "mathematics": 8}
    assert balanced_quotas(9, {"a": 10, "b": 10, "c": 10}) == {"a": 3, "b": 3, "c": 3}
    assert balanced_quotas(10, {"a": 3, "b": 2}) == {"a": 3, "b": 2}


def test_dedupe_drops_repeated_text(question_factory):
    questions = QuestionBank.validate_entries(
        [
            question_factory("q1", text="What is 1/2 of 10?"),
            question_factory("q2", text="what is 1/2 of 10"),
            question_factory("q3", text="What is 1/4 of 8?"),
        ]
    )
    assert [q.id for q in dedupe_questions(questions)] == ["q1", "q3"]


def test_select_returns_requested_count_without_duplicates(temp_store, seed_questions, question_factory):
    seed_questions([question_factory(f"m{i}") for i in range(20)])
    selected = _selector(temp_store).select_questions(QuestionCriteria("child-1", "quick"))
    assert len(selected) == 10
    assert len({q.id for q in selected}) == 10


def test_select_balances_subjects_when_mixed(temp_store, seed_questions, question_factory):
    seed_questions(
        [question_factory(f"m{i}", subject="mathematics") for i in range(10)]
        + [question_factory(f"e{i}", subject="english", topic="Grammar") for i in range(10)]
    )
    selected = _selector(temp_store).select_questions(QuestionCriteria("child-1", "quick"))
    assert Counter(q.subject for q in selected) == {"mathematics": 5, "english": 5}


def test_select_spreads_shortfall_to_other_subjects(temp_store, seed_questions, question_factory):
    seed_questions(
        [question_factory(f"m{i}", subject="mathematics") for i in range(10)]
        + [question_factory(f"e{i}", subject="english", topic="Grammar") for i in range(2)]
    )
    selected = _selector(temp_store).select_questions(QuestionCriteria("child-1", "quick"))
    assert Counter(q.subject for q in selected) == {"mathematics": 8, "english": 2}


def test_select_skips_recent_questions(temp_store, seed_questions, question_factory):
    seed_questions([question_factory(f"m{i}") for i in range(12)])
    _record_history(temp_store, ["m0", "m1", "m2"], when=datetime.now(timezone.utc) - timedelta(days=1))

    selected = _selector(temp_store).select_questions(QuestionCriteria("child-1", "quick", count=5))
    assert len(selected) == 5
    assert not {q.id for q in selected} & {"m0", "m1", "m2"}


def test_select_allows_repeats_when_fresh_pool_is_short(temp_store, seed_questions, question_factory):
    seed_questions([question_factory(f"m{i}") for i in range(6)])
    _record_history(temp_store, ["m0", "m1", "m2"], when=datetime.now(timezone.utc) - timedelta(hours=2))

    selected = _selector(temp_store).select_questions(QuestionCriteria("child-1", "quick", count=5))
    assert len(selected) == 5


def test_old_attempts_do_not_count_as_recent(temp_store, seed_questions, question_factory):
    seed_questions([question_factory(f"m{i}") for i in range(6)])
    _record_history(temp_store, ["m0", "m1"], when=datetime.now(timezone.utc) - timedelta(days=30))

    selected = _selector(temp_store).select_questions(QuestionCriteria("child-1", "quick", count=6))
    assert {q.id for q in selected} == {f"m{i}" for i in range(6)}


def test_select_honours_difficulty_filter(temp_store, seed_questions, question_factory):
    seed_questions(
        [question_factory(f"f{i}", difficulty="foundation") for i in range(5)]
        + [question_factory(f"c{i}", difficulty="challenge") for i in range(5)]
    )
    selected = _selector(temp_store).select_questions(
        QuestionCriteria("child-1", "quick", count=4, difficulty="challenge")
    )
    assert len(selected) == 4
    assert {q.difficulty for q in selected} == {"challenge"}


def test_strong_recent_accuracy_skews_toward_challenge(temp_store, seed_questions, question_factory):
    history = seed_questions([question_factory(f"h{i}", subject="english", topic="Grammar") for i in range(10)])
    _record_history(temp_store, [q.id for q in history], correct=True)
    seed_questions(
        [question_factory(f"{tier[0]}{i}", difficulty=tier) for tier in ("foundation", "standard", "challenge") for i in range(10)]
    )

    selected = _selector(temp_store).select_questions(
        QuestionCriteria("child-1", "quick", count=10, subject="mathematics")
    )
    assert Counter(q.difficulty for q in selected) == {"foundation": 2, "standard": 3, "challenge": 5}


def test_no_match_returns_empty_and_fallback_drops_topics(temp_store, seed_questions, question_factory):
    seed_questions([question_factory(f"m{i}") for i in range(5)])
    selector = _selector(temp_store)
    criteria = QuestionCriteria("child-1", "focus", count=3, topics=("Long Division",))

    assert selector.select_questions(criteria) == []
    fallback = selector.select_with_fallback(criteria)
    assert len(fallback) == 3
    assert {q.topic for q in fallback} == {"Fractions"}


def test_recommended_difficulty_uses_subject_history(temp_store, seed_questions, question_factory):
    history = seed_questions([question_factory(f"h{i}") for i in range(6)])
    _record_history(temp_store, [q.id for q in history], correct=True)
    selector = _selector(temp_store)
    assert selector.recommended_difficulty("child-1", "mathematics") == "challenge"
    assert selector.recommended_difficulty("child-1", "english") == "standard"


def test_next_question_prefers_matching_difficulty(temp_store, seed_questions, question_factory):
    seed_questions(
        [
            question_factory("f1", difficulty="foundation"),
            question_factory("s1", difficulty="standard"),
            question_factory("c1", difficulty="challenge"),
        ]
    )
    selector = _selector(temp_store)
    chosen = selector.select_next_question(AdaptiveCriteria("child-1", "Fractions", "challenge"))
    assert chosen.id == "c1"

    chosen = selector.select_next_question(
        AdaptiveCriteria("child-1", "Fractions", "challenge", exclude_ids=["c1"])
    )
    assert chosen.id == "s1"

    assert selector.select_next_question(
        AdaptiveCriteria("child-1", "Fractions", "challenge", exclude_ids=["f1", "s1", "c1"])
    ) is None


def test_next_question_avoids_just_answered(temp_store, seed_questions, question_factory):
    seed_questions([question_factory("s1"), question_factory("s2")])
    _record_history(temp_store, ["s1"], when=datetime.now(timezone.utc) - timedelta(hours=1))

    chosen = _selector(temp_store).select_next_question(AdaptiveCriteria("child-1", "Fractions", "standard"))
    assert chosen.id == "s2"


def test_multiple_selection_spreads_subtopics(temp_store, seed_questions, question_factory):
    seed_questions(
        [
            question_factory("a1", subtopic="Adding"),
            question_factory("a2", subtopic="Adding"),
            question_factory("b1", subtopic="Simplifying"),
        ]
    )
    picked = _selector(temp_store).select_multiple_questions(
        AdaptiveCriteria("child-1", "Fractions", "standard"), 2
    )
    assert len(picked) == 2
    assert {q.subtopic for q in picked} == {"Adding", "Simplifying"}


def test_explain_question_score_breakdown(temp_store, seed_questions, question_factory):
    [question] = seed_questions([question_factory("s1", subtopic="Adding")])
    scored = _selector(temp_store).explain_question_score(
        question, AdaptiveCriteria("child-1", "Fractions", "foundation")
    )
    data = scored.to_dict()
    assert data["breakdown"] == {
        "difficultyMatch": 0.5,
        "topicCoverage": 1.0,
        "recencyAvoidance": 1.0,
        "weakAreaFocus": 0.7,
    }
    assert data["score"] == pytest.approx(0.2 + 0.25 + 0.2 + 0.105)


def _mini_template():
    from engines.mock_templates import MockTemplateCatalog

    return MockTemplateCatalog.from_entries(
        [
            {
                "id": "mini",
                "total_questions": 8,
                "time_limit_minutes": 10,
                "difficulty_distribution": {"foundation": 0.25, "standard": 0.5, "challenge": 0.25},
                "subject_distribution": {"mathematics": 4, "english": 4, "verbal_reasoning": 0},
            }
        ]
    ).get("mini")


def test_mock_selection_follows_template_quotas(temp_store, seed_questions, question_factory):
    entries = []
    for subject in ("mathematics", "english"):
        for tier in ("foundation", "standard", "challenge"):
            entries += [
                question_factory(f"{subject[:2]}-{tier[:2]}{i}", subject=subject, difficulty=tier) for i in range(4)
            ]
    seed_questions(entries)

    selected = _selector(temp_store).select_mock_questions("child-1", _mini_template())

    assert [q.subject for q in selected] == ["mathematics"] * 4 + ["english"] * 4
    for subject in ("mathematics", "english"):
        tiers = Counter(q.difficulty for q in selected if q.subject == subject)
        assert tiers == {"foundation": 1, "standard": 2, "challenge": 1}
    assert len({q.id for q in selected}) == 8


def test_mock_selection_tops_up_short_tiers(temp_store, seed_questions, question_factory):
    seed_questions(
        [question_factory(f"m{i}", difficulty="standard") for i in range(6)]
        + [question_factory(f"e{i}", subject="english", difficulty="foundation") for i in range(2)]
    )

    selected = _selector(temp_store).select_mock_questions("child-1", _mini_template())

    subjects = Counter(q.subject for q in selected)
    assert subjects == {"mathematics": 4, "english": 2}
