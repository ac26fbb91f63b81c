import io
import random

from engines.caching import SessionDraftCache
from engines.question_selector import QuestionCriteria, QuestionSelector
from engines.session_state import AttemptSubmitter, SessionStateManager
from practice_service import PracticeService
from scripts.practice_session import run_loop


def _lines(*commands):
    feed = iter(commands)
    return lambda: next(feed, None)


def _service(temp_store, seed_questions, question_factory):
    seed_questions([question_factory(f"m{i}", correct_answer="a") for i in range(3)])
    return PracticeService(temp_store, QuestionSelector(temp_store, rng=random.Random(5)))


def test_run_loop_answers_and_completes(temp_store, seed_questions, question_factory, tmp_path):
    service = _service(temp_store, seed_questions, question_factory)
    created = service.create_session(QuestionCriteria("child-1", "quick", count=3))
    submitter = AttemptSubmitter(service.submit_payload)
    cache = SessionDraftCache(tmp_path / "drafts")
    manager = SessionStateManager(
        created.session.id,
        "child-1",
        "quick",
        submitter=submitter,
        on_complete=service.completion_handler,
        cache=cache,
    )
    manager.start(created.questions)

    out = io.StringIO()
    run_loop(manager, _lines("a", "help", "p", "n", "b", "a"), out)
    submitter.close(wait=True)

    assert manager.is_complete
    summary = manager.completion_result
    assert summary.answered == 3
    assert summary.correct_answers == 2
    assert temp_store.get_session(created.session.id).is_complete
    assert "Commands:" in out.getvalue()
    assert cache.session_ids() == []


def test_run_loop_keeps_draft_when_input_ends(temp_store, seed_questions, question_factory, tmp_path):
    service = _service(temp_store, seed_questions, question_factory)
    created = service.create_session(QuestionCriteria("child-1", "quick", count=3))
    cache = SessionDraftCache(tmp_path / "drafts")
    manager = SessionStateManager(created.session.id, "child-1", "quick", cache=cache)
    manager.start(created.questions)

    out = io.StringIO()
    run_loop(manager, _lines("pause", "a", "resume", "a"), out)

    assert not manager.is_complete
    assert "Session is paused" in out.getvalue()
    assert "saved as a draft" in out.getvalue()
    restored = SessionStateManager.resume_from_cache(cache, created.session.id)
    assert restored.current_index == 1
    assert len(restored.answers) == 1


def test_run_loop_flags_questions_for_review(temp_store, seed_questions, question_factory):
    service = _service(temp_store, seed_questions, question_factory)
    created = service.create_session(QuestionCriteria("child-1", "quick", count=3))
    manager = SessionStateManager(
        created.session.id,
        "child-1",
        "quick",
        on_complete=service.completion_handler,
    )
    manager.start(created.questions)

    out = io.StringIO()
    run_loop(manager, _lines("f", "a", "a", "f", "a"), out)

    assert manager.is_complete
    flagged = [created.questions[0].id, created.questions[2].id]
    assert manager.completion_result.flagged_questions == flagged
    assert temp_store.get_session(created.session.id).flagged_questions == flagged
    assert "[flagged]" in out.getvalue()
