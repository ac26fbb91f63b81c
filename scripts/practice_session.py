"""Run a practice session in the terminal against the local practice database."""
from __future__ import annotations

import argparse
import sys
from typing import Callable, Optional, Sequence, TextIO

from db import PracticeStore
from engines.caching import SessionDraftCache
from engines.question_selector import SESSION_TYPES, QuestionCriteria
from engines.session_state import AttemptSubmitter, SessionStateManager, SessionTimer
from env_validation import load_settings
from practice_service import PracticeService, UnknownChildError, UnknownTemplateError

_HELP = "Commands: <option id> answer, n next, p previous, f flag for review, pause, resume, q finish"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("child_id", type=str, help="Child to run the session for")
    parser.add_argument("--type", dest="session_type", choices=SESSION_TYPES, default="quick")
    parser.add_argument("--subject", type=str, default=None)
    parser.add_argument("--count", type=int, default=None)
    parser.add_argument("--template", type=str, default=None, help="Mock test template id; implies --type mock")
    parser.add_argument("--db", type=str, default=None, help="SQLite database path")
    parser.add_argument("--resume", type=str, default=None, help="Session id of a saved draft to resume")
    parser.add_argument("--no-timer", action="store_true", help="Do not run the background session timer")
    return parser


def _show(manager: SessionStateManager, out: TextIO) -> None:
    question = manager.current_question
    if question is None:
        return
    progress = manager.progress()
    flag = " [flagged]" if manager.is_flagged(question.id) else ""
    print(
        f"\n[{manager.current_index + 1}/{progress['total']}] {question.subject} / {question.topic} "
        f"({question.difficulty}){flag}",
        file=out,
    )
    print(question.question_text, file=out)
    for option in question.options:
        marker = "*" if manager.selected_answer() == option.id else " "
        print(f" {marker} {option.id}) {option.text}", file=out)


def run_loop(
    manager: SessionStateManager,
    read_line: Callable[[], Optional[str]],
    out: TextIO,
) -> None:
    """Drive ``manager`` from text commands until the session completes or input ends."""

    _show(manager, out)
    while not manager.is_complete:
        line = read_line()
        if line is None:
            print("Input closed; your progress is saved as a draft.", file=out)
            return
        command = line.strip()
        question = manager.current_question
        option_ids = {option.id for option in question.options} if question else set()
        if command in option_ids:
            if manager.submit_answer(command):
                manager.next()
                if not manager.is_complete:
                    _show(manager, out)
            else:
                print("Session is paused; type 'resume' to continue.", file=out)
        elif command == "n":
            manager.next()
            if not manager.is_complete:
                _show(manager, out)
        elif command == "f":
            if manager.toggle_flag():
                _show(manager, out)
        elif command == "p":
            if manager.previous():
                _show(manager, out)
        elif command == "pause":
            manager.pause()
            print("Paused.", file=out)
        elif command == "resume":
            if manager.resume():
                _show(manager, out)
        elif command == "q":
            manager.complete()
        else:
            print(_HELP, file=out)


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = load_settings()
    store = PracticeStore(args.db or settings.db_path, max_connections=settings.db_max_connections)
    store.init()
    service = PracticeService.from_settings(store, settings)
    cache = SessionDraftCache(settings.session_draft_dir)
    submitter = AttemptSubmitter(service.submit_payload)
    hooks = dict(submitter=submitter, on_complete=service.completion_handler, cache=cache)

    try:
        manager = None
        if args.resume:
            manager = SessionStateManager.resume_from_cache(cache, args.resume, **hooks)
            if manager is None:
                print(f"No saved draft for session {args.resume}", file=sys.stderr)
                return 1
        else:
            try:
                if args.template:
                    created = service.create_mock_session(args.child_id, args.template)
                else:
                    criteria = QuestionCriteria(
                        child_id=args.child_id,
                        session_type=args.session_type,
                        count=args.count,
                        subject=args.subject.lower() if args.subject else None,
                    )
                    created = service.create_session(criteria)
            except UnknownChildError:
                print(f"Child not found: {args.child_id}", file=sys.stderr)
                return 1
            except UnknownTemplateError:
                print(f"Unknown mock test template: {args.template}", file=sys.stderr)
                return 1
            if created is None:
                print("No questions available for this criteria", file=sys.stderr)
                return 1
            manager = SessionStateManager(created.session.id, args.child_id, created.session.session_type, **hooks)
            manager.start(created.questions, created.session.time_limit_seconds)

        print(_HELP)
        timer = None
        if not args.no_timer:
            timer = SessionTimer(manager)
            timer.start()

        def read_line() -> Optional[str]:
            try:
                return input("> ")
            except EOFError:
                return None

        try:
            run_loop(manager, read_line, sys.stdout)
        finally:
            if timer is not None:
                timer.stop()

        summary = manager.completion_result
        if summary is not None:
            result = summary.to_dict()
            print(
                f"\nFinished: {result['correctAnswers']}/{result['answered']} correct "
                f"({result['accuracy']}%), Ember Score {result['emberScore']}"
            )
            if result["flaggedQuestions"]:
                print(f"Flagged for review: {', '.join(result['flaggedQuestions'])}")
        return 0
    finally:
        submitter.close(wait=True)
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
