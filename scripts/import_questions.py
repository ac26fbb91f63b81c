"""Validate a JSON question bank and import it into the practice database."""
from __future__ import annotations

import argparse
import os
import sys
from typing import Sequence

from db import PracticeStore
from question_bank import QuestionBank, QuestionValidationError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("questions", type=str, help="Path to the question bank JSON file")
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite database path (default: $DB_PATH or data.db)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the bank without writing to the database",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    db_path = args.db or os.getenv("DB_PATH") or "data.db"
    store = None
    if not args.dry_run:
        store = PracticeStore(db_path)
        store.init()
    try:
        bank = QuestionBank(args.questions, store=store, auto_sync=not args.dry_run)
    except FileNotFoundError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except QuestionValidationError as exc:
        print(f"error: invalid question bank: {exc}", file=sys.stderr)
        return 1
    finally:
        if store is not None:
            store.close()

    action = "Validated" if args.dry_run else f"Imported into {db_path}:"
    print(f"{action} {len(bank.questions)} questions")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
