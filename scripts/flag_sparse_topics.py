"""Report question-bank coverage and flag sparse topics."""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Dict, List, Sequence

from engines.difficulty import DIFFICULTY_ORDER
from question_bank import QuestionBank, QuestionValidationError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--questions",
        type=str,
        default="questions.json",
        help="Path to the question bank JSON file (default: questions.json)",
    )
    parser.add_argument(
        "--min-questions",
        type=int,
        default=10,
        help="Minimum number of published questions required per topic (default: 10)",
    )
    parser.add_argument(
        "--min-tiers",
        type=int,
        default=2,
        help="Minimum number of difficulty tiers required per topic (default: 2)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON coverage report",
    )
    return parser


def _build_report(coverage: Dict[str, Dict[str, Dict[str, int]]]) -> dict:
    subjects: Dict[str, dict] = {}
    total = 0
    for subject, topics in sorted(coverage.items()):
        topic_rows = {}
        for topic, tiers in sorted(topics.items()):
            count = sum(tiers.values())
            total += count
            topic_rows[topic] = {
                "count": count,
                "difficulties": {tier: tiers.get(tier, 0) for tier in DIFFICULTY_ORDER},
            }
        subjects[subject] = {
            "count": sum(row["count"] for row in topic_rows.values()),
            "topics": topic_rows,
        }
    totals = {
        "count": total,
        "subjects": len(subjects),
        "topics": sum(len(entry["topics"]) for entry in subjects.values()),
    }
    return {"totals": totals, "subjects": subjects}


def find_sparse_topics(report: dict, min_questions: int, min_tiers: int) -> List[str]:
    flagged: List[str] = []
    for subject, entry in report["subjects"].items():
        for topic, data in entry["topics"].items():
            issues: List[str] = []
            if data["count"] < min_questions:
                issues.append(f"only {data['count']} questions (min {min_questions})")
            tiers = [tier for tier, n in data["difficulties"].items() if n > 0]
            if len(tiers) < min_tiers:
                issues.append(f"only {len(tiers)} difficulty tiers (min {min_tiers})")
            if issues:
                flagged.append(f"{subject}/{topic}: {', '.join(issues)}")
    return flagged


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        bank = QuestionBank(args.questions, auto_sync=False)
    except (FileNotFoundError, QuestionValidationError) as exc:
        parser.error(str(exc))

    report = _build_report(bank.coverage())
    flagged = find_sparse_topics(
        report,
        max(1, int(args.min_questions)),
        max(1, min(len(DIFFICULTY_ORDER), int(args.min_tiers))),
    )
    report["flagged"] = flagged

    payload = json.dumps(report, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)

    if flagged:
        for issue in flagged:
            print(f"WARNING: {issue}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
