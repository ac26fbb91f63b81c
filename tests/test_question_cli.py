import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db import PracticeStore
from scripts import flag_sparse_topics, import_questions
from conftest import make_question


def _write_bank(path: Path, entries) -> Path:
    path.write_text(json.dumps(entries), encoding="utf-8")
    return path


@pytest.fixture
def dense_bank(tmp_path: Path) -> Path:
    entries = [
        make_question(f"f{i}", difficulty=("foundation", "standard", "challenge")[i % 3]) for i in range(6)
    ]
    return _write_bank(tmp_path / "dense.json", entries)


@pytest.fixture
def sparse_bank(tmp_path: Path) -> Path:
    entries = [make_question(f"f{i}", difficulty=("foundation", "standard")[i % 2]) for i in range(4)] + [
        make_question("g1", subject="english", topic="Grammar"),
    ]
    return _write_bank(tmp_path / "sparse.json", entries)


def test_flag_sparse_topics_passes_for_dense_bank(dense_bank: Path, capsys):
    exit_code = flag_sparse_topics.main(["--questions", str(dense_bank), "--min-questions", "6", "--min-tiers", "3"])
    captured = capsys.readouterr()

    assert exit_code == 0
    report = json.loads(captured.out)
    assert report["totals"] == {"count": 6, "subjects": 1, "topics": 1}
    assert report["subjects"]["mathematics"]["topics"]["Fractions"]["difficulties"] == {
        "foundation": 2,
        "standard": 2,
        "challenge": 2,
    }
    assert report["flagged"] == []


def test_flag_sparse_topics_reports_gaps(sparse_bank: Path, tmp_path: Path, capsys):
    output = tmp_path / "report.json"
    exit_code = flag_sparse_topics.main(
        ["--questions", str(sparse_bank), "--min-questions", "3", "--min-tiers", "2", "--output", str(output)]
    )
    captured = capsys.readouterr()

    assert exit_code == 1
    assert "WARNING: english/Grammar: only 1 questions (min 3), only 1 difficulty tiers (min 2)" in captured.out
    saved = json.loads(output.read_text(encoding="utf-8"))
    assert saved["flagged"] == ["english/Grammar: only 1 questions (min 3), only 1 difficulty tiers (min 2)"]


def test_flag_sparse_topics_rejects_invalid_bank(tmp_path: Path):
    bad = _write_bank(tmp_path / "bad.json", [{"id": "x"}])
    with pytest.raises(SystemExit) as exc:
        flag_sparse_topics.main(["--questions", str(bad)])
    assert exc.value.code == 2


def test_import_questions_into_database(dense_bank: Path, tmp_path: Path, capsys):
    db_path = tmp_path / "practice.db"
    exit_code = import_questions.main([str(dense_bank), "--db", str(db_path)])
    captured = capsys.readouterr()

    assert exit_code == 0
    assert "6 questions" in captured.out
    store = PracticeStore(str(db_path))
    try:
        assert len(store.list_questions(subject="mathematics")) == 6
    finally:
        store.close()


def test_import_questions_dry_run_and_errors(dense_bank: Path, tmp_path: Path, capsys):
    db_path = tmp_path / "practice.db"
    assert import_questions.main([str(dense_bank), "--db", str(db_path), "--dry-run"]) == 0
    assert capsys.readouterr().out.strip() == "Validated 6 questions"
    assert not db_path.exists()

    bad = _write_bank(tmp_path / "bad.json", [make_question("x", correct_answer="z")])
    assert import_questions.main([str(bad), "--db", str(db_path)]) == 1
    assert "invalid question bank" in capsys.readouterr().err

    assert import_questions.main([str(tmp_path / "missing.json"), "--dry-run"]) == 2
