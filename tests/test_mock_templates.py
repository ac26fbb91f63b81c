import json

import pytest

from engines.mock_templates import MOCK_TEMPLATES, MockTemplateCatalog, MockTemplateError


def _entry(**overrides):
    entry = {
        "id": "mini",
        "name": "Mini Mock",
        "total_questions": 10,
        "time_limit_minutes": 12,
        "difficulty_distribution": {"foundation": 0.3, "standard": 0.5, "challenge": 0.2},
        "subject_distribution": {"mathematics": 6, "english": 4},
    }
    entry.update(overrides)
    return entry


def test_bundled_templates_load():
    ids = [template.id for template in MOCK_TEMPLATES.templates()]
    assert ids == ["quick-practice", "english-focus", "maths-focus", "verbal-reasoning", "standard-11plus"]

    standard = MOCK_TEMPLATES.get("standard-11plus")
    assert standard.total_questions == 50
    assert standard.time_limit_seconds == 45 * 60
    assert standard.subject_quotas() == {"mathematics": 16, "english": 16, "verbal_reasoning": 18}
    for template in MOCK_TEMPLATES.templates():
        assert sum(template.subject_distribution.values()) == template.total_questions


def test_templates_filter_by_year_group():
    assert [t.id for t in MOCK_TEMPLATES.templates(3)] == ["quick-practice"]
    assert "standard-11plus" not in {t.id for t in MOCK_TEMPLATES.templates(4)}
    assert len(MOCK_TEMPLATES.templates(6)) == 5
    assert MOCK_TEMPLATES.get("missing") is None


def test_tier_quotas_always_add_up():
    standard = MOCK_TEMPLATES.get("standard-11plus")
    assert standard.tier_quotas(18) == {"foundation": 5, "standard": 9, "challenge": 4}
    assert standard.tier_quotas(16) == {"foundation": 4, "standard": 8, "challenge": 4}
    quick = MOCK_TEMPLATES.get("quick-practice")
    assert sum(quick.tier_quotas(7).values()) == 7


def test_template_serialises_in_camel_case():
    data = MOCK_TEMPLATES.get("quick-practice").to_dict()
    assert data["timeLimitMinutes"] == 15
    assert data["subjectDistribution"] == {"mathematics": 7, "english": 7, "verbal_reasoning": 6}
    assert data["yearGroups"] == [3, 4, 5, 6]


def test_catalog_reads_custom_file(tmp_path):
    path = tmp_path / "templates.json"
    path.write_text(json.dumps([_entry(year_groups=[5])]), encoding="utf-8")
    catalog = MockTemplateCatalog(path)
    assert catalog.get("mini").name == "Mini Mock"
    assert catalog.templates(4) == []

    with pytest.raises(FileNotFoundError):
        MockTemplateCatalog(tmp_path / "missing.json")


@pytest.mark.parametrize(
    "entries",
    [
        [_entry(id="")],
        [_entry(), _entry()],
        [_entry(total_questions=0)],
        [_entry(subject_distribution={"mathematics": 6, "english": 3})],
        [_entry(subject_distribution={"mathematics": 11, "english": -1})],
        [_entry(difficulty_distribution={"expert": 1.0})],
        [_entry(difficulty_distribution={"foundation": 0, "standard": 0})],
        [_entry(year_groups="5")],
    ],
)
def test_invalid_templates_are_rejected(entries):
    with pytest.raises(MockTemplateError):
        MockTemplateCatalog.from_entries(entries)


def test_template_file_must_hold_a_list(tmp_path):
    path = tmp_path / "templates.json"
    path.write_text(json.dumps({"id": "mini"}), encoding="utf-8")
    with pytest.raises(MockTemplateError):
        MockTemplateCatalog(path)
