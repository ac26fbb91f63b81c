"""Mock test templates.

A template fixes how many questions each subject contributes, the difficulty
mix inside every subject and the time limit. Templates live in
``mock_templates.json`` next to this module.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from engines.difficulty import DIFFICULTY_ORDER
from engines.question_selector import apportion


class MockTemplateError(ValueError):
    """Raised when ``mock_templates.json`` contains invalid data."""


@dataclass(frozen=True)
class MockTestTemplate:
    id: str
    name: str
    total_questions: int
    time_limit_minutes: int
    difficulty_distribution: Dict[str, float]
    subject_distribution: Dict[str, int]
    description: Optional[str] = None
    style: str = "Mixed"
    year_groups: Tuple[int, ...] = ()

    @property
    def time_limit_seconds(self) -> int:
        return self.time_limit_minutes * 60

    def subject_quotas(self) -> Dict[str, int]:
        return {subject: count for subject, count in self.subject_distribution.items() if count > 0}

    def tier_quotas(self, count: int) -> Dict[str, int]:
        """Split ``count`` over the tiers; the parts always add up to ``count``."""
        return apportion(count, {tier: self.difficulty_distribution.get(tier, 0.0) for tier in DIFFICULTY_ORDER})

    def suits_year(self, year_group: Optional[int]) -> bool:
        return year_group is None or not self.year_groups or year_group in self.year_groups

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "style": self.style,
            "totalQuestions": self.total_questions,
            "timeLimitMinutes": self.time_limit_minutes,
            "difficultyDistribution": dict(self.difficulty_distribution),
            "subjectDistribution": self.subject_quotas(),
            "yearGroups": list(self.year_groups),
        }


def _positive_int(value: Any, label: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise MockTemplateError(f"{label} must be an integer") from exc
    if number < 1:
        raise MockTemplateError(f"{label} must be positive")
    return number


class MockTemplateCatalog:
    """Load and look up mock test templates."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        self.path = Path(path) if path is not None else base_path / "mock_templates.json"
        self._templates: Dict[str, MockTestTemplate] = {}
        self.reload()

    def reload(self) -> None:
        if not self.path.exists():
            raise FileNotFoundError(f"Mock template file not found: {self.path}")
        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)
        self._templates = {template.id: template for template in self._parse(raw)}

    @staticmethod
    def _parse(raw: object) -> List[MockTestTemplate]:
        if not isinstance(raw, list):
            raise MockTemplateError("Mock template file must contain a JSON list")

        templates: List[MockTestTemplate] = []
        seen: set[str] = set()
        for idx, entry in enumerate(raw, start=1):
            if not isinstance(entry, dict):
                raise MockTemplateError(f"Template #{idx} must be a JSON object")
            template_id = str(entry.get("id") or "").strip()
            if not template_id:
                raise MockTemplateError(f"Template #{idx} is missing a non-empty 'id'")
            if template_id in seen:
                raise MockTemplateError(f"Duplicate template id: {template_id}")
            seen.add(template_id)

            total = _positive_int(entry.get("total_questions"), f"Template '{template_id}' total_questions")
            minutes = _positive_int(entry.get("time_limit_minutes"), f"Template '{template_id}' time_limit_minutes")

            subjects = entry.get("subject_distribution")
            if not isinstance(subjects, dict) or not subjects:
                raise MockTemplateError(f"Template '{template_id}' needs a subject_distribution object")
            try:
                subject_counts = {str(subject).strip().lower(): int(count) for subject, count in subjects.items()}
            except (TypeError, ValueError) as exc:
                raise MockTemplateError(f"Template '{template_id}' subject counts must be integers") from exc
            if any(count < 0 for count in subject_counts.values()):
                raise MockTemplateError(f"Template '{template_id}' subject counts cannot be negative")
            if sum(subject_counts.values()) != total:
                raise MockTemplateError(
                    f"Template '{template_id}' subject counts add up to {sum(subject_counts.values())}, "
                    f"expected {total}"
                )

            tiers = entry.get("difficulty_distribution")
            if not isinstance(tiers, dict) or not tiers:
                raise MockTemplateError(f"Template '{template_id}' needs a difficulty_distribution object")
            mix: Dict[str, float] = {}
            for tier, share in tiers.items():
                key = str(tier).strip().lower()
                if key not in DIFFICULTY_ORDER:
                    raise MockTemplateError(f"Template '{template_id}' has unknown difficulty '{tier}'")
                try:
                    mix[key] = float(share)
                except (TypeError, ValueError) as exc:
                    raise MockTemplateError(f"Template '{template_id}' difficulty shares must be numbers") from exc
            if any(share < 0 for share in mix.values()) or sum(mix.values()) <= 0:
                raise MockTemplateError(f"Template '{template_id}' difficulty shares must be non-negative")

            years = entry.get("year_groups") or []
            if not isinstance(years, list):
                raise MockTemplateError(f"Template '{template_id}' year_groups must be a list")

            templates.append(
                MockTestTemplate(
                    id=template_id,
                    name=str(entry.get("name") or template_id),
                    total_questions=total,
                    time_limit_minutes=minutes,
                    difficulty_distribution=mix,
                    subject_distribution=subject_counts,
                    description=entry.get("description"),
                    style=str(entry.get("style") or "Mixed"),
                    year_groups=tuple(_positive_int(year, f"Template '{template_id}' year group") for year in years),
                )
            )
        return templates

    @classmethod
    def from_entries(cls, entries: Sequence[dict]) -> "MockTemplateCatalog":
        catalog = cls.__new__(cls)
        catalog.path = Path("<in-memory>")
        catalog._templates = {template.id: template for template in cls._parse(list(entries))}
        return catalog

    def get(self, template_id: str) -> Optional[MockTestTemplate]:
        return self._templates.get(template_id)

    def templates(self, year_group: Optional[int] = None) -> List[MockTestTemplate]:
        """Templates offered to ``year_group``, shortest test first."""
        suitable = [template for template in self._templates.values() if template.suits_year(year_group)]
        return sorted(suitable, key=lambda template: (template.total_questions, template.id))


MOCK_TEMPLATES = MockTemplateCatalog()

__all__ = [
    "MOCK_TEMPLATES",
    "MockTemplateCatalog",
    "MockTemplateError",
    "MockTestTemplate",
]
