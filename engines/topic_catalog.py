"""Curated topic importance table loader."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence


class TopicCatalogError(ValueError):
    """Raised when ``topic_importance.json`` contains invalid data."""


DEFAULT_IMPORTANCE = 5
MIN_IMPORTANCE = 1
MAX_IMPORTANCE = 10


@dataclass(frozen=True)
class TopicImportance:
    topic: str
    subject: Optional[str]
    importance: int


class TopicCatalog:
    """Load topic importance weights from ``topic_importance.json``."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        self.path = Path(path) if path is not None else base_path / "topic_importance.json"
        self._entries: List[TopicImportance] = []
        self._by_name: Dict[str, TopicImportance] = {}
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload the table from disk and validate the structure."""

        if not self.path.exists():
            raise FileNotFoundError(f"Topic importance file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        self._set_entries(self._parse(raw))

    @staticmethod
    def _parse(raw: object) -> List[TopicImportance]:
        if not isinstance(raw, list):
            raise TopicCatalogError("Topic importance file must contain a JSON list")

        entries: List[TopicImportance] = []
        seen: set[str] = set()
        for idx, entry in enumerate(raw, start=1):
            if not isinstance(entry, dict):
                raise TopicCatalogError(f"Entry #{idx} must be a JSON object")

            topic = str(entry.get("topic") or "").strip()
            if not topic:
                raise TopicCatalogError(f"Entry #{idx} is missing a non-empty 'topic'")
            if topic in seen:
                raise TopicCatalogError(f"Duplicate topic detected: {topic}")
            seen.add(topic)

            try:
                importance = int(entry.get("importance"))
            except (TypeError, ValueError) as exc:
                raise TopicCatalogError(f"Topic '{topic}' importance must be an integer") from exc
            if not MIN_IMPORTANCE <= importance <= MAX_IMPORTANCE:
                raise TopicCatalogError(
                    f"Topic '{topic}' importance must be between {MIN_IMPORTANCE} and {MAX_IMPORTANCE}"
                )

            subject = entry.get("subject")
            entries.append(
                TopicImportance(
                    topic=topic,
                    subject=str(subject).strip() if subject else None,
                    importance=importance,
                )
            )
        return entries

    def _set_entries(self, entries: Sequence[TopicImportance]) -> None:
        self._entries = list(entries)
        self._by_name = {entry.topic: entry for entry in self._entries}

    # ------------------------------------------------------------------
    @classmethod
    def from_entries(cls, entries: Sequence[dict]) -> "TopicCatalog":
        catalog = cls.__new__(cls)
        catalog.path = Path("<in-memory>")
        catalog._set_entries(cls._parse(list(entries)))
        return catalog

    def topics(self) -> List[str]:
        return [entry.topic for entry in self._entries]

    def importance(self, topic: str) -> int:
        """Return the importance for ``topic``.

        Exact names win; otherwise the first table entry whose name contains,
        or is contained in, ``topic`` (case-insensitive) is used.
        """

        exact = self._by_name.get(topic)
        if exact is not None:
            return exact.importance

        needle = (topic or "").lower()
        if not needle:
            return DEFAULT_IMPORTANCE
        for entry in self._entries:
            key = entry.topic.lower()
            if key in needle or needle in key:
                return entry.importance
        return DEFAULT_IMPORTANCE


TOPIC_CATALOG = TopicCatalog()

__all__ = [
    "DEFAULT_IMPORTANCE",
    "TOPIC_CATALOG",
    "TopicCatalog",
    "TopicCatalogError",
    "TopicImportance",
]
