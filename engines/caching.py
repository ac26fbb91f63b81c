"""Local draft storage for in-progress practice sessions."""

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class SessionDraftCache:
    """Thread-safe JSON file cache keyed by session id.

    Each session snapshot lives in ``session_<id>.json`` under ``directory``.
    The cache mirrors client state for resumption; it is never the durable
    record of a session.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self._lock = Lock()

    def _path(self, session_id: str) -> Path:
        safe = "".join(ch for ch in str(session_id) if ch.isalnum() or ch in "-_")
        if not safe:
            raise ValueError(f"Invalid session id for draft cache: {session_id!r}")
        return self.directory / f"session_{safe}.json"

    def save(self, session_id: str, snapshot: Dict[str, Any]) -> None:
        """Write the snapshot atomically, replacing any previous draft."""
        path = self._path(session_id)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(self.directory), prefix=".draft-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(snapshot, fh, ensure_ascii=False)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise

    def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(session_id)
        with self._lock:
            if not path.exists():
                return None
            try:
                with path.open("r", encoding="utf-8") as fh:
                    data = json.load(fh)
            except (OSError, ValueError) as exc:
                logger.warning("Discarding unreadable session draft %s: %s", path, exc)
                return None
        return data if isinstance(data, dict) else None

    def clear(self, session_id: str) -> bool:
        path = self._path(session_id)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    def session_ids(self) -> List[str]:
        with self._lock:
            if not self.directory.exists():
                return []
            return sorted(path.stem[len("session_"):] for path in self.directory.glob("session_*.json"))
