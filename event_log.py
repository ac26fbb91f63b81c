"""Structured JSON event logging shared by the practice engines."""
from __future__ import annotations

import json
import logging
from typing import Any

EVENT_LOGGER_NAME = "ember.events"

_LOGGER = logging.getLogger(EVENT_LOGGER_NAME)
if not _LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LOGGER.addHandler(_handler)
_LOGGER.setLevel(logging.INFO)
_LOGGER.propagate = False


def log_event(event: str, **payload: Any) -> None:
    """Emit one JSON line for ``event`` with the given payload."""

    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        fallback = {
            "event": event,
            "error": "serialization_failed",
            "payload_repr": repr(payload),
        }
        message = json.dumps(fallback, ensure_ascii=False, sort_keys=True)
    _LOGGER.info(message)


def configure_logging(level: str = "INFO") -> None:
    """Apply the root log level used by the service."""

    resolved = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(resolved)
