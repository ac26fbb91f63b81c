"""Environment variable validation and settings management."""

import os
import logging
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class EnvironmentConfigError(Exception):
    """Raised when environment variables are missing or invalid."""
    pass


_POSITIVE_INT_VARS: Dict[str, str] = {
    "DB_MAX_CONNECTIONS": "Maximum pooled SQLite connections",
    "RECENT_WINDOW_DAYS": "Days a question counts as recently attempted",
    "RECENT_ATTEMPT_LIMIT": "Attempts inspected when excluding recent questions",
    "PERFORMANCE_SAMPLE_SIZE": "Attempts used to estimate recent accuracy",
    "MOCK_TIME_LIMIT_SECONDS": "Time limit applied to mock sessions",
}

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def validate_environment() -> None:
    """Validate environment variables and apply defaults.

    Raises EnvironmentConfigError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "SESSION_DRAFT_DIR": os.getenv("SESSION_DRAFT_DIR") or ".session_drafts",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "QUESTION_BANK_PATH": "JSON question bank imported at startup",
    }

    for var, description in _POSITIVE_INT_VARS.items():
        raw = os.getenv(var)
        if raw is None or raw == "":
            continue
        try:
            value = int(raw)
        except ValueError:
            raise EnvironmentConfigError(f"Invalid integer for {var} ({description}): {raw}")
        if value <= 0:
            raise EnvironmentConfigError(f"{var} must be positive, got {value}")

    level = os.getenv("LOG_LEVEL")
    if level and level.upper() not in _VALID_LOG_LEVELS:
        raise EnvironmentConfigError(f"Invalid LOG_LEVEL: {level}")

    bank_path = os.getenv("QUESTION_BANK_PATH")
    if bank_path and not os.path.exists(bank_path):
        raise EnvironmentConfigError(f"QUESTION_BANK_PATH does not exist: {bank_path}")

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, value)
        return default


@dataclass(frozen=True)
class Settings:
    db_path: str = "data.db"
    db_max_connections: int = 5
    recent_window_days: int = 7
    recent_attempt_limit: int = 50
    performance_sample_size: int = 20
    mock_time_limit_seconds: int = 45 * 60
    session_draft_dir: str = ".session_drafts"
    log_level: str = "INFO"
    question_bank_path: Optional[str] = None


def load_settings() -> Settings:
    """Build ``Settings`` from the current environment."""
    return Settings(
        db_path=os.getenv("DB_PATH") or "data.db",
        db_max_connections=get_env_int("DB_MAX_CONNECTIONS", 5),
        recent_window_days=get_env_int("RECENT_WINDOW_DAYS", 7),
        recent_attempt_limit=get_env_int("RECENT_ATTEMPT_LIMIT", 50),
        performance_sample_size=get_env_int("PERFORMANCE_SAMPLE_SIZE", 20),
        mock_time_limit_seconds=get_env_int("MOCK_TIME_LIMIT_SECONDS", 45 * 60),
        session_draft_dir=os.getenv("SESSION_DRAFT_DIR") or ".session_drafts",
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        question_bank_path=os.getenv("QUESTION_BANK_PATH") or None,
    )
