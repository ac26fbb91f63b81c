import json
import logging

import pytest

from env_validation import (
    EnvironmentConfigError,
    get_env_bool,
    get_env_int,
    load_settings,
    validate_environment,
)
from event_log import EVENT_LOGGER_NAME, log_event

_ENV_VARS = (
    "DB_PATH",
    "DB_MAX_CONNECTIONS",
    "RECENT_WINDOW_DAYS",
    "RECENT_ATTEMPT_LIMIT",
    "PERFORMANCE_SAMPLE_SIZE",
    "MOCK_TIME_LIMIT_SECONDS",
    "SESSION_DRAFT_DIR",
    "LOG_LEVEL",
    "QUESTION_BANK_PATH",
)


@pytest.fixture
def clean_env(monkeypatch):
    for var in _ENV_VARS:
        # set first so teardown also removes values written by validate_environment
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
    return monkeypatch


def test_defaults_are_applied(clean_env):
    validate_environment()
    settings = load_settings()
    assert settings.db_path == "data.db"
    assert settings.session_draft_dir == ".session_drafts"
    assert settings.db_max_connections == 5
    assert settings.recent_window_days == 7
    assert settings.recent_attempt_limit == 50
    assert settings.performance_sample_size == 20
    assert settings.mock_time_limit_seconds == 2700
    assert settings.question_bank_path is None


def test_overrides_are_read(clean_env, tmp_path):
    bank = tmp_path / "questions.json"
    bank.write_text("[]", encoding="utf-8")
    clean_env.setenv("RECENT_WINDOW_DAYS", "14")
    clean_env.setenv("LOG_LEVEL", "debug")
    clean_env.setenv("QUESTION_BANK_PATH", str(bank))

    validate_environment()
    settings = load_settings()
    assert settings.recent_window_days == 14
    assert settings.log_level == "DEBUG"
    assert settings.question_bank_path == str(bank)


@pytest.mark.parametrize(
    "var, value",
    [
        ("DB_MAX_CONNECTIONS", "zero"),
        ("RECENT_ATTEMPT_LIMIT", "0"),
        ("MOCK_TIME_LIMIT_SECONDS", "-5"),
        ("LOG_LEVEL", "LOUD"),
        ("QUESTION_BANK_PATH", "/definitely/not/here.json"),
    ],
)
def test_invalid_values_are_rejected(clean_env, var, value):
    clean_env.setenv(var, value)
    with pytest.raises(EnvironmentConfigError):
        validate_environment()


def test_env_helpers(clean_env):
    clean_env.setenv("FEATURE_X", "yes")
    clean_env.setenv("BROKEN_INT", "many")
    assert get_env_bool("FEATURE_X")
    assert not get_env_bool("FEATURE_Y")
    assert get_env_bool("FEATURE_Y", default=True)
    assert get_env_int("BROKEN_INT", 3) == 3
    assert get_env_int("MISSING_INT", 4) == 4


def test_log_event_emits_sorted_json(caplog):
    logger = logging.getLogger(EVENT_LOGGER_NAME)
    logger.addHandler(caplog.handler)
    try:
        with caplog.at_level(logging.INFO, logger=EVENT_LOGGER_NAME):
            log_event("questions_selected", requested=10, child_id="child-1", when=object)
    finally:
        logger.removeHandler(caplog.handler)

    [record] = [r for r in caplog.records if r.name == EVENT_LOGGER_NAME]
    payload = json.loads(record.getMessage())
    assert payload["event"] == "questions_selected"
    assert payload["requested"] == 10
    assert list(payload) == sorted(payload)
