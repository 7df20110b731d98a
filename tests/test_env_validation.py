import os

import pytest

from env_validation import (
    EnvironmentError,
    get_env_bool,
    get_env_float,
    get_env_int,
    validate_environment,
)

_VARS = (
    "DB_PATH",
    "QUESTION_GENERATOR_URL",
    "QUESTION_GENERATOR_TIMEOUT",
    "TRIGGER_MIN_USER_TURNS",
    "TRIGGER_CADENCE_TURNS",
    "TRIGGER_STRONG_CADENCE_TURNS",
    "TRIGGER_IDLE_MINUTES",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in _VARS:
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)


def test_defaults_applied(monkeypatch):
    validate_environment()
    assert os.environ["DB_PATH"] == "coachlab.db"


def test_rejects_bad_generator_url(monkeypatch):
    monkeypatch.setenv("QUESTION_GENERATOR_URL", "ftp://example.com")
    with pytest.raises(EnvironmentError, match="Invalid URL"):
        validate_environment()


@pytest.mark.parametrize("value", ["0", "-2", "three"])
def test_rejects_non_positive_thresholds(monkeypatch, value):
    monkeypatch.setenv("TRIGGER_CADENCE_TURNS", value)
    with pytest.raises(EnvironmentError, match="TRIGGER_CADENCE_TURNS"):
        validate_environment()


def test_rejects_bad_timeout(monkeypatch):
    monkeypatch.setenv("QUESTION_GENERATOR_TIMEOUT", "soon")
    with pytest.raises(EnvironmentError):
        validate_environment()


def test_accepts_valid_configuration(monkeypatch):
    monkeypatch.setenv("QUESTION_GENERATOR_URL", "https://llm.example.com/v1/chat/completions")
    monkeypatch.setenv("QUESTION_GENERATOR_TIMEOUT", "4.5")
    monkeypatch.setenv("TRIGGER_IDLE_MINUTES", "15")
    validate_environment()


def test_typed_getters(monkeypatch):
    monkeypatch.setenv("X_INT", "7")
    monkeypatch.setenv("X_BAD_INT", "seven")
    monkeypatch.setenv("X_FLOAT", "1.5")
    monkeypatch.setenv("X_BOOL", "yes")
    assert get_env_int("X_INT", 1) == 7
    assert get_env_int("X_BAD_INT", 1) == 1
    assert get_env_float("X_FLOAT", 0.0) == 1.5
    assert get_env_bool("X_BOOL") is True
    assert get_env_bool("X_MISSING", True) is True
