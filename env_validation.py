"""Environment variable validation and management."""

import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


_POSITIVE_INT_VARS = {
    "TRIGGER_MIN_USER_TURNS",
    "TRIGGER_CADENCE_TURNS",
    "TRIGGER_STRONG_CADENCE_TURNS",
    "TRIGGER_IDLE_MINUTES",
}
_POSITIVE_FLOAT_VARS = {"QUESTION_GENERATOR_TIMEOUT"}


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # Nothing is strictly required: the store defaults to a local SQLite file
    # and the question generator is simply disabled when unconfigured.
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "coachlab.db",
    }

    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "QUESTION_GENERATOR_URL": "Chat-completions endpoint for contextual knowledge checks",
        "SCENARIO_BANK_PATH": "YAML file with scenarios and their question banks",
        "API_TOKENS": "Comma-separated token:user_id pairs accepted by the API",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    for var in ("QUESTION_GENERATOR_URL",):
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var in sorted(_POSITIVE_INT_VARS):
        raw = os.getenv(var)
        if raw is None or raw == "":
            continue
        try:
            parsed = int(raw)
        except ValueError:
            raise EnvironmentError(f"{var} must be an integer, got {raw!r}") from None
        if parsed <= 0:
            raise EnvironmentError(f"{var} must be positive, got {parsed}")

    for var in sorted(_POSITIVE_FLOAT_VARS):
        raw = os.getenv(var)
        if raw is None or raw == "":
            continue
        try:
            parsed_float = float(raw)
        except ValueError:
            raise EnvironmentError(f"{var} must be a number, got {raw!r}") from None
        if parsed_float <= 0:
            raise EnvironmentError(f"{var} must be positive, got {parsed_float}")

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
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using %s", name, value, default)
        return default


def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid number for %s=%r; using %s", name, value, default)
        return default


def get_env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()
