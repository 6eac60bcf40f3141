"""Config loading and validation for FlowLane.

Loads flowlane.config.json, validates required fields, applies defaults
and environment overrides, and expands ~ in paths.
"""

import json
import os
from pathlib import Path
from typing import Any


class ConfigError(Exception):
    """Raised when configuration is invalid or missing required fields."""


REQUIRED_FIELDS = ["db_path"]

PATH_FIELDS = ["db_path"]

DEFAULTS: dict[str, Any] = {
    "base_url": "http://localhost:3000",
    "cascade_limit": 10,
    "transport_timeout": 5.0,
    "email_webhook_url": None,
    "events_webhook_url": None,
    "default_from_email": "system",
    "default_from_name": None,
    "twilio_account_sid": None,
    "twilio_auth_token": None,
    "twilio_phone_number": None,
}

# Environment variable -> config key. Environment wins over the file.
ENV_OVERRIDES = {
    "FLOWLANE_DB": "db_path",
    "FLOWLANE_BASE_URL": "base_url",
    "FLOWLANE_EMAIL_WEBHOOK_URL": "email_webhook_url",
    "FLOWLANE_EVENTS_WEBHOOK_URL": "events_webhook_url",
    "TWILIO_ACCOUNT_SID": "twilio_account_sid",
    "TWILIO_AUTH_TOKEN": "twilio_auth_token",
    "TWILIO_PHONE_NUMBER": "twilio_phone_number",
}


def load_config(config_path: str | Path | None = None) -> dict[str, Any]:
    """Load and validate flowlane.config.json.

    Args:
        config_path: Path to config file. Defaults to ./flowlane.config.json.

    Returns:
        Validated config dict with paths expanded and defaults applied.

    Raises:
        ConfigError: If file is missing, unreadable, or has invalid content.
    """
    if config_path is None:
        config_path = Path.cwd() / "flowlane.config.json"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        raw = config_path.read_text()
        config = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"Config root in {config_path} must be a JSON object")

    _apply_env_overrides(config)
    _validate(config)
    _apply_defaults(config)
    _expand_paths(config)

    return config


def default_config(db_path: str | Path) -> dict[str, Any]:
    """Build a config dict from defaults alone (no file), for tests and scripts."""
    config: dict[str, Any] = {"db_path": str(db_path)}
    _apply_defaults(config)
    _expand_paths(config)
    return config


def _apply_env_overrides(config: dict[str, Any]) -> None:
    """Let environment variables override file values."""
    for env_var, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            config[key] = value


def _validate(config: dict[str, Any]) -> None:
    """Validate required fields are present and numeric fields are sane."""
    for field in REQUIRED_FIELDS:
        if field not in config:
            raise ConfigError(
                f"Missing required config field: '{field}'. "
                f"See flowlane.config.json.example for the expected format."
            )

    limit = config.get("cascade_limit")
    if limit is not None and (
        isinstance(limit, bool) or not isinstance(limit, int) or limit < 0
    ):
        raise ConfigError("'cascade_limit' must be a non-negative integer")

    timeout = config.get("transport_timeout")
    if timeout is not None and (
        isinstance(timeout, bool)
        or not isinstance(timeout, (int, float))
        or timeout <= 0
    ):
        raise ConfigError("'transport_timeout' must be a positive number")


def _apply_defaults(config: dict[str, Any]) -> None:
    """Apply default values for optional fields."""
    for key, default in DEFAULTS.items():
        if key not in config:
            config[key] = default


def _expand_paths(config: dict[str, Any]) -> None:
    """Expand ~ in path fields to the user's home directory."""
    for field in PATH_FIELDS:
        if field in config and isinstance(config[field], str):
            config[field] = str(Path(config[field]).expanduser())
