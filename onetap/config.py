"""On-disk locations and user configuration for onetap."""

from __future__ import annotations

import json
import logging
from pathlib import Path


logger = logging.getLogger("onetap.config")

CONFIG_DIR = Path.home() / ".onetap"
STATE_FILE_NAME = "state.json"
LOCK_FILE_NAME = "state.lock"
USER_CONFIG_FILE = CONFIG_DIR / "config.json"

SESSION_ENV_VAR = "ONETAP_SESSION"
DEFAULT_STALE_GRACE_HOURS = 24.0


def read_user_config() -> dict:
    """Read user config from ~/.onetap/config.json. Returns {} if missing or invalid."""
    if not USER_CONFIG_FILE.exists():
        return {}
    try:
        data = json.loads(USER_CONFIG_FILE.read_text())
    except Exception as e:
        logger.warning("Failed to read config file %s: %s", USER_CONFIG_FILE, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", USER_CONFIG_FILE)
        return {}
    return data


def get_stale_grace_hours() -> float:
    """Return how long a non-terminal claim survives its dead process, in hours.

    Falls back to 24h when unset or not a positive number.
    """
    value = read_user_config().get("stale_grace_hours")
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return DEFAULT_STALE_GRACE_HOURS
    return float(value)


def get_default_device_family() -> str:
    """Return the configured default device family, defaulting to 'iPhone'."""
    return read_user_config().get("default_device_family", "iPhone")


def get_minimum_runtime() -> str | None:
    """Return the configured minimum runtime for auto-selection (e.g. 'iOS-17-0')."""
    value = read_user_config().get("minimum_runtime")
    if not value:
        return None
    return str(value)
