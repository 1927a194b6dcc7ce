"""Runtime settings for the migration pipeline.

Values come from the environment (a ``.env`` file is honoured) and may be
overridden by a ``migration_settings.json`` file stored in the data directory.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import pytz
from dotenv import load_dotenv

from data_paths import ensure_data_root

LOGGER = logging.getLogger(__name__)

SETTINGS_FILENAME = "migration_settings.json"

DEFAULT_API_URL = "http://localhost:5000"
DEFAULT_REMOTE_TIMEOUT = 30.0
DEFAULT_RESTORE_GRACE_SECONDS = 5.0
DEFAULT_LOCK_TIMEOUT_SECONDS = 3600.0
DEFAULT_TIMEZONE = "UTC"

_ENV_KEYS = {
    "api_url": "AUTOCONTROL_API_URL",
    "api_token": "AUTOCONTROL_API_TOKEN",
    "remote_timeout": "AUTOCONTROL_REMOTE_TIMEOUT",
    "restore_point_grace_seconds": "AUTOCONTROL_RESTORE_GRACE_SECONDS",
    "timezone": "AUTOCONTROL_TIMEZONE",
    "lock_timeout_seconds": "AUTOCONTROL_LOCK_TIMEOUT_SECONDS",
}


@dataclass(frozen=True)
class MigrationSettings:
    api_url: str = DEFAULT_API_URL
    api_token: Optional[str] = None
    remote_timeout: float = DEFAULT_REMOTE_TIMEOUT
    restore_point_grace_seconds: float = DEFAULT_RESTORE_GRACE_SECONDS
    timezone: str = DEFAULT_TIMEZONE
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS

    def with_overrides(self, **overrides: Any) -> "MigrationSettings":
        return replace(self, **{key: value for key, value in overrides.items() if value is not None})


def _read_json_file(file_path: Path) -> Dict[str, Any]:
    if not file_path.exists() or file_path.stat().st_size == 0:
        return {}
    with open(file_path, "r", encoding="utf-8") as handle:
        try:
            payload = json.load(handle)
        except json.JSONDecodeError:
            LOGGER.error("JSONDecodeError for %s", file_path)
            return {}
    return payload if isinstance(payload, dict) else {}


def _coerce_seconds(name: str, value: Any, default: float) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        LOGGER.warning("Invalid value %r for %s; using %s", value, name, default)
        return default
    if seconds < 0:
        LOGGER.warning("Negative value %r for %s; using %s", value, name, default)
        return default
    return seconds


def _coerce_timezone(value: Any) -> str:
    try:
        return pytz.timezone(str(value)).zone
    except pytz.UnknownTimeZoneError:
        LOGGER.warning("Unknown timezone %r; using %s", value, DEFAULT_TIMEZONE)
        return DEFAULT_TIMEZONE


def _collect_raw_settings(
    environ: Mapping[str, str], settings_file: Optional[Path]
) -> Dict[str, Any]:
    raw: Dict[str, Any] = {}
    for attribute, env_key in _ENV_KEYS.items():
        value = environ.get(env_key)
        if value not in (None, ""):
            raw[attribute] = value
    if settings_file is not None:
        for attribute, value in _read_json_file(settings_file).items():
            if attribute in _ENV_KEYS and value not in (None, ""):
                raw[attribute] = value
    return raw


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    settings_file: Optional[Path] = None,
) -> MigrationSettings:
    """Build :class:`MigrationSettings` from the environment and settings file."""

    if environ is None:
        load_dotenv()
        environ = os.environ
    if settings_file is None:
        settings_file = ensure_data_root() / SETTINGS_FILENAME

    raw = _collect_raw_settings(environ, settings_file)

    api_url = str(raw.get("api_url") or DEFAULT_API_URL).rstrip("/")
    api_token = raw.get("api_token")
    return MigrationSettings(
        api_url=api_url,
        api_token=str(api_token) if api_token else None,
        remote_timeout=_coerce_seconds(
            "remote_timeout", raw.get("remote_timeout", DEFAULT_REMOTE_TIMEOUT), DEFAULT_REMOTE_TIMEOUT
        ),
        restore_point_grace_seconds=_coerce_seconds(
            "restore_point_grace_seconds",
            raw.get("restore_point_grace_seconds", DEFAULT_RESTORE_GRACE_SECONDS),
            DEFAULT_RESTORE_GRACE_SECONDS,
        ),
        timezone=_coerce_timezone(raw.get("timezone", DEFAULT_TIMEZONE)),
        lock_timeout_seconds=_coerce_seconds(
            "lock_timeout_seconds",
            raw.get("lock_timeout_seconds", DEFAULT_LOCK_TIMEOUT_SECONDS),
            DEFAULT_LOCK_TIMEOUT_SECONDS,
        ),
    )


__all__ = ["MigrationSettings", "SETTINGS_FILENAME", "load_settings"]
