"""
app/config.py

Application-level configuration helpers.

Every setting is read from the environment (optionally seeded from `.env`
files) once per process and cached. Settings are never re-read mid-run.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from db.config import load_env_files

SHARE_BACKEND_NET_USE = "net_use"
SHARE_BACKEND_LOCAL = "local"
_ALLOWED_SHARE_BACKENDS = {SHARE_BACKEND_NET_USE, SHARE_BACKEND_LOCAL}


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    """
    Ensure project `.env` files are loaded once before reading app settings.
    """

    load_env_files()


def _get_bool_env(name: str, default: bool) -> bool:
    """
    Read a boolean from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
    """
    Read an integer from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """
    Read a float from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def _get_str_env(name: str, default: str) -> str:
    """
    Read a string from environment variables with fallback.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    return stripped if stripped else default


def _get_optional_str_env(name: str) -> str | None:
    """
    Read an optional string value from environment variables.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


@dataclass(frozen=True)
class ShareSettings:
    """
    Remote file share connection settings.

    ``share_path`` is a UNC path (``\\\\host\\Logs``) for the ``net_use``
    backend, or a local directory for the ``local`` backend (e.g. a CIFS mount).
    """

    backend: str = SHARE_BACKEND_NET_USE
    host: str = ""
    share_path: str = ""
    username: str | None = None
    password: str | None = None
    connect_timeout_seconds: float = 30.0
    command_timeout_seconds: float = 10.0
    probe_timeout_seconds: float = 5.0
    retry_delay_seconds: float = 2.0


@dataclass(frozen=True)
class LogSourceSettings:
    """
    Shape of the membership-service log files.
    """

    base_name: str = "JieLink_Center_Comm"
    encoding: str = "gbk"
    max_slices: int = 20
    match_window_seconds: float = 300.0
    error_app_name: str = "members-parking-service"


@dataclass(frozen=True)
class IngestionSettings:
    """
    Runtime settings for one ingestion run.
    """

    batch_size: int = 500
    realtime_file_limit: int = 2
    daily_lookback_days: int = 3
    recent_yesterday_until_hour: int = 6
    fixture_fallback: bool = False
    fixture_path: str = "demo-data/sample-log.txt"
    fixture_max_records: int = 10


@dataclass(frozen=True)
class SchedulerSettings:
    """
    Cadences of the recurring ingestion triggers (crontab expressions).
    """

    enabled: bool = True
    timezone: str = "Asia/Shanghai"
    realtime_cron: str = "*/15 * * * *"
    hourly_cron: str = "0 * * * *"
    daily_cron: str = "0 2 * * *"
    startup_delay_seconds: float = 5.0
    misfire_grace_seconds: int = 300


@lru_cache(maxsize=1)
def get_share_settings() -> ShareSettings:
    """
    Return cached share connection settings from environment variables.
    """

    host = _get_str_env("SHARE_HOST", "")
    default_path = f"\\\\{host}\\Logs" if host else ""
    return ShareSettings(
        backend=_get_str_env("SHARE_BACKEND", SHARE_BACKEND_NET_USE).lower(),
        host=host,
        share_path=_get_str_env("SHARE_PATH", default_path),
        username=_get_optional_str_env("SHARE_USERNAME"),
        password=_get_optional_str_env("SHARE_PASSWORD"),
        connect_timeout_seconds=max(1.0, _get_float_env("SHARE_CONNECT_TIMEOUT_SECONDS", 30.0)),
        command_timeout_seconds=max(1.0, _get_float_env("SHARE_COMMAND_TIMEOUT_SECONDS", 10.0)),
        probe_timeout_seconds=max(1.0, _get_float_env("SHARE_PROBE_TIMEOUT_SECONDS", 5.0)),
        retry_delay_seconds=max(0.0, _get_float_env("SHARE_RETRY_DELAY_SECONDS", 2.0)),
    )


@lru_cache(maxsize=1)
def get_log_source_settings() -> LogSourceSettings:
    """
    Return cached log file format settings from environment variables.
    """

    return LogSourceSettings(
        base_name=_get_str_env("LOG_BASE_NAME", "JieLink_Center_Comm"),
        encoding=_get_str_env("LOG_ENCODING", "gbk"),
        max_slices=max(0, _get_int_env("LOG_MAX_SLICES", 20)),
        match_window_seconds=max(0.0, _get_float_env("LOG_MATCH_WINDOW_SECONDS", 300.0)),
        error_app_name=_get_str_env("LOG_ERROR_APP_NAME", "members-parking-service"),
    )


@lru_cache(maxsize=1)
def get_ingestion_settings() -> IngestionSettings:
    """
    Return cached ingestion run settings from environment variables.
    """

    return IngestionSettings(
        batch_size=max(1, _get_int_env("INGEST_BATCH_SIZE", 500)),
        realtime_file_limit=max(1, _get_int_env("INGEST_REALTIME_FILE_LIMIT", 2)),
        daily_lookback_days=max(1, _get_int_env("INGEST_DAILY_LOOKBACK_DAYS", 3)),
        recent_yesterday_until_hour=min(23, max(0, _get_int_env("INGEST_RECENT_YESTERDAY_UNTIL_HOUR", 6))),
        fixture_fallback=_get_bool_env("INGEST_FIXTURE_FALLBACK", False),
        fixture_path=_get_str_env("INGEST_FIXTURE_PATH", "demo-data/sample-log.txt"),
        fixture_max_records=max(0, _get_int_env("INGEST_FIXTURE_MAX_RECORDS", 10)),
    )


@lru_cache(maxsize=1)
def get_scheduler_settings() -> SchedulerSettings:
    """
    Return cached scheduler settings from environment variables.
    """

    return SchedulerSettings(
        enabled=_get_bool_env("SCHEDULER_ENABLED", True),
        timezone=_get_str_env("SCHEDULER_TIMEZONE", "Asia/Shanghai"),
        realtime_cron=_get_str_env("SCHEDULER_REALTIME_CRON", "*/15 * * * *"),
        hourly_cron=_get_str_env("SCHEDULER_HOURLY_CRON", "0 * * * *"),
        daily_cron=_get_str_env("SCHEDULER_DAILY_CRON", "0 2 * * *"),
        startup_delay_seconds=max(0.0, _get_float_env("SCHEDULER_STARTUP_DELAY_SECONDS", 5.0)),
        misfire_grace_seconds=max(1, _get_int_env("SCHEDULER_MISFIRE_GRACE_SECONDS", 300)),
    )


def collect_settings_errors(
    *,
    share: ShareSettings,
    scheduler: SchedulerSettings,
) -> list[str]:
    """
    Validate share and scheduler settings, returning every problem found.
    """

    from apscheduler.triggers.cron import CronTrigger

    errors: list[str] = []

    if share.backend not in _ALLOWED_SHARE_BACKENDS:
        errors.append(
            f"SHARE_BACKEND='{share.backend}' is not valid. "
            f"Allowed values: {sorted(_ALLOWED_SHARE_BACKENDS)}."
        )
    if not share.share_path:
        errors.append("SHARE_PATH is not set and cannot be derived without SHARE_HOST.")
    if share.backend == SHARE_BACKEND_NET_USE:
        if not share.host:
            errors.append("SHARE_HOST is required for the net_use share backend.")
        if not share.username or not share.password:
            errors.append(
                "SHARE_USERNAME and SHARE_PASSWORD are required for the net_use share backend."
            )

    for name, expression in (
        ("SCHEDULER_REALTIME_CRON", scheduler.realtime_cron),
        ("SCHEDULER_HOURLY_CRON", scheduler.hourly_cron),
        ("SCHEDULER_DAILY_CRON", scheduler.daily_cron),
    ):
        try:
            CronTrigger.from_crontab(expression, timezone=scheduler.timezone)
        except (ValueError, LookupError) as exc:
            errors.append(f"{name}='{expression}' is not a valid crontab expression: {exc}")

    return errors
