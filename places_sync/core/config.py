"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# The scheduled trigger fires once per weekday slot.
SCHEDULE_INTERVAL_DAYS = 7


class ConfigError(RuntimeError):
    """Raised when a configuration value cannot be parsed."""


@dataclass(frozen=True)
class Settings:
    google_places_api_key: str
    database_url: str
    worker_port: int = 9000
    max_places_per_sync: int = 5000
    max_requests_per_sync: int = 10000
    max_cost_per_sync_usd: float = 80.0
    cost_alert_usd: float = 50.0
    sync_schedule: str = "sunday 02:00"
    sync_enabled: bool = True
    request_timeout: float = 10.0
    request_delay: float = 0.1
    rate_limit_cooldown: float = 2.0
    max_photos_per_place: int = 3
    incremental_max_age_days: int = 6
    stale_run_after_hours: int = 6


def parse_schedule(expression: str):
    """Split a ``"<weekday> HH:MM"`` expression into ``(weekday, "HH:MM")``."""
    parts = (expression or "").lower().split()
    if len(parts) != 2 or parts[0] not in WEEKDAYS:
        raise ConfigError(f"Invalid sync schedule {expression!r}; expected '<weekday> HH:MM'")
    weekday, at = parts
    hour, sep, minute = at.partition(":")
    if not sep or not hour.isdigit() or not minute.isdigit() or int(hour) > 23 or int(minute) > 59:
        raise ConfigError(f"Invalid sync schedule time {at!r}; expected HH:MM")
    return weekday, f"{int(hour):02d}:{int(minute):02d}"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be numeric, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}")
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    google_places_api_key = os.getenv("GOOGLE_PLACES_API_KEY", "")
    database_url = os.getenv("DATABASE_URL", "")
    sync_schedule = os.getenv("GOOGLE_PLACES_SYNC_SCHEDULE") or "sunday 02:00"
    parse_schedule(sync_schedule)
    sync_enabled = (os.getenv("GOOGLE_PLACES_SYNC_ENABLED") or "true").lower() in {"1", "true", "yes"}

    # Anything fetched by the previous scheduled run must be due again by the next one.
    incremental_max_age_days = _int_env("GOOGLE_PLACES_INCREMENTAL_MAX_AGE_DAYS", 6)
    if incremental_max_age_days >= SCHEDULE_INTERVAL_DAYS:
        raise ConfigError(
            "GOOGLE_PLACES_INCREMENTAL_MAX_AGE_DAYS must be shorter than the "
            f"{SCHEDULE_INTERVAL_DAYS}-day schedule interval, got {incremental_max_age_days}"
        )

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not google_places_api_key:
        logger.warning("GOOGLE_PLACES_API_KEY is not configured; Google Places sync is disabled.")

    return Settings(
        google_places_api_key=google_places_api_key,
        database_url=database_url,
        worker_port=_int_env("WORKER_PORT", 9000),
        max_places_per_sync=_int_env("GOOGLE_PLACES_MAX_PLACES_PER_SYNC", 5000),
        max_requests_per_sync=_int_env("GOOGLE_PLACES_MAX_REQUESTS_PER_SYNC", 10000),
        max_cost_per_sync_usd=_float_env("GOOGLE_PLACES_MAX_COST_PER_SYNC", 80.0),
        cost_alert_usd=_float_env("GOOGLE_PLACES_ALERT_COST", 50.0),
        sync_schedule=sync_schedule,
        sync_enabled=sync_enabled,
        request_timeout=_float_env("GOOGLE_PLACES_REQUEST_TIMEOUT", 10.0),
        request_delay=_float_env("GOOGLE_PLACES_REQUEST_DELAY", 0.1),
        rate_limit_cooldown=_float_env("GOOGLE_PLACES_RATE_LIMIT_COOLDOWN", 2.0),
        max_photos_per_place=_int_env("GOOGLE_PLACES_MAX_PHOTOS_PER_PLACE", 3),
        incremental_max_age_days=incremental_max_age_days,
        stale_run_after_hours=_int_env("GOOGLE_PLACES_STALE_RUN_HOURS", 6),
    )
