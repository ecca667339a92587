"""
Centralized configuration with environment variable overrides.

Engine-wide defaults for availability resolution, bulk processing, and the
calendar collaborator live here. Per-business overrides are stored as
BookingSettings records; these values only seed them.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


@dataclass(frozen=True)
class SchedulerConfig:
    """Default booking rules applied when a business has not overridden them."""

    timezone: str = os.getenv("SCHEDULER_TIMEZONE", "UTC")
    buffer_minutes: int = _safe_int("SCHEDULER_BUFFER_MINUTES", "0")
    min_notice_hours: int = _safe_int("SCHEDULER_MIN_NOTICE_HOURS", "24")
    max_days_out: int = _safe_int("SCHEDULER_MAX_DAYS_OUT", "90")
    slot_granularity_minutes: int = _safe_int("SCHEDULER_SLOT_GRANULARITY_MINUTES", "15")
    default_service_minutes: int = _safe_int("SCHEDULER_DEFAULT_SERVICE_MINUTES", "60")
    approve_default_minutes: int = _safe_int("SCHEDULER_APPROVE_DEFAULT_MINUTES", "30")


@dataclass(frozen=True)
class CalendarConfig:
    """Limits for the external calendar busy-time collaborator."""

    feed_timeout_sec: float = _safe_float("CALENDAR_FEED_TIMEOUT_SEC", "5.0")


@dataclass(frozen=True)
class BulkConfig:
    """Bulk action reporting settings."""

    failure_preview: int = _safe_int("BULK_FAILURE_PREVIEW", "3")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    bulk: BulkConfig = field(default_factory=BulkConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    engine_name: str = os.getenv("ENGINE_NAME", "booking-engine")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    scheduler = config.scheduler
    if not 0 <= scheduler.buffer_minutes <= 1440:
        raise ValueError(
            f"SCHEDULER_BUFFER_MINUTES must be between 0 and 1440, got {scheduler.buffer_minutes}"
        )
    if not 0 <= scheduler.min_notice_hours <= 168:
        raise ValueError(
            f"SCHEDULER_MIN_NOTICE_HOURS must be between 0 and 168, got {scheduler.min_notice_hours}"
        )
    if not 1 <= scheduler.max_days_out <= 365:
        raise ValueError(
            f"SCHEDULER_MAX_DAYS_OUT must be between 1 and 365, got {scheduler.max_days_out}"
        )
    if not 1 <= scheduler.slot_granularity_minutes <= 60:
        raise ValueError(
            "SCHEDULER_SLOT_GRANULARITY_MINUTES must be between 1 and 60, "
            f"got {scheduler.slot_granularity_minutes}"
        )
    for name, minutes in [
        ("SCHEDULER_DEFAULT_SERVICE_MINUTES", scheduler.default_service_minutes),
        ("SCHEDULER_APPROVE_DEFAULT_MINUTES", scheduler.approve_default_minutes),
    ]:
        if minutes < 1:
            raise ValueError(f"{name} must be >= 1, got {minutes}")

    if config.calendar.feed_timeout_sec <= 0:
        raise ValueError(
            f"CALENDAR_FEED_TIMEOUT_SEC must be > 0, got {config.calendar.feed_timeout_sec}"
        )
    if config.bulk.failure_preview < 1:
        raise ValueError(
            f"BULK_FAILURE_PREVIEW must be >= 1, got {config.bulk.failure_preview}"
        )


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("Configuration loaded for '%s'", config.engine_name)
    return config


# Singleton instance
settings = load_config()
