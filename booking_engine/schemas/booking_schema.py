"""Booking, availability, and busy-time data models."""

import datetime as _dt
import uuid
from datetime import time
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator, model_validator

from booking_engine.availability.intervals import Interval
from booking_engine.config import settings
from booking_engine.schemas.customer_schema import CustomerInfo

MANUAL_SOURCE = "manual"
CALENDAR_SOURCE_PREFIX = "calendar:"


def new_id() -> str:
    return uuid.uuid4().hex


class BookingStatus(str, Enum):
    """All possible states in a booking request lifecycle."""
    REQUESTED = "REQUESTED"
    PROPOSED_TIME = "PROPOSED_TIME"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class BookingAction(str, Enum):
    """Operator actions that drive status transitions."""
    APPROVE = "approve"
    PROPOSE = "propose"
    DECLINE = "decline"
    COMPLETE = "complete"
    REACTIVATE = "reactivate"


class ExceptionKind(str, Enum):
    CLOSED = "closed"
    CUSTOM_HOURS = "custom-hours"


class BookingMode(str, Enum):
    REQUEST_ONLY = "REQUEST_ONLY"
    INSTANT_ALLOWED = "INSTANT_ALLOWED"


class BookingService(BaseModel):
    """A bookable service; its duration sizes the interval a request occupies."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    business_id: str
    name: str = Field(min_length=1, max_length=200)
    duration_minutes: int = Field(gt=0)
    active: bool = True


class AvailabilityWindow(BaseModel):
    """Recurring weekly open hours. ``day_of_week`` 0 is Sunday, 6 is Saturday."""

    model_config = ConfigDict(frozen=True)

    day_of_week: int = Field(ge=0, le=6)
    start_time: time
    end_time: time
    enabled: bool = True

    @model_validator(mode="after")
    def _check_order(self) -> "AvailabilityWindow":
        if self.end_time <= self.start_time:
            raise ValueError("Window end_time must be after start_time")
        return self


class AvailabilityException(BaseModel):
    """A date-scoped override of window-derived hours."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    date: _dt.date
    kind: ExceptionKind
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    created_at: AwareDatetime

    @model_validator(mode="after")
    def _check_hours(self) -> "AvailabilityException":
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError("Exception end_time must be after start_time")
        return self

    @property
    def has_custom_hours(self) -> bool:
        return (
            self.kind == ExceptionKind.CUSTOM_HOURS
            and self.start_time is not None
            and self.end_time is not None
        )


class BusyBlock(BaseModel):
    """Time during which booking is disallowed regardless of windows."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    business_id: str
    start: AwareDatetime
    end: AwareDatetime
    reason: Optional[str] = Field(default=None, max_length=500)
    source: str = MANUAL_SOURCE

    @field_validator("source")
    @classmethod
    def _check_source(cls, value: str) -> str:
        if value == MANUAL_SOURCE:
            return value
        if value.startswith(CALENDAR_SOURCE_PREFIX) and len(value) > len(CALENDAR_SOURCE_PREFIX):
            return value
        raise ValueError(f"Busy block source must be 'manual' or 'calendar:<provider>', got {value!r}")

    @model_validator(mode="after")
    def _check_order(self) -> "BusyBlock":
        if self.end <= self.start:
            raise ValueError("Busy block end must be after start")
        return self

    @property
    def interval(self) -> Interval:
        return Interval(self.start, self.end)

    @property
    def is_calendar(self) -> bool:
        return self.source.startswith(CALENDAR_SOURCE_PREFIX)


class BookingSettings(BaseModel):
    """Per-business booking rules."""

    model_config = ConfigDict(frozen=True)

    business_id: str
    booking_mode: BookingMode = BookingMode.REQUEST_ONLY
    timezone: str = Field(default_factory=lambda: settings.scheduler.timezone)
    buffer_minutes: int = Field(default_factory=lambda: settings.scheduler.buffer_minutes, ge=0, le=1440)
    min_notice_hours: int = Field(default_factory=lambda: settings.scheduler.min_notice_hours, ge=0, le=168)
    max_days_out: int = Field(default_factory=lambda: settings.scheduler.max_days_out, ge=1, le=365)

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value!r}") from None
        return value


class BookingRequest(BaseModel):
    """The central booking entity.

    Instances are immutable; every state change produces a new copy that the
    store swaps in atomically. ``version`` is the optimistic-concurrency token
    and increases by one with every committed status transition.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    business_id: str
    customer: CustomerInfo
    service_id: Optional[str] = None
    preferred_start: Optional[AwareDatetime] = None
    proposed_start: Optional[AwareDatetime] = None
    proposed_end: Optional[AwareDatetime] = None
    status: BookingStatus = BookingStatus.REQUESTED
    internal_notes: Optional[str] = Field(default=None, max_length=5000)
    version: int = Field(default=0, ge=0)
    created_at: AwareDatetime
    updated_at: AwareDatetime

    @model_validator(mode="after")
    def _check_proposed(self) -> "BookingRequest":
        if (self.proposed_start is None) != (self.proposed_end is None):
            raise ValueError("proposed_start and proposed_end must both be set or both unset")
        if self.proposed_start is not None and self.proposed_end <= self.proposed_start:
            raise ValueError("proposed_end must be after proposed_start")
        if self.status in (BookingStatus.PROPOSED_TIME, BookingStatus.APPROVED) and self.proposed_start is None:
            raise ValueError(f"{self.status.value} requests must carry a proposed time")
        return self

    @property
    def proposed_interval(self) -> Optional[Interval]:
        if self.proposed_start is None or self.proposed_end is None:
            return None
        return Interval(self.proposed_start, self.proposed_end)
