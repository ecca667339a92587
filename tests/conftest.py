"""Shared test fixtures and helpers."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import pytest

from booking_engine.engine import BookingEngine
from booking_engine.lifecycle.audit import InMemoryAuditRecorder
from booking_engine.notifications import RecordingNotificationSink
from booking_engine.schemas.audit_schema import AuditLogEntry
from booking_engine.schemas.booking_schema import (
    AvailabilityWindow,
    BookingRequest,
    BookingService,
    BookingStatus,
)
from booking_engine.schemas.customer_schema import CustomerInfo
from booking_engine.store import InMemoryBookingStore

BUSINESS_ID = "biz-1"

# Monday 2 March 2026, 08:00 UTC
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
# The following Monday
MONDAY = date(2026, 3, 9)


class FakeClock:
    """Deterministic, manually advanced clock."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FailingAuditRecorder(InMemoryAuditRecorder):
    """Audit recorder whose storage can be switched off."""

    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    def append(self, entry: AuditLogEntry) -> None:
        if self.fail:
            raise OSError("audit storage unavailable")
        super().append(entry)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    """UTC datetime on ``day``."""
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


def monday_window(start: int = 9, end: int = 17) -> AvailabilityWindow:
    return AvailabilityWindow(day_of_week=1, start_time=time(start), end_time=time(end))


def make_customer(name: str = "Jane Doe", email: str = "jane@example.com", **extra) -> dict:
    return {"name": name, "email": email, **extra}


def make_request(
    status: BookingStatus = BookingStatus.REQUESTED,
    preferred_start: Optional[datetime] = None,
    proposed: Optional[tuple[datetime, datetime]] = None,
    service_id: Optional[str] = None,
    request_id: str = "req-1",
) -> BookingRequest:
    """Helper to build a BookingRequest directly, bypassing the engine."""
    if proposed is None and status in (BookingStatus.APPROVED, BookingStatus.PROPOSED_TIME):
        proposed = (at(MONDAY, 10), at(MONDAY, 11))
    return BookingRequest(
        id=request_id,
        business_id=BUSINESS_ID,
        customer=CustomerInfo(name="Jane Doe", email="jane@example.com"),
        service_id=service_id,
        preferred_start=preferred_start,
        proposed_start=proposed[0] if proposed else None,
        proposed_end=proposed[1] if proposed else None,
        status=status,
        created_at=NOW,
        updated_at=NOW,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest.fixture
def audit():
    return FailingAuditRecorder()


@pytest.fixture
def engine(clock, sink, audit):
    """Engine with one business open Mondays 09:00-17:00 UTC, no buffer, no notice."""
    engine = BookingEngine(
        store=InMemoryBookingStore(audit=audit),
        notifier=sink,
        clock=clock,
    )
    engine.update_settings(BUSINESS_ID, timezone="UTC", buffer_minutes=0, min_notice_hours=0)
    engine.replace_availability(BUSINESS_ID, [monday_window()], [])
    return engine


@pytest.fixture
def haircut(engine) -> BookingService:
    return engine.upsert_service(BUSINESS_ID, "Haircut", 60)


def submit(
    engine: BookingEngine,
    preferred_start: Optional[datetime] = None,
    service_id: Optional[str] = None,
    name: str = "Jane Doe",
) -> BookingRequest:
    """Helper to submit a request for the test business."""
    email = name.lower().replace(" ", ".") + "@example.com"
    return engine.submit_request(
        BUSINESS_ID,
        make_customer(name=name, email=email),
        service_id=service_id,
        preferred_start=preferred_start,
    )
