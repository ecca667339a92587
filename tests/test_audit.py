"""Tests for the append-only audit recorder."""

from datetime import timedelta

from booking_engine.lifecycle.audit import InMemoryAuditRecorder
from booking_engine.schemas.audit_schema import ActorKind, AuditLogEntry
from booking_engine.schemas.booking_schema import BookingAction, BookingStatus
from tests.conftest import BUSINESS_ID, NOW


def make_entry(request_id: str = "req-1", minutes: int = 0, **overrides) -> AuditLogEntry:
    fields = {
        "request_id": request_id,
        "business_id": BUSINESS_ID,
        "from_status": BookingStatus.REQUESTED,
        "to_status": BookingStatus.DECLINED,
        "action": BookingAction.DECLINE,
        "timestamp": NOW + timedelta(minutes=minutes),
    }
    fields.update(overrides)
    return AuditLogEntry(**fields)


class TestAuditRecorder:
    def test_unknown_request_has_empty_trail(self):
        trail = InMemoryAuditRecorder().list_for("nobody")
        assert len(trail) == 0
        assert not trail
        assert list(trail) == []

    def test_entries_ordered_by_timestamp(self):
        recorder = InMemoryAuditRecorder()
        late = make_entry(minutes=10)
        early = make_entry(minutes=1)
        recorder.append(late)
        recorder.append(early)
        assert list(recorder.list_for("req-1")) == [early, late]

    def test_equal_timestamps_keep_append_order(self):
        recorder = InMemoryAuditRecorder()
        first = make_entry(notes="first")
        second = make_entry(notes="second")
        recorder.append(first)
        recorder.append(second)
        assert [e.notes for e in recorder.list_for("req-1")] == ["first", "second"]

    def test_trail_is_restartable(self):
        recorder = InMemoryAuditRecorder()
        recorder.append(make_entry())
        trail = recorder.list_for("req-1")
        assert list(trail) == list(trail)

    def test_trails_keyed_by_request(self):
        recorder = InMemoryAuditRecorder()
        recorder.append(make_entry("req-1"))
        recorder.append(make_entry("req-2"))
        assert len(recorder.list_for("req-1")) == 1

    def test_trail_is_a_snapshot(self):
        recorder = InMemoryAuditRecorder()
        recorder.append(make_entry())
        trail = recorder.list_for("req-1")
        recorder.append(make_entry(minutes=5))
        assert len(trail) == 1

    def test_default_actor_is_staff(self):
        assert make_entry().actor_kind == ActorKind.STAFF
