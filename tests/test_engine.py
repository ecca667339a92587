"""Tests for single-request operations on the booking engine facade."""

import threading
from datetime import timedelta
from time import monotonic

import pytest

from booking_engine.availability.calendar_feed import ExternalBusyResult
from booking_engine.engine import BookingEngine
from booking_engine.errors import (
    AuditStorageError,
    ConflictError,
    ErrorCode,
    IllegalTransitionError,
    InstantBookingDisabledError,
    InvalidPayloadError,
    NoTimeToApproveError,
    RequestNotFoundError,
    StaleStateError,
)
from booking_engine.lifecycle.state_machine import ActionPayload
from booking_engine.schemas.audit_schema import ActorKind
from booking_engine.schemas.booking_schema import BookingAction, BookingMode, BookingStatus
from booking_engine.store import InMemoryBookingStore
from tests.conftest import BUSINESS_ID, MONDAY, NOW, at, make_customer, monday_window, submit


class ExplodingSink:
    def notify(self, event):
        raise ConnectionError("smtp down")


class GatedFeed:
    """Calendar feed whose second query waits until released."""

    def __init__(self):
        self.calls = 0
        self.waiting = threading.Event()
        self.release = threading.Event()

    def get_external_busy_intervals(self, business_id, window, timeout):
        self.calls += 1
        if self.calls == 2:
            self.waiting.set()
            self.release.wait(timeout=5)
        return ExternalBusyResult()


class InterleavingFeed:
    """Calendar feed that runs a one-shot hook the next time it is queried."""

    def __init__(self):
        self.hook = None

    def get_external_busy_intervals(self, business_id, window, timeout):
        hook, self.hook = self.hook, None
        if hook is not None:
            hook()
        return ExternalBusyResult()


class TestSubmit:
    def test_creates_requested(self, engine, sink):
        request = submit(engine, preferred_start=at(MONDAY, 10))
        assert request.status == BookingStatus.REQUESTED
        assert request.created_at == NOW
        assert engine.get_request(request.id) == request
        assert [e.kind for e in sink.events] == ["request.submitted"]

    def test_submission_is_not_audited(self, engine):
        request = submit(engine)
        assert engine.get_audit_trail(request.id) == []

    def test_invalid_email_rejected(self, engine):
        with pytest.raises(InvalidPayloadError, match="Invalid customer details"):
            engine.submit_request(BUSINESS_ID, make_customer(email="not-an-email"))

    def test_short_phone_rejected(self, engine):
        with pytest.raises(InvalidPayloadError, match="phone"):
            engine.submit_request(BUSINESS_ID, make_customer(phone="555-1234"))

    def test_formatted_phone_accepted(self, engine):
        request = engine.submit_request(BUSINESS_ID, make_customer(phone="+1 (555) 123-4567"))
        assert request.customer.phone == "+1 (555) 123-4567"

    def test_unknown_service_rejected(self, engine):
        with pytest.raises(InvalidPayloadError, match="Unknown service"):
            submit(engine, service_id="nope")

    def test_inactive_service_rejected(self, engine):
        retired = engine.upsert_service(BUSINESS_ID, "Perm", 90, active=False)
        with pytest.raises(InvalidPayloadError, match="not currently offered"):
            submit(engine, service_id=retired.id)

    def test_preferred_start_inside_notice_rejected(self, engine):
        engine.update_settings(BUSINESS_ID, min_notice_hours=24)
        with pytest.raises(InvalidPayloadError, match="at least 24 hours"):
            submit(engine, preferred_start=NOW + timedelta(hours=2))

    def test_preferred_start_beyond_horizon_rejected(self, engine):
        engine.update_settings(BUSINESS_ID, max_days_out=5)
        with pytest.raises(InvalidPayloadError, match="within 5 days"):
            submit(engine, preferred_start=at(MONDAY, 10))


class TestApplyAction:
    def test_approve_preferred_time_with_service_duration(self, engine, haircut, sink):
        request = submit(engine, preferred_start=at(MONDAY, 10), service_id=haircut.id)
        approved = engine.apply_action(
            request.id, BookingAction.APPROVE, observed_status=BookingStatus.REQUESTED
        )
        assert approved.status == BookingStatus.APPROVED
        assert (approved.proposed_start, approved.proposed_end) == (at(MONDAY, 10), at(MONDAY, 11))
        assert sink.events[-1].kind == "request.approved"

    def test_approve_exactly_on_busy_block_conflicts(self, engine, haircut):
        engine.add_busy_block(BUSINESS_ID, at(MONDAY, 10), at(MONDAY, 11))
        request = submit(engine, preferred_start=at(MONDAY, 10), service_id=haircut.id)
        with pytest.raises(ConflictError) as excinfo:
            engine.apply_action(
                request.id, BookingAction.APPROVE, observed_status=BookingStatus.REQUESTED
            )
        assert excinfo.value.code == ErrorCode.CONFLICT
        assert engine.get_request(request.id).status == BookingStatus.REQUESTED
        assert engine.get_audit_trail(request.id) == []

    def test_approve_without_time(self, engine):
        request = submit(engine)
        with pytest.raises(NoTimeToApproveError):
            engine.apply_action(
                request.id, BookingAction.APPROVE, observed_status=BookingStatus.REQUESTED
            )

    def test_approve_with_explicit_time(self, engine):
        request = submit(engine)
        approved = engine.apply_action(
            request.id,
            BookingAction.APPROVE,
            ActionPayload(proposed_start=at(MONDAY, 15)),
            observed_status=BookingStatus.REQUESTED,
        )
        assert approved.proposed_end == at(MONDAY, 15, 30)

    def test_stale_observed_status(self, engine):
        request = submit(engine)
        with pytest.raises(StaleStateError, match="caller observed PROPOSED_TIME"):
            engine.apply_action(
                request.id, BookingAction.DECLINE, observed_status=BookingStatus.PROPOSED_TIME
            )
        assert engine.get_request(request.id).status == BookingStatus.REQUESTED

    def test_illegal_transition_leaves_request(self, engine):
        request = submit(engine)
        with pytest.raises(IllegalTransitionError):
            engine.apply_action(
                request.id, BookingAction.COMPLETE, observed_status=BookingStatus.REQUESTED
            )
        assert engine.get_request(request.id) == request

    def test_unknown_request(self, engine):
        with pytest.raises(RequestNotFoundError):
            engine.apply_action("missing", BookingAction.DECLINE, observed_status=BookingStatus.REQUESTED)

    def test_repropose_does_not_conflict_with_itself(self, engine):
        request = submit(engine)
        first = engine.apply_action(
            request.id,
            BookingAction.PROPOSE,
            ActionPayload(proposed_start=at(MONDAY, 14), proposed_end=at(MONDAY, 15)),
            observed_status=BookingStatus.REQUESTED,
        )
        second = engine.apply_action(
            request.id,
            BookingAction.PROPOSE,
            ActionPayload(proposed_start=at(MONDAY, 14), proposed_end=at(MONDAY, 15, 30)),
            observed_status=first.status,
        )
        assert second.proposed_end == at(MONDAY, 15, 30)
        assert second.version == 2

    def test_propose_over_committed_request_conflicts(self, engine):
        holder = submit(engine, preferred_start=at(MONDAY, 10), name="First Customer")
        engine.apply_action(holder.id, BookingAction.APPROVE, observed_status=BookingStatus.REQUESTED)
        other = submit(engine, name="Second Customer")
        with pytest.raises(ConflictError):
            engine.apply_action(
                other.id,
                BookingAction.PROPOSE,
                ActionPayload(proposed_start=at(MONDAY, 10, 15), proposed_end=at(MONDAY, 11)),
                observed_status=BookingStatus.REQUESTED,
            )

    def test_audit_records_actor_and_notes(self, engine, clock):
        request = submit(engine)
        clock.advance(minutes=5)
        engine.apply_action(
            request.id,
            BookingAction.DECLINE,
            ActionPayload(notes="Fully booked"),
            observed_status=BookingStatus.REQUESTED,
        )
        [entry] = engine.get_audit_trail(request.id)
        assert entry.actor_kind == ActorKind.STAFF
        assert entry.from_status == BookingStatus.REQUESTED
        assert entry.to_status == BookingStatus.DECLINED
        assert entry.notes == "Fully booked"
        assert entry.timestamp == NOW + timedelta(minutes=5)


class TestConcurrency:
    def test_same_request_only_one_wins(self, engine):
        request = submit(engine)
        barrier = threading.Barrier(2)
        results: list[str] = []
        lock = threading.Lock()

        def decline():
            barrier.wait()
            try:
                engine.apply_action(
                    request.id, BookingAction.DECLINE, observed_status=BookingStatus.REQUESTED
                )
                outcome = "ok"
            except StaleStateError:
                outcome = "stale"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=decline) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == ["ok", "stale"]
        assert len(engine.get_audit_trail(request.id)) == 1

    def test_commit_revalidates_against_latest_busy_time(self, clock):
        feed = InterleavingFeed()
        engine = BookingEngine(store=InMemoryBookingStore(), calendar_feed=feed, clock=clock)
        engine.update_settings(BUSINESS_ID, timezone="UTC", buffer_minutes=0, min_notice_hours=0)
        engine.replace_availability(BUSINESS_ID, [monday_window()], [])
        first = submit(engine, preferred_start=at(MONDAY, 10), name="First Customer")
        second = submit(engine, preferred_start=at(MONDAY, 10), name="Second Customer")

        # the second approval commits while the first is between its check and its commit
        feed.hook = lambda: engine.apply_action(
            second.id, BookingAction.APPROVE, observed_status=BookingStatus.REQUESTED
        )
        with pytest.raises(ConflictError):
            engine.apply_action(
                first.id, BookingAction.APPROVE, observed_status=BookingStatus.REQUESTED
            )
        assert engine.get_request(second.id).status == BookingStatus.APPROVED
        assert engine.get_request(first.id).status == BookingStatus.REQUESTED

    def test_calendar_wait_does_not_block_other_writes(self, clock):
        feed = GatedFeed()
        engine = BookingEngine(store=InMemoryBookingStore(), calendar_feed=feed, clock=clock)
        engine.update_settings(BUSINESS_ID, timezone="UTC", buffer_minutes=0, min_notice_hours=0)
        engine.replace_availability(BUSINESS_ID, [monday_window()], [])
        proposing = submit(engine, name="First Customer")
        other = submit(engine, name="Second Customer")
        feed.calls = 0

        # the proposal checks its time, then waits on the feed before committing
        worker = threading.Thread(
            target=lambda: engine.apply_action(
                proposing.id,
                BookingAction.PROPOSE,
                ActionPayload(proposed_start=at(MONDAY, 10), proposed_end=at(MONDAY, 11)),
                observed_status=BookingStatus.REQUESTED,
            )
        )
        worker.start()
        try:
            assert feed.waiting.wait(timeout=5)
            started = monotonic()
            engine.update_internal_notes(other.id, "Prefers mornings")
            elapsed = monotonic() - started
        finally:
            feed.release.set()
            worker.join()

        assert elapsed < 1.0
        assert engine.get_request(other.id).internal_notes == "Prefers mornings"
        assert engine.get_request(proposing.id).status == BookingStatus.PROPOSED_TIME


class TestAuditAtomicity:
    def test_failed_audit_append_rolls_back_transition(self, engine, audit):
        request = submit(engine)
        audit.fail = True
        with pytest.raises(AuditStorageError, match="Could not record audit entry"):
            engine.apply_action(
                request.id, BookingAction.DECLINE, observed_status=BookingStatus.REQUESTED
            )
        assert engine.get_request(request.id).status == BookingStatus.REQUESTED

        audit.fail = False
        declined = engine.apply_action(
            request.id, BookingAction.DECLINE, observed_status=BookingStatus.REQUESTED
        )
        assert declined.status == BookingStatus.DECLINED
        assert len(engine.get_audit_trail(request.id)) == 1


class TestInternalNotes:
    def test_notes_are_not_audited(self, engine, clock):
        request = submit(engine)
        clock.advance(minutes=1)
        updated = engine.update_internal_notes(request.id, "Prefers mornings")
        assert updated.internal_notes == "Prefers mornings"
        assert updated.status == BookingStatus.REQUESTED
        assert updated.updated_at == NOW + timedelta(minutes=1)
        assert engine.get_audit_trail(request.id) == []

    def test_notes_editable_in_any_status(self, engine):
        request = submit(engine)
        engine.apply_action(request.id, BookingAction.DECLINE, observed_status=BookingStatus.REQUESTED)
        assert engine.update_internal_notes(request.id, "Called back").internal_notes == "Called back"

    def test_notes_do_not_invalidate_observed_status(self, engine):
        request = submit(engine)
        engine.update_internal_notes(request.id, "VIP")
        declined = engine.apply_action(
            request.id, BookingAction.DECLINE, observed_status=BookingStatus.REQUESTED
        )
        assert declined.internal_notes == "VIP"

    def test_notes_too_long(self, engine):
        request = submit(engine)
        with pytest.raises(InvalidPayloadError, match="exceed"):
            engine.update_internal_notes(request.id, "x" * 5001)


class TestInstantBooking:
    def test_disabled_by_default(self, engine):
        with pytest.raises(InstantBookingDisabledError):
            engine.submit_instant_booking(BUSINESS_ID, make_customer(), at(MONDAY, 10))

    def test_creates_approved_request_on_grid(self, engine, haircut, sink):
        engine.update_settings(BUSINESS_ID, booking_mode=BookingMode.INSTANT_ALLOWED)
        booking = engine.submit_instant_booking(
            BUSINESS_ID, make_customer(), at(MONDAY, 10, 7), service_id=haircut.id
        )
        assert booking.status == BookingStatus.APPROVED
        assert booking.proposed_start == at(MONDAY, 10)
        assert booking.proposed_end == at(MONDAY, 11)

        [entry] = engine.get_audit_trail(booking.id)
        assert entry.actor_kind == ActorKind.SYSTEM
        assert entry.to_status == BookingStatus.APPROVED
        assert sink.events[-1].kind == "request.approved"

    def test_busy_slot_rejected(self, engine, haircut):
        engine.update_settings(BUSINESS_ID, booking_mode=BookingMode.INSTANT_ALLOWED)
        engine.add_busy_block(BUSINESS_ID, at(MONDAY, 10, 30), at(MONDAY, 11))
        with pytest.raises(ConflictError, match="not available"):
            engine.submit_instant_booking(
                BUSINESS_ID, make_customer(), at(MONDAY, 10), service_id=haircut.id
            )
        assert engine.list_requests(BUSINESS_ID) == []

    def test_notice_applies_to_instant_booking(self, engine, clock):
        engine.update_settings(
            BUSINESS_ID, booking_mode=BookingMode.INSTANT_ALLOWED, min_notice_hours=2
        )
        clock.now = at(MONDAY, 9)
        with pytest.raises(ConflictError):
            engine.submit_instant_booking(BUSINESS_ID, make_customer(), at(MONDAY, 10))


class TestNotifications:
    def test_sink_failure_does_not_block_transition(self, clock):
        engine = BookingEngine(notifier=ExplodingSink(), clock=clock)
        request = engine.submit_request(BUSINESS_ID, make_customer())
        declined = engine.apply_action(
            request.id, BookingAction.DECLINE, observed_status=BookingStatus.REQUESTED
        )
        assert declined.status == BookingStatus.DECLINED

    def test_complete_and_reactivate_do_not_notify(self, engine, sink):
        request = submit(engine)
        declined = engine.apply_action(
            request.id, BookingAction.DECLINE, observed_status=BookingStatus.REQUESTED
        )
        engine.apply_action(declined.id, BookingAction.REACTIVATE, observed_status=declined.status)
        assert [e.kind for e in sink.events] == ["request.submitted", "request.declined"]


class TestListRequests:
    @pytest.fixture
    def requests(self, engine, clock, haircut):
        first = submit(engine, preferred_start=at(MONDAY, 15), name="Alice Archer")
        clock.advance(minutes=10)
        second = submit(engine, service_id=haircut.id, name="Bob Baker")
        clock.advance(minutes=10)
        third = submit(engine, preferred_start=at(MONDAY, 9), name="Carol Cooper")
        engine.apply_action(third.id, BookingAction.DECLINE, observed_status=BookingStatus.REQUESTED)
        return first, second, third

    def test_newest_first_by_default(self, engine, requests):
        first, second, third = requests
        assert [r.id for r in engine.list_requests(BUSINESS_ID)] == [third.id, second.id, first.id]

    def test_filter_by_status(self, engine, requests):
        _, _, third = requests
        declined = engine.list_requests(BUSINESS_ID, status=BookingStatus.DECLINED)
        assert [r.id for r in declined] == [third.id]

    def test_filter_by_service(self, engine, requests, haircut):
        _, second, _ = requests
        assert [r.id for r in engine.list_requests(BUSINESS_ID, service_id=haircut.id)] == [second.id]

    def test_search_name_and_email(self, engine, requests):
        first, _, _ = requests
        assert [r.id for r in engine.list_requests(BUSINESS_ID, search="ARCHER")] == [first.id]
        assert [r.id for r in engine.list_requests(BUSINESS_ID, search="alice.archer@")] == [first.id]

    def test_search_phone_digits(self, engine, requests):
        caller = engine.submit_request(
            BUSINESS_ID, make_customer(name="Dan Dial", email="dan@example.com", phone="+1 (555) 123-4567")
        )
        assert [r.id for r in engine.list_requests(BUSINESS_ID, search="555-123")] == [caller.id]

    def test_sort_by_preferred_start_puts_missing_last(self, engine, requests):
        first, second, third = requests
        ordered = engine.list_requests(BUSINESS_ID, sort="preferred_start", descending=False)
        assert [r.id for r in ordered] == [third.id, first.id, second.id]

    def test_unknown_sort_key(self, engine):
        with pytest.raises(InvalidPayloadError, match="Unknown sort key"):
            engine.list_requests(BUSINESS_ID, sort="name")


class TestSettingsAndServices:
    def test_invalid_settings_rejected(self, engine):
        with pytest.raises(InvalidPayloadError, match="Invalid booking settings"):
            engine.update_settings(BUSINESS_ID, buffer_minutes=-5)

    def test_unknown_timezone_rejected(self, engine):
        with pytest.raises(InvalidPayloadError, match="Unknown timezone"):
            engine.update_settings(BUSINESS_ID, timezone="Mars/Olympus")

    def test_settings_merge(self, engine):
        updated = engine.update_settings(BUSINESS_ID, buffer_minutes=10)
        assert updated.buffer_minutes == 10
        assert updated.timezone == "UTC"

    def test_list_active_services(self, engine, haircut):
        engine.upsert_service(BUSINESS_ID, "Retired", 30, active=False)
        assert engine.list_services(BUSINESS_ID, active_only=True) == [haircut]
        assert len(engine.list_services(BUSINESS_ID)) == 2

    def test_upsert_updates_existing(self, engine, haircut):
        engine.upsert_service(BUSINESS_ID, "Haircut", 45, service_id=haircut.id)
        [service] = engine.list_services(BUSINESS_ID)
        assert service.duration_minutes == 45

    def test_invalid_service(self, engine):
        with pytest.raises(InvalidPayloadError):
            engine.upsert_service(BUSINESS_ID, "Broken", 0)
