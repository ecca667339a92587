"""
Booking engine facade.

Wires the availability resolver, the request state machine, the store, the
audit recorder, bulk orchestration, notifications and metrics into the set
of operations the presentation and transport layers call.

Usage:
    engine = BookingEngine()
    request = engine.submit_request("biz-1", {"name": "Ada", "email": "ada@example.com"})
    engine.apply_action(
        request.id, BookingAction.DECLINE, observed_status=BookingStatus.REQUESTED
    )
"""

import threading
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Union
from zoneinfo import ZoneInfo

from booking_engine.availability.calendar_feed import CalendarFeed, StoredCalendarFeed
from booking_engine.availability.intervals import Interval, contained_in_any, merge_intervals
from booking_engine.availability.resolver import (
    AvailabilityResolver,
    AvailabilityResult,
    CandidateCheck,
)
from booking_engine.config import AppConfig, settings
from booking_engine.errors import (
    ConflictError,
    InstantBookingDisabledError,
    InvalidPayloadError,
    RequestNotFoundError,
    StaleStateError,
)
from booking_engine.lifecycle.bulk import BulkOrchestrator, BulkOutcome
from booking_engine.lifecycle.state_machine import ActionPayload, BookingStateMachine, SideEffect
from booking_engine.logging_context import get_request_logger, set_request_id
from booking_engine.notifications import (
    ACTION_EVENTS,
    REQUEST_SUBMITTED,
    LoggingNotificationSink,
    NotificationEvent,
    NotificationSink,
    dispatch,
)
from booking_engine.reporting.metrics import MetricsAggregator, MetricsSummary
from booking_engine.schemas.audit_schema import ActorKind, AuditLogEntry
from booking_engine.schemas.booking_schema import (
    AvailabilityException,
    AvailabilityWindow,
    BookingAction,
    BookingMode,
    BookingRequest,
    BookingService,
    BookingSettings,
    BookingStatus,
    BusyBlock,
)
from booking_engine.schemas.customer_schema import CustomerInfo
from booking_engine.store import InMemoryBookingStore
from booking_engine.utils import normalize_phone, round_to_granularity

logger = get_request_logger(__name__)

SORT_KEYS = ("created_at", "updated_at", "preferred_start")
MAX_NOTES_LENGTH = 5000

CustomerInput = Union[CustomerInfo, dict[str, Any]]


class BookingEngine:
    """Single entry point for booking request lifecycle and availability."""

    def __init__(
        self,
        store: Optional[InMemoryBookingStore] = None,
        calendar_feed: Optional[CalendarFeed] = None,
        notifier: Optional[NotificationSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
        config: AppConfig = settings,
    ) -> None:
        self.store = store or InMemoryBookingStore()
        self._notifier = notifier or LoggingNotificationSink()
        self._clock = clock or _utc_now
        self._config = config
        self.machine = BookingStateMachine(config.scheduler.approve_default_minutes)
        self.resolver = AvailabilityResolver(
            self.store.blocks,
            calendar_feed or StoredCalendarFeed(self.store.blocks),
            config=config.scheduler,
            calendar_timeout_sec=config.calendar.feed_timeout_sec,
            clock=self._clock,
        )
        self.bulk = BulkOrchestrator(
            fetch=lambda business_id, request_id: self.get_request(request_id, business_id),
            apply=lambda request_id, action, payload, observed: self.apply_action(
                request_id, action, payload, observed_status=observed
            ),
            machine=self.machine,
        )
        self.metrics = MetricsAggregator()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_request(
        self,
        business_id: str,
        customer: CustomerInput,
        service_id: Optional[str] = None,
        preferred_start: Optional[datetime] = None,
    ) -> BookingRequest:
        """Create a booking request in status REQUESTED."""
        info = _customer_info(customer)
        if service_id is not None:
            self._active_service(business_id, service_id)
        if preferred_start is not None:
            self._check_preferred_start(business_id, preferred_start)

        now = self._clock()
        request = BookingRequest(
            business_id=business_id,
            customer=info,
            service_id=service_id,
            preferred_start=preferred_start,
            created_at=now,
            updated_at=now,
        )
        set_request_id(request.id)
        self.store.insert_request(request)
        logger.info("Booking request submitted for %s", business_id)
        self._notify(REQUEST_SUBMITTED, request, now, to_status=request.status)
        return request

    def submit_instant_booking(
        self,
        business_id: str,
        customer: CustomerInput,
        start: datetime,
        service_id: Optional[str] = None,
    ) -> BookingRequest:
        """
        Book a time directly, skipping staff review.

        Only businesses in INSTANT_ALLOWED mode accept this. The start is
        rounded to the slot grid and must fall inside browsable availability.

        Raises:
            InstantBookingDisabledError: The business only takes requests.
            InvalidPayloadError: Bad contact data, service, or naive start.
            ConflictError: The slot is not available at commit time.
        """
        booking_settings = self.store.get_settings(business_id)
        if booking_settings.booking_mode != BookingMode.INSTANT_ALLOWED:
            raise InstantBookingDisabledError(
                f"Business {business_id} does not accept instant bookings"
            )
        info = _customer_info(customer)
        duration = self._config.scheduler.default_service_minutes
        if service_id is not None:
            duration = self._active_service(business_id, service_id).duration_minutes
        if start.tzinfo is None:
            raise InvalidPayloadError("Booking start must be timezone-aware")

        tz = ZoneInfo(booking_settings.timezone)
        slot_start = round_to_granularity(
            start.astimezone(tz), self._config.scheduler.slot_granularity_minutes
        ).astimezone(timezone.utc)
        slot = Interval(slot_start, slot_start + timedelta(minutes=duration))
        first_day = slot.start.astimezone(tz).date()
        last_day = (slot.end - timedelta(microseconds=1)).astimezone(tz).date()
        calendar = self.resolver.calendar_busy(
            self.store.snapshot(business_id), first_day, last_day
        )

        now = self._clock()
        request = BookingRequest(
            business_id=business_id,
            customer=info,
            service_id=service_id,
            preferred_start=slot.start,
            proposed_start=slot.start,
            proposed_end=slot.end,
            status=BookingStatus.APPROVED,
            version=1,
            created_at=now,
            updated_at=now,
        )
        entry = AuditLogEntry(
            request_id=request.id,
            business_id=business_id,
            actor_kind=ActorKind.SYSTEM,
            from_status=BookingStatus.REQUESTED,
            to_status=BookingStatus.APPROVED,
            action=BookingAction.APPROVE,
            timestamp=now,
            notes="Instant booking",
        )

        def revalidate() -> None:
            result = self.resolver.list_available_slots(
                self.store.snapshot(business_id),
                first_day,
                last_day,
                duration_minutes=duration,
                calendar=calendar,
            )
            if not contained_in_any(slot, merge_intervals(result.intervals)):
                raise ConflictError(
                    f"Requested time is not available: {slot.start.isoformat()} - {slot.end.isoformat()}"
                )

        set_request_id(request.id)
        self.store.insert_request(request, audit_entry=entry, revalidate=revalidate)
        logger.info("Instant booking created for %s at %s", business_id, slot.start.isoformat())
        self._notify(
            ACTION_EVENTS[BookingAction.APPROVE], request, now,
            from_status=BookingStatus.REQUESTED, to_status=BookingStatus.APPROVED,
        )
        return request

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get_request(self, request_id: str, business_id: Optional[str] = None) -> BookingRequest:
        request = self.store.get_request(request_id)
        if business_id is not None and request.business_id != business_id:
            raise RequestNotFoundError(f"Booking request {request_id} not found")
        return request

    def apply_action(
        self,
        request_id: str,
        action: BookingAction,
        payload: Optional[ActionPayload] = None,
        *,
        observed_status: BookingStatus,
        actor: ActorKind = ActorKind.STAFF,
    ) -> BookingRequest:
        """
        Apply one operator action with compare-and-swap semantics.

        Args:
            request_id: Request to transition.
            action: Operator action.
            payload: Proposed times and audit notes.
            observed_status: Status the caller last saw. A mismatch raises
                StaleStateError without evaluating the action.
            actor: Recorded in the audit entry.

        Raises:
            RequestNotFoundError, StaleStateError, IllegalTransitionError,
            NoTimeToApproveError, InvalidPayloadError, ConflictError,
            AuditStorageError
        """
        set_request_id(request_id)
        current = self.store.get_request(request_id)
        if current.status != observed_status:
            raise StaleStateError(
                f"Request {request_id} is {current.status.value}, caller observed {observed_status.value}"
            )

        business_id = current.business_id
        snapshot = self.store.snapshot(business_id)
        now = self._clock()
        result = self.machine.transition(
            current,
            action,
            payload,
            check_interval=lambda interval: self.resolver.validate_candidate_interval(
                snapshot, interval, exclude_request_id=request_id
            ),
            now=now,
            duration_minutes=self._service_duration(current),
        )
        if result.check is not None and result.check.degraded:
            logger.warning("%s validated without calendar busy time (degraded)", action.value)

        entry = AuditLogEntry(
            request_id=request_id,
            business_id=business_id,
            actor_kind=actor,
            from_status=result.from_status,
            to_status=result.to_status,
            action=action,
            timestamp=now,
            notes=payload.notes if payload else None,
        )

        revalidate = None
        asserted = result.asserted_interval
        if asserted is not None:
            # calendar I/O stays outside the store lock held during commit
            calendar = self.resolver.calendar_busy_for(snapshot, asserted)

            def revalidate() -> None:
                check = self.resolver.validate_candidate_interval(
                    self.store.snapshot(business_id),
                    asserted,
                    exclude_request_id=request_id,
                    calendar=calendar,
                )
                if not check.ok:
                    raise ConflictError(
                        f"{check.reason}: {asserted.start.isoformat()} - {asserted.end.isoformat()}"
                    )

        committed = self.store.commit_transition(
            request_id, current.status, current.version, result.request, entry, revalidate
        )
        logger.info(
            "Request %s: %s -> %s", action.value, result.from_status.value, result.to_status.value
        )
        if SideEffect.NOTIFY in result.side_effects and action in ACTION_EVENTS:
            self._notify(
                ACTION_EVENTS[action], committed, now,
                from_status=result.from_status, to_status=result.to_status,
            )
        return committed

    def update_internal_notes(self, request_id: str, notes: Optional[str]) -> BookingRequest:
        """Replace business-only notes. Not audited and not status-checked."""
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise InvalidPayloadError(f"Internal notes exceed {MAX_NOTES_LENGTH} characters")
        set_request_id(request_id)
        return self.store.update_request_fields(
            request_id, internal_notes=notes, updated_at=self._clock()
        )

    def bulk_apply_action(
        self,
        business_id: str,
        request_ids: Iterable[str],
        action: BookingAction,
        payload: Optional[ActionPayload] = None,
        visible_ids: Optional[Iterable[str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BulkOutcome:
        return self.bulk.run(
            business_id, request_ids, action, payload,
            visible_ids=visible_ids, cancel_event=cancel_event,
        )

    def get_audit_trail(self, request_id: str) -> list[AuditLogEntry]:
        return list(self.store.audit.list_for(request_id))

    def list_requests(
        self,
        business_id: str,
        status: Optional[BookingStatus] = None,
        service_id: Optional[str] = None,
        search: Optional[str] = None,
        sort: str = "created_at",
        descending: bool = True,
    ) -> list[BookingRequest]:
        """Filtered, sorted view of a business's requests."""
        if sort not in SORT_KEYS:
            raise InvalidPayloadError(f"Unknown sort key {sort!r}; expected one of {SORT_KEYS}")

        requests = self.store.list_requests(business_id)
        if status is not None:
            requests = [r for r in requests if r.status == status]
        if service_id is not None:
            requests = [r for r in requests if r.service_id == service_id]
        if search:
            requests = [r for r in requests if _matches(r, search)]

        # requests without a value for the sort key always go last
        present = [r for r in requests if getattr(r, sort) is not None]
        missing = [r for r in requests if getattr(r, sort) is None]
        present.sort(key=lambda r: (getattr(r, sort), r.id), reverse=descending)
        missing.sort(key=lambda r: r.id)
        return present + missing

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def list_available_slots(
        self,
        business_id: str,
        start_date: date,
        end_date: date,
        service_id: Optional[str] = None,
    ) -> AvailabilityResult:
        duration = None
        if service_id is not None:
            duration = self.store.get_service(business_id, service_id).duration_minutes
        return self.resolver.list_available_slots(
            self.store.snapshot(business_id), start_date, end_date, duration_minutes=duration
        )

    def validate_candidate_interval(self, business_id: str, interval: Interval) -> CandidateCheck:
        return self.resolver.validate_candidate_interval(self.store.snapshot(business_id), interval)

    def replace_availability(
        self,
        business_id: str,
        windows: Iterable[AvailabilityWindow],
        exceptions: Iterable[AvailabilityException] = (),
    ) -> None:
        self.store.replace_availability(business_id, windows, exceptions)

    def get_settings(self, business_id: str) -> BookingSettings:
        return self.store.get_settings(business_id)

    def update_settings(self, business_id: str, **changes: Any) -> BookingSettings:
        """Apply partial changes to a business's booking settings."""
        current = self.store.get_settings(business_id)
        changes.pop("business_id", None)
        try:
            updated = BookingSettings.model_validate({**current.model_dump(), **changes})
        except ValueError as exc:
            raise InvalidPayloadError(f"Invalid booking settings: {exc}") from exc
        self.store.save_settings(updated)
        logger.info("Settings updated for %s: %s", business_id, sorted(changes))
        return updated

    # ------------------------------------------------------------------
    # Busy blocks
    # ------------------------------------------------------------------

    def add_busy_block(
        self, business_id: str, start: datetime, end: datetime, reason: Optional[str] = None
    ) -> BusyBlock:
        return self.store.blocks.add_manual(business_id, start, end, reason)

    def update_busy_block(
        self,
        business_id: str,
        block_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> BusyBlock:
        return self.store.blocks.update(business_id, block_id, start, end, reason)

    def delete_busy_block(self, business_id: str, block_id: str) -> None:
        self.store.blocks.delete(business_id, block_id)

    def list_busy_blocks(
        self, business_id: str, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[BusyBlock]:
        return self.store.blocks.list_blocks(business_id, start, end)

    def replace_calendar_blocks(
        self, business_id: str, provider: str, intervals: Iterable[Interval]
    ) -> list[BusyBlock]:
        return self.store.blocks.replace_calendar_blocks(business_id, provider, intervals)

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def upsert_service(
        self,
        business_id: str,
        name: str,
        duration_minutes: int,
        active: bool = True,
        service_id: Optional[str] = None,
    ) -> BookingService:
        fields: dict[str, Any] = {
            "business_id": business_id,
            "name": name,
            "duration_minutes": duration_minutes,
            "active": active,
        }
        if service_id is not None:
            fields["id"] = service_id
        try:
            service = BookingService(**fields)
        except ValueError as exc:
            raise InvalidPayloadError(f"Invalid service: {exc}") from exc
        return self.store.upsert_service(service)

    def list_services(self, business_id: str, active_only: bool = False) -> list[BookingService]:
        services = self.store.list_services(business_id)
        if active_only:
            services = [s for s in services if s.active]
        return services

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def compute_metrics(self, business_id: str, start_date: date, end_date: date) -> MetricsSummary:
        """Metrics for requests created between the two dates, inclusive, in business time."""
        tz = ZoneInfo(self.store.get_settings(business_id).timezone)
        return self.metrics.compute(
            self.store.list_requests(business_id),
            self.store.audit.list_for,
            tz,
            start=datetime.combine(start_date, time.min, tzinfo=tz),
            end=datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=tz),
            services=self.store.list_services(business_id),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _active_service(self, business_id: str, service_id: str) -> BookingService:
        try:
            service = self.store.get_service(business_id, service_id)
        except RequestNotFoundError:
            raise InvalidPayloadError(f"Unknown service {service_id}") from None
        if not service.active:
            raise InvalidPayloadError(f"Service {service.name} is not currently offered")
        return service

    def _service_duration(self, request: BookingRequest) -> Optional[int]:
        if request.service_id is None:
            return None
        try:
            return self.store.get_service(request.business_id, request.service_id).duration_minutes
        except RequestNotFoundError:
            logger.warning("Service %s no longer exists, using default duration", request.service_id)
            return None

    def _check_preferred_start(self, business_id: str, preferred_start: datetime) -> None:
        if preferred_start.tzinfo is None:
            raise InvalidPayloadError("Preferred start must be timezone-aware")
        rules = self.store.get_settings(business_id)
        tz = ZoneInfo(rules.timezone)
        now = self._clock().astimezone(tz)
        if preferred_start < now + timedelta(hours=rules.min_notice_hours):
            raise InvalidPayloadError(
                f"Preferred time must be at least {rules.min_notice_hours} hours from now"
            )
        if preferred_start.astimezone(tz).date() > now.date() + timedelta(days=rules.max_days_out):
            raise InvalidPayloadError(
                f"Preferred time must be within {rules.max_days_out} days"
            )

    def _notify(
        self,
        kind: str,
        request: BookingRequest,
        occurred_at: datetime,
        from_status: Optional[BookingStatus] = None,
        to_status: Optional[BookingStatus] = None,
    ) -> None:
        dispatch(
            self._notifier,
            NotificationEvent(kind, request, occurred_at, from_status, to_status),
        )


def _customer_info(customer: CustomerInput) -> CustomerInfo:
    if isinstance(customer, CustomerInfo):
        return customer
    try:
        return CustomerInfo.model_validate(customer)
    except ValueError as exc:
        raise InvalidPayloadError(f"Invalid customer details: {exc}") from exc


def _matches(request: BookingRequest, search: str) -> bool:
    """Case-insensitive match on name or email, or on phone digits."""
    needle = search.strip().lower()
    customer = request.customer
    if needle in customer.name.lower() or needle in customer.email.lower():
        return True
    digits = normalize_phone(needle).lstrip("+")
    return bool(digits and customer.phone and digits in normalize_phone(customer.phone))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
