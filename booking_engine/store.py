"""
In-memory persistence boundary for booking data.

Holds services, availability configuration, settings and booking requests
per business, and owns the busy-block store and the audit recorder. In
production this would be a database; the contract that matters is
``commit_transition``: the status compare-and-swap, the busy-time
re-validation, the audit append and the request write happen under one
lock, so a transition and its audit entry commit together or not at all.
"""

import logging
import threading
from typing import Callable, Iterable, Optional

from booking_engine.availability.busy_blocks import BusyBlockStore
from booking_engine.availability.resolver import AvailabilitySnapshot
from booking_engine.errors import (
    AuditStorageError,
    BookingEngineError,
    RequestNotFoundError,
    StaleStateError,
)
from booking_engine.lifecycle.audit import AuditRecorder, InMemoryAuditRecorder
from booking_engine.schemas.audit_schema import AuditLogEntry
from booking_engine.schemas.booking_schema import (
    AvailabilityException,
    AvailabilityWindow,
    BookingRequest,
    BookingService,
    BookingSettings,
    BookingStatus,
)

logger = logging.getLogger(__name__)

Revalidate = Callable[[], None]


class InMemoryBookingStore:
    """Thread-safe, process-local storage for every engine record."""

    def __init__(
        self,
        audit: Optional[AuditRecorder] = None,
        blocks: Optional[BusyBlockStore] = None,
    ) -> None:
        # Re-entrant: commit-time re-validation reads a snapshot under the same lock.
        self._lock = threading.RLock()
        self.audit: AuditRecorder = audit if audit is not None else InMemoryAuditRecorder()
        self.blocks = blocks if blocks is not None else BusyBlockStore()
        self._requests: dict[str, BookingRequest] = {}
        self._services: dict[str, dict[str, BookingService]] = {}
        self._settings: dict[str, BookingSettings] = {}
        self._windows: dict[str, list[AvailabilityWindow]] = {}
        self._exceptions: dict[str, list[AvailabilityException]] = {}

    # ------------------------------------------------------------------
    # Settings and availability configuration
    # ------------------------------------------------------------------

    def get_settings(self, business_id: str) -> BookingSettings:
        with self._lock:
            stored = self._settings.get(business_id)
        return stored or BookingSettings(business_id=business_id)

    def save_settings(self, booking_settings: BookingSettings) -> None:
        with self._lock:
            self._settings[booking_settings.business_id] = booking_settings

    def replace_availability(
        self,
        business_id: str,
        windows: Iterable[AvailabilityWindow],
        exceptions: Iterable[AvailabilityException],
    ) -> None:
        """Replace all windows and exceptions for a business in one write."""
        windows = list(windows)
        exceptions = list(exceptions)
        with self._lock:
            self._windows[business_id] = windows
            self._exceptions[business_id] = exceptions
        logger.info(
            "Availability replaced for %s: %d window(s), %d exception(s)",
            business_id, len(windows), len(exceptions),
        )

    def get_windows(self, business_id: str) -> list[AvailabilityWindow]:
        with self._lock:
            return list(self._windows.get(business_id, ()))

    def get_exceptions(self, business_id: str) -> list[AvailabilityException]:
        with self._lock:
            return list(self._exceptions.get(business_id, ()))

    def snapshot(self, business_id: str) -> AvailabilitySnapshot:
        """Capture everything the availability resolver reads for a business."""
        with self._lock:
            return AvailabilitySnapshot(
                settings=self.get_settings(business_id),
                windows=self.get_windows(business_id),
                exceptions=self.get_exceptions(business_id),
                requests=self.list_requests(business_id),
            )

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def upsert_service(self, service: BookingService) -> BookingService:
        with self._lock:
            self._services.setdefault(service.business_id, {})[service.id] = service
        return service

    def get_service(self, business_id: str, service_id: str) -> BookingService:
        with self._lock:
            service = self._services.get(business_id, {}).get(service_id)
        if service is None:
            raise RequestNotFoundError(f"Service {service_id} not found")
        return service

    def list_services(self, business_id: str) -> list[BookingService]:
        with self._lock:
            services = list(self._services.get(business_id, {}).values())
        return sorted(services, key=lambda s: s.name.lower())

    # ------------------------------------------------------------------
    # Booking requests
    # ------------------------------------------------------------------

    def get_request(self, request_id: str) -> BookingRequest:
        with self._lock:
            request = self._requests.get(request_id)
        if request is None:
            raise RequestNotFoundError(f"Booking request {request_id} not found")
        return request

    def list_requests(self, business_id: str) -> list[BookingRequest]:
        with self._lock:
            return [r for r in self._requests.values() if r.business_id == business_id]

    def insert_request(
        self,
        request: BookingRequest,
        audit_entry: Optional[AuditLogEntry] = None,
        revalidate: Optional[Revalidate] = None,
    ) -> BookingRequest:
        """Store a new request, optionally with its audit entry, atomically."""
        with self._lock:
            if request.id in self._requests:
                raise StaleStateError(f"Booking request {request.id} already exists")
            if revalidate is not None:
                revalidate()
            if audit_entry is not None:
                self._append_audit(audit_entry)
            self._requests[request.id] = request
        logger.info(
            "Request %s stored for %s in status %s",
            request.id, request.business_id, request.status.value,
        )
        return request

    def commit_transition(
        self,
        request_id: str,
        expected_status: BookingStatus,
        expected_version: int,
        updated: BookingRequest,
        audit_entry: AuditLogEntry,
        revalidate: Optional[Revalidate] = None,
    ) -> BookingRequest:
        """
        Compare-and-swap a transitioned request into storage.

        Args:
            request_id: Request being transitioned.
            expected_status: Status the transition was computed from.
            expected_version: Version the transition was computed from.
            updated: The next version of the request.
            audit_entry: Entry describing the transition.
            revalidate: Busy-time check run against the data as it stands at
                commit time. Raises ConflictError to abort the commit.

        Raises:
            RequestNotFoundError: The request does not exist.
            StaleStateError: Another transition committed first.
            ConflictError: ``revalidate`` found the interval taken.
            AuditStorageError: The audit entry could not be written; the
                request is left unchanged.
        """
        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                raise RequestNotFoundError(f"Booking request {request_id} not found")
            if current.status != expected_status or current.version != expected_version:
                raise StaleStateError(
                    f"Request {request_id} is {current.status.value} (version {current.version}), "
                    f"expected {expected_status.value} (version {expected_version})"
                )
            if revalidate is not None:
                revalidate()
            self._append_audit(audit_entry)
            self._requests[request_id] = updated
        logger.info(
            "Request %s committed: %s -> %s",
            request_id, expected_status.value, updated.status.value,
        )
        return updated

    def update_request_fields(self, request_id: str, **changes) -> BookingRequest:
        """Status-independent write used for internal notes."""
        with self._lock:
            current = self.get_request(request_id)
            updated = BookingRequest.model_validate({**current.model_dump(), **changes})
            self._requests[request_id] = updated
        return updated

    def _append_audit(self, entry: AuditLogEntry) -> None:
        try:
            self.audit.append(entry)
        except BookingEngineError:
            raise
        except Exception as exc:
            logger.error("Audit append failed for request %s: %s", entry.request_id, exc)
            raise AuditStorageError(
                f"Could not record audit entry for request {entry.request_id}: {exc}"
            ) from exc
