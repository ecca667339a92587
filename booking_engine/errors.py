"""Typed errors raised by the booking engine.

Every error carries a stable ``code`` so transport layers and the bulk
orchestrator can report failures without inspecting message text.
"""

from enum import Enum


class ErrorCode(str, Enum):
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    NO_TIME_TO_APPROVE = "NO_TIME_TO_APPROVE"
    CONFLICT = "CONFLICT"
    STALE_STATE = "STALE_STATE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    READ_ONLY_BLOCK = "READ_ONLY_BLOCK"
    BUSY = "BUSY"
    INSTANT_BOOKING_DISABLED = "INSTANT_BOOKING_DISABLED"
    AUDIT_STORAGE = "AUDIT_STORAGE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class BookingEngineError(Exception):
    """Base exception for all booking engine errors."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class IllegalTransitionError(BookingEngineError):
    """Raised when an action is not valid from the request's current status."""

    code = ErrorCode.ILLEGAL_TRANSITION


class NoTimeToApproveError(BookingEngineError):
    """Raised when approve is attempted without any usable time."""

    code = ErrorCode.NO_TIME_TO_APPROVE


class ConflictError(BookingEngineError):
    """Raised when a candidate interval overlaps busy time."""

    code = ErrorCode.CONFLICT


class StaleStateError(BookingEngineError):
    """Raised when the stored status no longer matches the caller's observed status."""

    code = ErrorCode.STALE_STATE


class InvalidPayloadError(BookingEngineError):
    """Raised for malformed action payloads or submission data."""

    code = ErrorCode.VALIDATION_ERROR


class RequestNotFoundError(BookingEngineError):
    """Raised when a request, service, or busy block does not exist for the business."""

    code = ErrorCode.NOT_FOUND


class ReadOnlyBusyBlockError(BookingEngineError):
    """Raised on update or delete of a calendar-sourced busy block."""

    code = ErrorCode.READ_ONLY_BLOCK


class BulkOperationInProgressError(BookingEngineError):
    """Raised when a bulk action is already running for the same business."""

    code = ErrorCode.BUSY


class InstantBookingDisabledError(BookingEngineError):
    """Raised when a business only accepts booking requests."""

    code = ErrorCode.INSTANT_BOOKING_DISABLED


class AuditStorageError(BookingEngineError):
    """Raised when the audit log cannot persist an entry."""

    code = ErrorCode.AUDIT_STORAGE
