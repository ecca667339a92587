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
    ExceptionKind,
)
from booking_engine.schemas.customer_schema import CustomerInfo

__all__ = [
    "ActorKind",
    "AuditLogEntry",
    "AvailabilityException",
    "AvailabilityWindow",
    "BookingAction",
    "BookingMode",
    "BookingRequest",
    "BookingService",
    "BookingSettings",
    "BookingStatus",
    "BusyBlock",
    "CustomerInfo",
    "ExceptionKind",
]
