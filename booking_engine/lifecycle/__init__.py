from booking_engine.lifecycle.audit import AuditTrail, InMemoryAuditRecorder
from booking_engine.lifecycle.bulk import BulkOrchestrator, BulkOutcome
from booking_engine.lifecycle.state_machine import (
    ActionPayload,
    BookingStateMachine,
    TransitionResult,
)

__all__ = [
    "ActionPayload",
    "AuditTrail",
    "BookingStateMachine",
    "BulkOrchestrator",
    "BulkOutcome",
    "InMemoryAuditRecorder",
    "TransitionResult",
]
