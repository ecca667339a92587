"""
Booking notification events.

The engine emits an event after a committed submission or an accepted
transition that notifies the customer. Delivery (email, SMS) belongs to an
external sink; a failing sink is logged and never affects the booking.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from booking_engine.schemas.booking_schema import BookingAction, BookingRequest, BookingStatus

logger = logging.getLogger(__name__)

REQUEST_SUBMITTED = "request.submitted"

ACTION_EVENTS: dict[BookingAction, str] = {
    BookingAction.APPROVE: "request.approved",
    BookingAction.PROPOSE: "request.proposed",
    BookingAction.DECLINE: "request.declined",
}


@dataclass(frozen=True)
class NotificationEvent:
    """A fire-and-forget message for the delivery sink."""

    kind: str
    request: BookingRequest
    occurred_at: datetime
    from_status: Optional[BookingStatus] = None
    to_status: Optional[BookingStatus] = None


class NotificationSink(Protocol):
    def notify(self, event: NotificationEvent) -> None:
        ...


class LoggingNotificationSink:
    """Default sink: records the event in the application log."""

    def notify(self, event: NotificationEvent) -> None:
        logger.info(
            "Notification %s for request %s (%s)",
            event.kind, event.request.id, event.request.customer.email,
        )


class RecordingNotificationSink:
    """Sink that keeps every event in memory, for demos and inspection."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)


def dispatch(sink: NotificationSink, event: NotificationEvent) -> bool:
    """Deliver ``event``; a sink failure is logged and reported as False."""
    try:
        sink.notify(event)
    except Exception as exc:  # delivery must never block a transition
        logger.warning(
            "Failed to send %s notification (non-blocking) for request %s: %s",
            event.kind, event.request.id, exc,
        )
        return False
    return True
