"""
Contract for the external calendar busy-time collaborator.

Calendar synchronization (OAuth, token refresh, provider APIs) lives outside
this engine. The engine only consumes the result: busy intervals for a
business and date range, plus a degraded flag when the provider data could
not be refreshed.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from booking_engine.availability.intervals import Interval

if TYPE_CHECKING:
    from booking_engine.availability.busy_blocks import BusyBlockStore

logger = logging.getLogger(__name__)


class CalendarFeedError(Exception):
    """Raised by a feed when provider busy time cannot be retrieved."""


@dataclass
class ExternalBusyResult:
    """Busy intervals returned by the calendar collaborator."""

    intervals: list[Interval] = field(default_factory=list)
    degraded: bool = False


class CalendarFeed(Protocol):
    def get_external_busy_intervals(
        self, business_id: str, window: Interval, timeout: float
    ) -> ExternalBusyResult:
        """Return provider busy time overlapping ``window`` within ``timeout`` seconds."""
        ...


class StoredCalendarFeed:
    """Serves calendar-sourced blocks the sync component persisted in the busy-block store."""

    def __init__(self, blocks: "BusyBlockStore") -> None:
        self._blocks = blocks

    def get_external_busy_intervals(
        self, business_id: str, window: Interval, timeout: float
    ) -> ExternalBusyResult:
        intervals = [
            block.interval
            for block in self._blocks.list_blocks(business_id, window.start, window.end)
            if block.is_calendar
        ]
        return ExternalBusyResult(intervals=intervals)


class UnavailableCalendarFeed:
    """Feed stand-in for a business whose calendar connection is down."""

    def get_external_busy_intervals(
        self, business_id: str, window: Interval, timeout: float
    ) -> ExternalBusyResult:
        raise CalendarFeedError(f"Calendar provider unreachable for business {business_id}")
