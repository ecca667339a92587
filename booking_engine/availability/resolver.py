"""
Availability resolution.

Reduces recurring weekly windows, dated exceptions, busy blocks (manual and
calendar-derived) and committed booking requests into the ordered set of
bookable intervals for a date range.

Two entry points apply different policies:

- ``list_available_slots`` is for browsing. It also drops time inside the
  minimum-notice period, dates beyond the horizon, and fragments shorter
  than the service duration (or the slot granularity).
- ``validate_candidate_interval`` checks a specific operator-chosen time.
  Notice, horizon and length rules are skipped there; busy time never is.

When the calendar collaborator fails or does not answer within the configured
timeout the result is computed from manual data only and flagged ``degraded``.
The feed is called on a worker thread so a stalled provider cannot hold up
the caller past that timeout.

Base hours are converted to UTC as soon as they are built, so durations and
slot starts stay correct on days with a daylight-saving change.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FeedTimeoutError
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from booking_engine.availability.busy_blocks import BusyBlockStore
from booking_engine.availability.calendar_feed import CalendarFeed, ExternalBusyResult
from booking_engine.availability.intervals import (
    Interval,
    contained_in_any,
    merge_intervals,
    subtract_all,
)
from booking_engine.config import SchedulerConfig, settings
from booking_engine.schemas.booking_schema import (
    AvailabilityException,
    AvailabilityWindow,
    BookingRequest,
    BookingSettings,
    BookingStatus,
)
from booking_engine.utils import ceil_to_granularity

logger = logging.getLogger(__name__)

COMMITTED_STATUSES = (BookingStatus.APPROVED, BookingStatus.PROPOSED_TIME)
FEED_WORKERS = 4


@dataclass
class AvailabilitySnapshot:
    """Per-business inputs the resolver reads, captured at one point in time."""

    settings: BookingSettings
    windows: list[AvailabilityWindow] = field(default_factory=list)
    exceptions: list[AvailabilityException] = field(default_factory=list)
    requests: list[BookingRequest] = field(default_factory=list)


@dataclass
class AvailabilityResult:
    """Bookable intervals plus the degraded-calendar warning flag."""

    intervals: list[Interval] = field(default_factory=list)
    degraded: bool = False
    tz_name: str = "UTC"

    def slot_starts(self, duration_minutes: int, granularity_minutes: int) -> list[datetime]:
        """Start times on the business-local granularity grid where ``duration_minutes`` fits."""
        tz = ZoneInfo(self.tz_name)
        duration = timedelta(minutes=duration_minutes)
        step = timedelta(minutes=granularity_minutes)
        starts = []
        for interval in self.intervals:
            local_start = interval.start.astimezone(tz)
            cursor = ceil_to_granularity(local_start, granularity_minutes).astimezone(timezone.utc)
            while cursor + duration <= interval.end:
                starts.append(cursor)
                cursor += step
        return starts


@dataclass
class CandidateCheck:
    """Answer for a single candidate interval."""

    ok: bool
    reason: Optional[str] = None
    degraded: bool = False


def effective_exception(
    exceptions: Iterable[AvailabilityException], day: date
) -> Optional[AvailabilityException]:
    """Pick the single exception governing ``day``.

    Duplicates are resolved by latest ``created_at``, then by greatest id.
    """
    candidates = [e for e in exceptions if e.date == day]
    if not candidates:
        return None
    return max(candidates, key=lambda e: (e.created_at, e.id))


def day_of_week(day: date) -> int:
    """Sunday-based day index (0 = Sunday ... 6 = Saturday)."""
    return (day.weekday() + 1) % 7


def _at(day: date, clock_time: time, tz: ZoneInfo) -> datetime:
    """Business wall-clock time on ``day`` as a UTC instant."""
    return datetime.combine(day, clock_time, tzinfo=tz).astimezone(timezone.utc)


def base_hours(
    day: date,
    tz: ZoneInfo,
    windows: Iterable[AvailabilityWindow],
    exceptions: Iterable[AvailabilityException],
) -> list[Interval]:
    """Open hours for ``day`` before any busy time is removed."""
    exception = effective_exception(exceptions, day)
    if exception is not None:
        if exception.has_custom_hours:
            return [Interval(_at(day, exception.start_time, tz), _at(day, exception.end_time, tz))]
        # closed, or custom-hours without both times
        return []

    weekday = day_of_week(day)
    return merge_intervals(
        Interval(_at(day, w.start_time, tz), _at(day, w.end_time, tz))
        for w in windows
        if w.enabled and w.day_of_week == weekday
    )


class AvailabilityResolver:
    """Computes bookable time for one business from an AvailabilitySnapshot."""

    def __init__(
        self,
        blocks: BusyBlockStore,
        calendar_feed: CalendarFeed,
        config: SchedulerConfig = settings.scheduler,
        calendar_timeout_sec: float = settings.calendar.feed_timeout_sec,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._blocks = blocks
        self._feed = calendar_feed
        self._config = config
        self._calendar_timeout = calendar_timeout_sec
        self._clock = clock or _utc_now
        self._feed_executor = ThreadPoolExecutor(
            max_workers=FEED_WORKERS, thread_name_prefix="calendar-feed"
        )

    def list_available_slots(
        self,
        snapshot: AvailabilitySnapshot,
        start_date: date,
        end_date: date,
        duration_minutes: Optional[int] = None,
        calendar: Optional[ExternalBusyResult] = None,
    ) -> AvailabilityResult:
        """Browsable intervals for every date in ``[start_date, end_date]``.

        ``calendar`` supplies busy time fetched earlier with ``calendar_busy``;
        when omitted the feed is queried.
        """
        rules = snapshot.settings
        if end_date < start_date:
            return AvailabilityResult(tz_name=rules.timezone)

        tz = ZoneInfo(rules.timezone)
        now = self._clock()
        horizon = now.astimezone(tz).date() + timedelta(days=rules.max_days_out)
        notice_cutoff = ceil_to_granularity(
            (now + timedelta(hours=rules.min_notice_hours)).astimezone(tz),
            self._config.slot_granularity_minutes,
        )
        min_length = timedelta(minutes=duration_minutes or self._config.slot_granularity_minutes)

        days = list(_date_range(start_date, min(end_date, horizon)))
        if not days:
            return AvailabilityResult(tz_name=rules.timezone)

        free, degraded = self._free_intervals(
            snapshot, days, tz, exclude_request_id=None, calendar=calendar
        )

        intervals = []
        for interval in free:
            if interval.end <= notice_cutoff:
                continue
            if interval.start < notice_cutoff:
                interval = Interval(notice_cutoff.astimezone(timezone.utc), interval.end)
            if interval.duration >= min_length:
                intervals.append(interval)

        logger.debug(
            "Resolved %d interval(s) for %s from %s to %s (degraded=%s)",
            len(intervals), rules.business_id, start_date, end_date, degraded,
        )
        return AvailabilityResult(intervals=intervals, degraded=degraded, tz_name=rules.timezone)

    def validate_candidate_interval(
        self,
        snapshot: AvailabilitySnapshot,
        candidate: Interval,
        exclude_request_id: Optional[str] = None,
        calendar: Optional[ExternalBusyResult] = None,
    ) -> CandidateCheck:
        """Check ``candidate`` lies fully inside open, non-busy time.

        ``exclude_request_id`` keeps a request's own committed interval out of
        the busy set when it is being re-proposed or approved. ``calendar``
        supplies busy time fetched earlier with ``calendar_busy``, so the check
        can run under a storage lock without calling the feed.
        """
        tz = ZoneInfo(snapshot.settings.timezone)
        days = _candidate_days(candidate, tz)

        free, degraded = self._free_intervals(
            snapshot, days, tz, exclude_request_id, calendar=calendar
        )
        if contained_in_any(candidate, merge_intervals(free)):
            return CandidateCheck(ok=True, degraded=degraded)

        open_hours = merge_intervals(
            interval
            for day in days
            for interval in base_hours(day, tz, snapshot.windows, snapshot.exceptions)
        )
        if contained_in_any(candidate, open_hours):
            reason = "Requested time overlaps busy time"
        else:
            reason = "Requested time is outside available hours"
        return CandidateCheck(ok=False, reason=reason, degraded=degraded)

    def calendar_busy(
        self, snapshot: AvailabilitySnapshot, start_date: date, end_date: date
    ) -> ExternalBusyResult:
        """Query the calendar feed for the open hours of ``[start_date, end_date]``."""
        tz = ZoneInfo(snapshot.settings.timezone)
        span = self._open_span(snapshot, list(_date_range(start_date, end_date)), tz)
        if span is None:
            return ExternalBusyResult()
        intervals, degraded = self._calendar_intervals(snapshot.settings.business_id, span)
        return ExternalBusyResult(intervals=intervals, degraded=degraded)

    def calendar_busy_for(
        self, snapshot: AvailabilitySnapshot, candidate: Interval
    ) -> ExternalBusyResult:
        """Calendar busy time covering the business days ``candidate`` touches."""
        days = _candidate_days(candidate, ZoneInfo(snapshot.settings.timezone))
        return self.calendar_busy(snapshot, days[0], days[-1])

    def _open_span(
        self, snapshot: AvailabilitySnapshot, days: list[date], tz: ZoneInfo
    ) -> Optional[Interval]:
        open_hours = [
            interval
            for day in days
            for interval in base_hours(day, tz, snapshot.windows, snapshot.exceptions)
        ]
        if not open_hours:
            return None
        return Interval(min(i.start for i in open_hours), max(i.end for i in open_hours))

    def _free_intervals(
        self,
        snapshot: AvailabilitySnapshot,
        days: list[date],
        tz: ZoneInfo,
        exclude_request_id: Optional[str],
        calendar: Optional[ExternalBusyResult] = None,
    ) -> tuple[list[Interval], bool]:
        open_hours = [
            interval
            for day in days
            for interval in base_hours(day, tz, snapshot.windows, snapshot.exceptions)
        ]
        if not open_hours:
            return [], False

        business_id = snapshot.settings.business_id
        span = Interval(min(i.start for i in open_hours), max(i.end for i in open_hours))
        buffer = timedelta(minutes=snapshot.settings.buffer_minutes)

        busy = self._blocks.manual_intervals(business_id, span)
        if calendar is None:
            calendar_busy, degraded = self._calendar_intervals(business_id, span)
        else:
            calendar_busy, degraded = list(calendar.intervals), calendar.degraded
        busy.extend(calendar_busy)
        busy.extend(
            request.proposed_interval.expand(buffer, buffer)
            for request in snapshot.requests
            if request.status in COMMITTED_STATUSES
            and request.proposed_interval is not None
            and request.id != exclude_request_id
        )
        return subtract_all(open_hours, busy), degraded

    def _calendar_intervals(self, business_id: str, span: Interval) -> tuple[list[Interval], bool]:
        future = self._feed_executor.submit(
            self._feed.get_external_busy_intervals,
            business_id,
            span,
            timeout=self._calendar_timeout,
        )
        try:
            result = future.result(timeout=self._calendar_timeout)
        except FeedTimeoutError:
            future.cancel()
            logger.warning(
                "Calendar feed for %s did not answer within %.1fs, using manual blocks only",
                business_id, self._calendar_timeout,
            )
            return [], True
        except Exception as exc:  # any provider failure falls back to manual blocks
            logger.warning(
                "Calendar busy time unavailable for %s, using manual blocks only: %s",
                business_id, exc,
            )
            return [], True
        if result.degraded:
            logger.warning("Calendar feed for %s reported degraded data", business_id)
        return list(result.intervals), result.degraded


def _candidate_days(candidate: Interval, tz: ZoneInfo) -> list[date]:
    first_day = candidate.start.astimezone(tz).date()
    last_day = (candidate.end - timedelta(microseconds=1)).astimezone(tz).date()
    return list(_date_range(first_day, last_day))


def _date_range(start: date, end: date) -> Iterable[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
