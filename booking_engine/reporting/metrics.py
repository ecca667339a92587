"""
Booking metrics derived from requests and their audit trails.

Everything here is read-only. An empty request set produces a valid
zero summary with absent medians.
"""

import logging
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from booking_engine.availability.resolver import day_of_week
from booking_engine.lifecycle.audit import AuditTrail
from booking_engine.schemas.audit_schema import ActorKind, AuditLogEntry
from booking_engine.schemas.booking_schema import (
    BookingAction,
    BookingRequest,
    BookingService,
    BookingStatus,
)

logger = logging.getLogger(__name__)

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

CONVERTED_STATUSES = (BookingStatus.APPROVED, BookingStatus.COMPLETED)

AuditLookup = Callable[[str], AuditTrail]


@dataclass(frozen=True)
class ServicePopularity:
    service_id: str
    service_name: str
    count: int


@dataclass
class MetricsSummary:
    """Aggregated booking metrics for one business and date range."""

    total_requests: int = 0
    by_status: dict[BookingStatus, int] = field(
        default_factory=lambda: {status: 0 for status in BookingStatus}
    )
    conversion_rate: float = 0.0
    median_time_to_first_response: Optional[timedelta] = None
    median_time_to_approval: Optional[timedelta] = None
    service_popularity: list[ServicePopularity] = field(default_factory=list)
    peak_hours: list[int] = field(default_factory=lambda: [0] * 24)
    peak_days: list[int] = field(default_factory=lambda: [0] * 7)
    cancellation_count: int = 0
    reactivate_count: int = 0


class MetricsAggregator:
    """Computes MetricsSummary values from requests and audit history."""

    def compute(
        self,
        requests: Iterable[BookingRequest],
        audit_lookup: AuditLookup,
        tz: ZoneInfo,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        services: Optional[Iterable[BookingService]] = None,
    ) -> MetricsSummary:
        """
        Summarize requests created in ``[start, end)``.

        Args:
            requests: Candidate requests of one business.
            audit_lookup: Returns the audit trail for a request id.
            tz: Business timezone used for the hour and day histograms.
            start: Inclusive lower bound on ``created_at``.
            end: Exclusive upper bound on ``created_at``.
            services: Catalog used to name services in the popularity list.
        """
        selected = [
            r for r in requests
            if (start is None or r.created_at >= start) and (end is None or r.created_at < end)
        ]
        summary = MetricsSummary()
        if not selected:
            return summary

        service_names = {s.id: s.name for s in services or ()}
        response_times: list[timedelta] = []
        approval_times: list[timedelta] = []
        service_counts: dict[str, int] = {}

        for request in selected:
            summary.by_status[request.status] += 1
            entries = list(audit_lookup(request.id))

            first_response = _first_response(entries)
            if first_response is not None:
                response_times.append(first_response.timestamp - request.created_at)
            approval = _approval(entries)
            if approval is not None:
                approval_times.append(approval.timestamp - request.created_at)

            summary.reactivate_count += sum(
                1 for e in entries if e.action == BookingAction.REACTIVATE
            )
            if request.service_id:
                service_counts[request.service_id] = service_counts.get(request.service_id, 0) + 1

            local = request.created_at.astimezone(tz)
            summary.peak_hours[local.hour] += 1
            summary.peak_days[day_of_week(local.date())] += 1

        summary.total_requests = len(selected)
        converted = sum(summary.by_status[s] for s in CONVERTED_STATUSES)
        summary.conversion_rate = converted / summary.total_requests
        summary.cancellation_count = summary.by_status[BookingStatus.CANCELED]
        summary.median_time_to_first_response = _median(response_times)
        summary.median_time_to_approval = _median(approval_times)
        summary.service_popularity = sorted(
            (
                ServicePopularity(sid, service_names.get(sid, "Unknown Service"), count)
                for sid, count in service_counts.items()
            ),
            key=lambda p: (-p.count, p.service_name, p.service_id),
        )
        logger.debug("Computed metrics over %d request(s)", summary.total_requests)
        return summary

    def format_report(self, summary: MetricsSummary, title: str = "BOOKING METRICS REPORT") -> str:
        """Format a summary into a human-readable report."""
        lines = [
            "=" * 60,
            title,
            "=" * 60,
            "",
            "REQUESTS",
            f"  Total:                  {summary.total_requests}",
        ]
        lines.extend(
            f"  {status.value + ':':<24}{count}" for status, count in summary.by_status.items()
        )
        lines.extend([
            "",
            "RESPONSIVENESS",
            f"  Conversion rate:        {summary.conversion_rate:.1%}",
            f"  Median first response:  {_format_duration(summary.median_time_to_first_response)}",
            f"  Median to approval:     {_format_duration(summary.median_time_to_approval)}",
            f"  Cancellations:          {summary.cancellation_count}",
            f"  Reactivations:          {summary.reactivate_count}",
            "",
            "SERVICES",
        ])
        if summary.service_popularity:
            lines.extend(
                f"  {p.service_name:<24}{p.count}" for p in summary.service_popularity
            )
        else:
            lines.append("  (none)")

        lines.extend(["", "PEAKS"])
        if summary.total_requests:
            busiest_hour = max(range(24), key=lambda h: summary.peak_hours[h])
            busiest_day = max(range(7), key=lambda d: summary.peak_days[d])
            lines.append(f"  Busiest hour:           {busiest_hour:02d}:00")
            lines.append(f"  Busiest day:            {DAY_NAMES[busiest_day]}")
        else:
            lines.append("  (no requests)")
        lines.append("=" * 60)
        return "\n".join(lines)


def _first_response(entries: list[AuditLogEntry]) -> Optional[AuditLogEntry]:
    for entry in entries:
        if (
            entry.actor_kind == ActorKind.STAFF
            and entry.from_status == BookingStatus.REQUESTED
            and entry.action != BookingAction.REACTIVATE
        ):
            return entry
    return None


def _approval(entries: list[AuditLogEntry]) -> Optional[AuditLogEntry]:
    for entry in entries:
        if entry.actor_kind == ActorKind.STAFF and entry.to_status == BookingStatus.APPROVED:
            return entry
    return None


def _median(values: list[timedelta]) -> Optional[timedelta]:
    if not values:
        return None
    return timedelta(seconds=statistics.median(v.total_seconds() for v in values))


def _format_duration(value: Optional[timedelta]) -> str:
    if value is None:
        return "n/a"
    minutes = round(value.total_seconds() / 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m" if hours else f"{minutes}m"
