"""
Half-open time interval primitives.

An Interval covers ``[start, end)``. Adjacent intervals touch but do not
overlap, so a 12:00-13:00 busy block leaves 09:00-12:00 and 13:00-17:00
fully bookable.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable


@dataclass(frozen=True, order=True)
class Interval:
    """A half-open ``[start, end)`` span of time."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if not self.start < self.end:
            raise ValueError(f"Interval start must be before end: {self.start} >= {self.end}")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end

    def expand(self, before: timedelta, after: timedelta) -> "Interval":
        return Interval(self.start - before, self.end + after)

    def subtract(self, other: "Interval") -> list["Interval"]:
        """Remove ``other`` from this interval, yielding zero, one or two pieces."""
        if not self.overlaps(other):
            return [self]
        pieces = []
        if self.start < other.start:
            pieces.append(Interval(self.start, other.start))
        if other.end < self.end:
            pieces.append(Interval(other.end, self.end))
        return pieces


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort and sweep overlapping or touching intervals into a disjoint list."""
    merged: list[Interval] = []
    for current in sorted(intervals):
        if merged and current.start <= merged[-1].end:
            last = merged[-1]
            if current.end > last.end:
                merged[-1] = Interval(last.start, current.end)
        else:
            merged.append(current)
    return merged


def subtract_all(free: Iterable[Interval], busy: Iterable[Interval]) -> list[Interval]:
    """Subtract every busy interval from every free interval."""
    remaining = list(free)
    for block in merge_intervals(busy):
        next_remaining: list[Interval] = []
        for interval in remaining:
            next_remaining.extend(interval.subtract(block))
        remaining = next_remaining
    return sorted(remaining)


def contained_in_any(candidate: Interval, intervals: Iterable[Interval]) -> bool:
    return any(interval.contains(candidate) for interval in intervals)
