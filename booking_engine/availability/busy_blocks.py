"""
Busy-block storage.

Manual blocks belong to the business and can be edited or deleted.
Calendar-sourced blocks are written only by the calendar sync component
through ``replace_calendar_blocks``; the engine treats them as read-only.
"""

import logging
import threading
from datetime import datetime
from typing import Iterable, Optional

from booking_engine.availability.intervals import Interval
from booking_engine.errors import InvalidPayloadError, ReadOnlyBusyBlockError, RequestNotFoundError
from booking_engine.schemas.booking_schema import CALENDAR_SOURCE_PREFIX, MANUAL_SOURCE, BusyBlock

logger = logging.getLogger(__name__)


class BusyBlockStore:
    """Thread-safe in-memory busy-block records keyed by business."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blocks: dict[str, dict[str, BusyBlock]] = {}

    def add_manual(
        self, business_id: str, start: datetime, end: datetime, reason: Optional[str] = None
    ) -> BusyBlock:
        block = _build_block(business_id=business_id, start=start, end=end, reason=reason)
        with self._lock:
            self._blocks.setdefault(business_id, {})[block.id] = block
        logger.info("Busy block %s added for %s: %s - %s", block.id, business_id, start, end)
        return block

    def get(self, business_id: str, block_id: str) -> BusyBlock:
        with self._lock:
            block = self._blocks.get(business_id, {}).get(block_id)
        if block is None:
            raise RequestNotFoundError(f"Busy block {block_id} not found")
        return block

    def update(
        self,
        business_id: str,
        block_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> BusyBlock:
        with self._lock:
            existing = self._blocks.get(business_id, {}).get(block_id)
            if existing is None:
                raise RequestNotFoundError(f"Busy block {block_id} not found")
            if existing.is_calendar:
                raise ReadOnlyBusyBlockError(
                    f"Busy block {block_id} is owned by {existing.source} and cannot be edited"
                )
            updated = _build_block(
                id=existing.id,
                business_id=business_id,
                start=start or existing.start,
                end=end or existing.end,
                reason=reason if reason is not None else existing.reason,
            )
            self._blocks[business_id][block_id] = updated
        return updated

    def delete(self, business_id: str, block_id: str) -> None:
        with self._lock:
            existing = self._blocks.get(business_id, {}).get(block_id)
            if existing is None:
                raise RequestNotFoundError(f"Busy block {block_id} not found")
            if existing.is_calendar:
                raise ReadOnlyBusyBlockError(
                    f"Busy block {block_id} is owned by {existing.source} and cannot be deleted"
                )
            del self._blocks[business_id][block_id]
        logger.info("Busy block %s deleted for %s", block_id, business_id)

    def replace_calendar_blocks(
        self, business_id: str, provider: str, intervals: Iterable[Interval]
    ) -> list[BusyBlock]:
        """Replace every block from ``provider`` with freshly synced intervals."""
        source = f"{CALENDAR_SOURCE_PREFIX}{provider}"
        new_blocks = [
            _build_block(business_id=business_id, start=i.start, end=i.end, source=source)
            for i in intervals
        ]
        with self._lock:
            current = self._blocks.setdefault(business_id, {})
            for block_id in [k for k, b in current.items() if b.source == source]:
                del current[block_id]
            for block in new_blocks:
                current[block.id] = block
        logger.debug("Synced %d %s blocks for %s", len(new_blocks), source, business_id)
        return new_blocks

    def list_blocks(
        self,
        business_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        source: Optional[str] = None,
    ) -> list[BusyBlock]:
        """Blocks overlapping ``[start, end)``, ordered by start time."""
        with self._lock:
            blocks = list(self._blocks.get(business_id, {}).values())
        if start is not None:
            blocks = [b for b in blocks if b.end > start]
        if end is not None:
            blocks = [b for b in blocks if b.start < end]
        if source is not None:
            blocks = [b for b in blocks if b.source == source]
        return sorted(blocks, key=lambda b: (b.start, b.end, b.id))

    def manual_intervals(self, business_id: str, window: Interval) -> list[Interval]:
        return [
            b.interval
            for b in self.list_blocks(business_id, window.start, window.end, source=MANUAL_SOURCE)
        ]


def _build_block(**fields) -> BusyBlock:
    try:
        return BusyBlock(**fields)
    except ValueError as exc:
        raise InvalidPayloadError(f"Invalid busy block: {exc}") from exc
