"""
Append-only audit log of booking request status transitions.

There is no update or delete path: corrections are recorded as new
entries. Reads are ordered by timestamp ascending and return an empty
trail, never an error, for a request without history.
"""

import logging
import threading
from typing import Iterator, Protocol

from booking_engine.schemas.audit_schema import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditTrail:
    """Restartable, ordered view over one request's audit entries.

    Each iteration starts from the first entry again.
    """

    def __init__(self, entries: tuple[AuditLogEntry, ...]) -> None:
        self._entries = entries

    def __iter__(self) -> Iterator[AuditLogEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)


class AuditRecorder(Protocol):
    def append(self, entry: AuditLogEntry) -> None:
        ...

    def list_for(self, request_id: str) -> AuditTrail:
        ...


class InMemoryAuditRecorder:
    """Process-local audit log keyed by request id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, list[AuditLogEntry]] = {}

    def append(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._entries.setdefault(entry.request_id, []).append(entry)
        logger.debug(
            "Audit %s: %s %s -> %s (%s)",
            entry.request_id, entry.action.value, entry.from_status.value,
            entry.to_status.value, entry.actor_kind.value,
        )

    def list_for(self, request_id: str) -> AuditTrail:
        with self._lock:
            entries = list(self._entries.get(request_id, ()))
        # stable sort keeps append order for equal timestamps
        entries.sort(key=lambda e: e.timestamp)
        return AuditTrail(tuple(entries))
