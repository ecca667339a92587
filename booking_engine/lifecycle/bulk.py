"""
Bulk state-transition orchestration.

Applies one action to many requests of a business. Each id is processed
independently: a rejection is recorded as an outcome row and the batch
moves on. Only one batch per business may run at a time; a second call is
refused immediately rather than queued.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from booking_engine.config import settings
from booking_engine.errors import (
    BookingEngineError,
    BulkOperationInProgressError,
    ErrorCode,
    StaleStateError,
)
from booking_engine.lifecycle.state_machine import ActionPayload, BookingStateMachine
from booking_engine.schemas.booking_schema import BookingAction, BookingRequest, BookingStatus

logger = logging.getLogger(__name__)

FetchRequest = Callable[[str, str], BookingRequest]
ApplyAction = Callable[[str, BookingAction, Optional[ActionPayload], BookingStatus], BookingRequest]


@dataclass(frozen=True)
class SkippedItem:
    id: str
    reason: str


@dataclass(frozen=True)
class FailedItem:
    id: str
    code: ErrorCode
    message: str


@dataclass
class BulkOutcome:
    """Per-id results of a bulk action."""

    action: BookingAction
    succeeded: list[str] = field(default_factory=list)
    skipped: list[SkippedItem] = field(default_factory=list)
    failed: list[FailedItem] = field(default_factory=list)
    not_processed: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def processed_count(self) -> int:
        return len(self.succeeded) + len(self.skipped) + len(self.failed)

    def summary(self, preview: int = settings.bulk.failure_preview) -> str:
        """One-line summary with detail for the first ``preview`` failures."""
        parts = [
            f"{self.action.value}: {len(self.succeeded)} succeeded",
            f"{len(self.skipped)} skipped",
            f"{len(self.failed)} failed",
        ]
        text = ", ".join(parts)
        if self.cancelled:
            text += f" (cancelled, {len(self.not_processed)} not processed)"
        if self.failed:
            details = "; ".join(
                f"{item.id} ({item.code.value}: {item.message})" for item in self.failed[:preview]
            )
            remaining = len(self.failed) - preview
            if remaining > 0:
                details += f"; and {remaining} more"
            text += f". Failures: {details}"
        return text


class BulkOrchestrator:
    """
    Runs one action across a list of request ids.

    The orchestrator does not touch storage itself: ``fetch`` reads a
    business's current request and ``apply`` performs one compare-and-swap
    transition, exactly as a single-request caller would.
    """

    def __init__(
        self,
        fetch: FetchRequest,
        apply: ApplyAction,
        machine: Optional[BookingStateMachine] = None,
    ) -> None:
        self._fetch = fetch
        self._apply = apply
        self._machine = machine or BookingStateMachine()
        self._guard = threading.Lock()
        self._running: set[str] = set()

    def run(
        self,
        business_id: str,
        request_ids: Iterable[str],
        action: BookingAction,
        payload: Optional[ActionPayload] = None,
        visible_ids: Optional[Iterable[str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BulkOutcome:
        """
        Apply ``action`` to every id and report per-id outcomes.

        Args:
            business_id: Business owning the requests; keys the re-entrancy guard.
            request_ids: Ids selected by the caller. Duplicates are ignored.
            action: Action applied to each id.
            payload: Shared action payload.
            visible_ids: Ids visible to the caller at execution time. Selected
                ids outside this set are dropped before processing.
            cancel_event: When set, no further ids are started. Committed
                transitions are kept.

        Raises:
            BulkOperationInProgressError: A batch is already running for the business.
        """
        self._claim(business_id)
        try:
            working = self._working_set(request_ids, visible_ids)
            outcome = BulkOutcome(action=action)
            logger.info(
                "Bulk %s started for %s: %d request(s)", action.value, business_id, len(working)
            )
            for index, request_id in enumerate(working):
                if cancel_event is not None and cancel_event.is_set():
                    outcome.cancelled = True
                    outcome.not_processed = working[index:]
                    logger.warning(
                        "Bulk %s for %s cancelled after %d of %d request(s)",
                        action.value, business_id, index, len(working),
                    )
                    break
                self._process_one(business_id, request_id, action, payload, outcome)
            logger.info("Bulk %s finished for %s: %s", action.value, business_id, outcome.summary())
            return outcome
        finally:
            with self._guard:
                self._running.discard(business_id)

    def is_running(self, business_id: str) -> bool:
        with self._guard:
            return business_id in self._running

    def _claim(self, business_id: str) -> None:
        with self._guard:
            if business_id in self._running:
                raise BulkOperationInProgressError(
                    f"A bulk action is already running for business {business_id}"
                )
            self._running.add(business_id)

    @staticmethod
    def _working_set(
        request_ids: Iterable[str], visible_ids: Optional[Iterable[str]]
    ) -> list[str]:
        visible = set(visible_ids) if visible_ids is not None else None
        working: list[str] = []
        seen: set[str] = set()
        for request_id in request_ids:
            if request_id in seen:
                continue
            seen.add(request_id)
            if visible is not None and request_id not in visible:
                logger.debug("Dropping %s from bulk selection: no longer visible", request_id)
                continue
            working.append(request_id)
        return working

    def _process_one(
        self,
        business_id: str,
        request_id: str,
        action: BookingAction,
        payload: Optional[ActionPayload],
        outcome: BulkOutcome,
    ) -> None:
        # STALE_STATE gets one refetch and retry
        for attempt in range(2):
            try:
                current = self._fetch(business_id, request_id)
                skip_reason = self._skip_reason(current, action)
                if skip_reason is not None:
                    outcome.skipped.append(SkippedItem(request_id, skip_reason))
                    return
                self._apply(request_id, action, payload, current.status)
            except StaleStateError as exc:
                if attempt == 0:
                    logger.debug("Stale state for %s, retrying once", request_id)
                    continue
                outcome.failed.append(FailedItem(request_id, exc.code, exc.message))
                return
            except BookingEngineError as exc:
                outcome.failed.append(FailedItem(request_id, exc.code, exc.message))
                return
            except Exception as exc:
                logger.exception("Bulk %s failed unexpectedly for %s", action.value, request_id)
                outcome.failed.append(FailedItem(request_id, ErrorCode.INTERNAL_ERROR, str(exc)))
                return
            outcome.succeeded.append(request_id)
            return

    def _skip_reason(self, request: BookingRequest, action: BookingAction) -> Optional[str]:
        if self._machine.lookup(request.status, action) is not None:
            return None
        if request.status == self._machine.target_status(action):
            return f"Already {request.status.value}"
        return None
