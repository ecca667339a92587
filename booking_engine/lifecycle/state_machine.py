"""
Finite state machine for booking request status.

The transition function is pure: given a request, an action, its payload,
and an availability check, it returns the next version of the request and
the side effects the caller must perform, or raises a typed error. It never
touches storage, the audit log, or notification delivery itself.

Usage:
    machine = BookingStateMachine()
    result = machine.transition(request, BookingAction.DECLINE, now=now)
    assert result.request.status == BookingStatus.DECLINED
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from booking_engine.availability.intervals import Interval
from booking_engine.availability.resolver import CandidateCheck
from booking_engine.config import settings
from booking_engine.errors import (
    ConflictError,
    IllegalTransitionError,
    InvalidPayloadError,
    NoTimeToApproveError,
)
from booking_engine.schemas.booking_schema import BookingAction, BookingRequest, BookingStatus

logger = logging.getLogger(__name__)

IntervalCheck = Callable[[Interval], CandidateCheck]


class SideEffect(str, Enum):
    """Work the caller performs after an accepted transition."""
    RECORD_AUDIT = "record_audit"
    NOTIFY = "notify"


@dataclass(frozen=True)
class Transition:
    """A single valid status transition."""
    from_state: BookingStatus
    action: BookingAction
    to_state: BookingStatus
    side_effects: tuple[SideEffect, ...] = (SideEffect.RECORD_AUDIT,)


@dataclass
class ActionPayload:
    """Optional data accompanying an action."""
    proposed_start: Optional[datetime] = None
    proposed_end: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass
class TransitionResult:
    """Outcome of an accepted transition."""
    request: BookingRequest
    from_status: BookingStatus
    to_status: BookingStatus
    action: BookingAction
    side_effects: tuple[SideEffect, ...] = field(default_factory=tuple)
    asserted_interval: Optional[Interval] = None
    check: Optional[CandidateCheck] = None


_AUDIT_AND_NOTIFY = (SideEffect.RECORD_AUDIT, SideEffect.NOTIFY)


class BookingStateMachine:
    """
    Deterministic transition table for booking requests.

    Every legal edge is listed explicitly. Any other (status, action) pair
    is rejected with IllegalTransitionError and the request is left as is.
    """

    TRANSITIONS: list[Transition] = [
        # --- Confirming a time ---
        Transition(BookingStatus.REQUESTED, BookingAction.APPROVE,
                   BookingStatus.APPROVED, _AUDIT_AND_NOTIFY),
        Transition(BookingStatus.REQUESTED, BookingAction.PROPOSE,
                   BookingStatus.PROPOSED_TIME, _AUDIT_AND_NOTIFY),
        Transition(BookingStatus.PROPOSED_TIME, BookingAction.PROPOSE,
                   BookingStatus.PROPOSED_TIME, _AUDIT_AND_NOTIFY),

        # --- Declining ---
        Transition(BookingStatus.REQUESTED, BookingAction.DECLINE,
                   BookingStatus.DECLINED, _AUDIT_AND_NOTIFY),
        Transition(BookingStatus.PROPOSED_TIME, BookingAction.DECLINE,
                   BookingStatus.DECLINED, _AUDIT_AND_NOTIFY),

        # --- Completion ---
        Transition(BookingStatus.APPROVED, BookingAction.COMPLETE,
                   BookingStatus.COMPLETED),

        # --- Reactivation ---
        Transition(BookingStatus.DECLINED, BookingAction.REACTIVATE,
                   BookingStatus.REQUESTED),
    ]

    _TABLE: dict[tuple[BookingStatus, BookingAction], Transition] = {
        (t.from_state, t.action): t for t in TRANSITIONS
    }

    def __init__(self, approve_default_minutes: int = settings.scheduler.approve_default_minutes) -> None:
        self._approve_default_minutes = approve_default_minutes

    def lookup(self, status: BookingStatus, action: BookingAction) -> Optional[Transition]:
        return self._TABLE.get((status, action))

    def allowed_actions(self, status: BookingStatus) -> list[BookingAction]:
        """Return all actions valid from ``status``."""
        return [t.action for t in self.TRANSITIONS if t.from_state == status]

    def is_terminal(self, status: BookingStatus) -> bool:
        return not self.allowed_actions(status)

    def target_status(self, action: BookingAction) -> BookingStatus:
        """Status every legal ``action`` edge leads to."""
        for t in self.TRANSITIONS:
            if t.action == action:
                return t.to_state
        raise ValueError(f"No transition defined for action {action.value}")

    def transition(
        self,
        request: BookingRequest,
        action: BookingAction,
        payload: Optional[ActionPayload] = None,
        check_interval: Optional[IntervalCheck] = None,
        now: Optional[datetime] = None,
        duration_minutes: Optional[int] = None,
    ) -> TransitionResult:
        """
        Compute the next version of ``request`` for ``action``.

        Args:
            request: Current persisted request.
            action: Operator action.
            payload: Proposed times and audit notes, when the action needs them.
            check_interval: Availability check for actions that assert a time.
            now: Timestamp written to ``updated_at``.
            duration_minutes: Service duration used to size an approved interval.

        Raises:
            IllegalTransitionError: The pair is not in the transition table.
            NoTimeToApproveError: Approve without preferred or payload time.
            InvalidPayloadError: Propose without a valid start/end.
            ConflictError: The asserted interval overlaps busy time.
        """
        transition = self.lookup(request.status, action)
        if transition is None:
            valid = [a.value for a in self.allowed_actions(request.status)]
            raise IllegalTransitionError(
                f"Cannot {action.value} a request in status {request.status.value}. "
                f"Valid actions: {valid}"
            )

        payload = payload or ActionPayload()
        changes: dict = {"status": transition.to_state, "version": request.version + 1}
        if now is not None:
            changes["updated_at"] = now

        asserted: Optional[Interval] = None
        check: Optional[CandidateCheck] = None
        if action == BookingAction.APPROVE:
            asserted = self._approval_interval(request, payload, duration_minutes)
        elif action == BookingAction.PROPOSE:
            asserted = self._proposal_interval(payload)

        if asserted is not None:
            if check_interval is None:
                raise ValueError(f"An availability check is required to {action.value}")
            check = check_interval(asserted)
            if not check.ok:
                raise ConflictError(
                    f"{check.reason or 'Requested time is not available'}: "
                    f"{asserted.start.isoformat()} - {asserted.end.isoformat()}"
                )
            changes["proposed_start"] = asserted.start
            changes["proposed_end"] = asserted.end

        updated = BookingRequest.model_validate({**request.model_dump(), **changes})
        logger.debug(
            "Request %s transition: %s -> %s (action: %s)",
            request.id, request.status.value, updated.status.value, action.value,
        )
        return TransitionResult(
            request=updated,
            from_status=request.status,
            to_status=transition.to_state,
            action=action,
            side_effects=transition.side_effects,
            asserted_interval=asserted,
            check=check,
        )

    def _approval_interval(
        self, request: BookingRequest, payload: ActionPayload, duration_minutes: Optional[int]
    ) -> Interval:
        start = payload.proposed_start or request.preferred_start
        if start is None:
            raise NoTimeToApproveError(
                f"Request {request.id} has no preferred time and no time was supplied to approve"
            )
        end = payload.proposed_end if payload.proposed_start else None
        if end is None:
            end = start + timedelta(minutes=duration_minutes or self._approve_default_minutes)
        return _checked_interval(start, end)

    @staticmethod
    def _proposal_interval(payload: ActionPayload) -> Interval:
        if payload.proposed_start is None or payload.proposed_end is None:
            raise InvalidPayloadError("Propose requires both proposed_start and proposed_end")
        return _checked_interval(payload.proposed_start, payload.proposed_end)


def _checked_interval(start: datetime, end: datetime) -> Interval:
    if start.tzinfo is None or end.tzinfo is None:
        raise InvalidPayloadError("Proposed times must be timezone-aware")
    if end <= start:
        raise InvalidPayloadError("Proposed end time must be after proposed start time")
    return Interval(start, end)
