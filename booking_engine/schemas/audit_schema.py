"""Audit trail schema for booking request status changes."""

from enum import Enum
from typing import Optional

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from booking_engine.schemas.booking_schema import BookingAction, BookingStatus, new_id


class ActorKind(str, Enum):
    STAFF = "staff"
    SYSTEM = "system"


class AuditLogEntry(BaseModel):
    """One accepted status transition. Entries are never mutated or deleted."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    request_id: str
    business_id: str
    actor_kind: ActorKind = ActorKind.STAFF
    from_status: BookingStatus
    to_status: BookingStatus
    action: BookingAction
    timestamp: AwareDatetime
    notes: Optional[str] = None
