"""
Initiative Schema

An actionable suggestion for a leader (message, call or visit), usually
generated from a scored PersonChange.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..errors import ValidationError
from .records import generate_id, utc_now


class InitiativeType(str, Enum):
    """Kind of outreach suggested to the leader"""
    MESSAGE = "message"
    CALL = "call"
    VISIT = "visit"


class InitiativeStatus(str, Enum):
    """Lifecycle: pending -> in_progress -> completed | cancelled"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_STATUSES = frozenset({InitiativeStatus.PENDING, InitiativeStatus.IN_PROGRESS})

_ALLOWED_TRANSITIONS = {
    InitiativeStatus.PENDING: {
        InitiativeStatus.IN_PROGRESS,
        InitiativeStatus.COMPLETED,
        InitiativeStatus.CANCELLED,
    },
    InitiativeStatus.IN_PROGRESS: {
        InitiativeStatus.COMPLETED,
        InitiativeStatus.CANCELLED,
    },
    InitiativeStatus.COMPLETED: set(),
    InitiativeStatus.CANCELLED: set(),
}


class Initiative(BaseModel):
    """A suggested leader action"""
    id: str = Field(default_factory=lambda: generate_id("ini"))
    organization_id: str
    leader_id: str
    person_id: str
    change_id: Optional[str] = None
    type: InitiativeType
    title: str
    description: Optional[str] = None
    suggested_message: Optional[str] = None
    edited_message: Optional[str] = None
    status: InitiativeStatus = InitiativeStatus.PENDING
    priority: int = Field(ge=1, le=10)
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def can_transition_to(self, status: InitiativeStatus) -> bool:
        return InitiativeStatus(status) in _ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, status: InitiativeStatus, now: Optional[datetime] = None) -> "Initiative":
        """Return a copy in the new status. Raises ValidationError on an illegal move."""
        status = InitiativeStatus(status)
        if not self.can_transition_to(status):
            raise ValidationError(
                f"Initiative {self.id}: cannot move from {self.status.value} to {status.value}"
            )
        now = now or utc_now()
        update = {"status": status, "updated_at": now}
        if status == InitiativeStatus.COMPLETED:
            update["completed_at"] = now
        return self.model_copy(update=update)
