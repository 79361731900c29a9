"""
Initiative Policy

Deterministic choice of outreach type and due date for a scored change.
"""

from datetime import datetime, timedelta
from typing import Optional

from ..common.schemas import ChangeType, InitiativeType

PERSONAL_CHANGE_TYPES = frozenset({ChangeType.LIFE_EVENT, ChangeType.RELATIONSHIP})

VISIT_THRESHOLD = 9
CALL_THRESHOLD = 8
PERSONAL_CALL_THRESHOLD = 7

TIMING_OFFSETS = {
    "immediate": timedelta(hours=2),
    "this_week": timedelta(days=2),
    "this_month": timedelta(days=7),
}


def select_initiative_type(change_type: ChangeType, score: int) -> InitiativeType:
    change_type = ChangeType(change_type)
    personal = change_type in PERSONAL_CHANGE_TYPES
    if score >= VISIT_THRESHOLD and personal:
        return InitiativeType.VISIT
    if score >= CALL_THRESHOLD:
        return InitiativeType.CALL
    if score >= PERSONAL_CALL_THRESHOLD and personal:
        return InitiativeType.CALL
    return InitiativeType.MESSAGE


def calculate_due_date(now: datetime, urgency: int, timing: Optional[str] = None) -> datetime:
    """Due date from the model's suggested timing, else from urgency."""
    if timing in TIMING_OFFSETS:
        return now + TIMING_OFFSETS[timing]
    if urgency >= 8:
        return now + timedelta(hours=4)
    if urgency >= 6:
        return now + timedelta(days=1)
    return now + timedelta(days=3)
