"""
Conflict Resolver

Decides which directory values a polling pass may write over a person that
was edited locally (webhook or manual edit) inside the review window.
Outside that window the directory is the source of truth and every change
applies. Inside it, each field follows its strategy; fields that are not
applied are held back and described in a conflict report for review.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..common.schemas import Person, SyncSource
from .delta import DeltaDetector, FieldChange

logger = logging.getLogger("pastoral.ingest.conflicts")


class ConflictStrategy(str, Enum):
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    NEWEST_WINS = "newest_wins"
    MANUAL_REVIEW = "manual_review"


def _default_field_strategies() -> Dict[str, ConflictStrategy]:
    return {
        "phone": ConflictStrategy.NEWEST_WINS,
        "email": ConflictStrategy.NEWEST_WINS,
        "address": ConflictStrategy.MANUAL_REVIEW,
        "maritalStatus": ConflictStrategy.MANUAL_REVIEW,
    }


@dataclass
class ConflictPolicy:
    """Per-field strategies; fields not listed use ``default``."""
    default: ConflictStrategy = ConflictStrategy.REMOTE_WINS
    field_strategies: Dict[str, ConflictStrategy] = field(default_factory=_default_field_strategies)
    review_window_hours: float = 24.0

    def strategy_for(self, field_name: str) -> ConflictStrategy:
        return self.field_strategies.get(field_name, self.default)


@dataclass
class Resolution:
    applied: List[FieldChange] = field(default_factory=list)
    held: List[FieldChange] = field(default_factory=list)
    report: Optional[Dict[str, Any]] = None

    @property
    def has_conflict(self) -> bool:
        return bool(self.held)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class ConflictResolver:
    """Splits a member's field changes into those to apply and those to hold."""

    def __init__(self, policy: Optional[ConflictPolicy] = None):
        self.policy = policy or ConflictPolicy()

    def is_recent_local_edit(self, person: Person, now: datetime) -> bool:
        """True when the last write came from outside polling and is newer than the review window."""
        if person.sync_source == SyncSource.POLLING:
            return False
        age = _as_utc(now) - _as_utc(person.updated_at)
        return age < timedelta(hours=self.policy.review_window_hours)

    @staticmethod
    def is_remote_newer(person: Person, member: Dict[str, Any]) -> bool:
        """Compare the member's ``updatedAt`` with the local edit; a missing timestamp favors the directory."""
        remote = _parse_timestamp(member.get("updatedAt") or member.get("updated_at"))
        if remote is None:
            return True
        return remote > _as_utc(person.updated_at)

    def resolve(
        self,
        person: Person,
        member: Dict[str, Any],
        changes: List[FieldChange],
        now: datetime,
    ) -> Resolution:
        if not changes or not self.is_recent_local_edit(person, now):
            return Resolution(applied=list(changes))

        remote_newer = self.is_remote_newer(person, member)
        resolution = Resolution()
        for change in changes:
            strategy = self.policy.strategy_for(change.field)
            if strategy == ConflictStrategy.REMOTE_WINS or (
                strategy == ConflictStrategy.NEWEST_WINS and remote_newer
            ):
                resolution.applied.append(change)
            else:
                resolution.held.append(change)

        if resolution.held:
            resolution.report = self.conflict_report(person, member, resolution.held, now)
            logger.info(
                "Held %d field(s) of person %s for review: %s",
                len(resolution.held), person.id, ", ".join(c.field for c in resolution.held),
            )
        return resolution

    def conflict_report(
        self,
        person: Person,
        member: Dict[str, Any],
        changes: List[FieldChange],
        now: datetime,
    ) -> Dict[str, Any]:
        return {
            "recordId": person.id,
            "inchurchMemberId": person.inchurch_member_id,
            "conflictTimestamp": now.isoformat(),
            "significance": DeltaDetector.significance(changes),
            "localData": {
                "lastUpdated": person.updated_at.isoformat(),
                "syncSource": person.sync_source.value,
                "values": {c.field: c.old_value for c in changes},
            },
            "remoteData": {
                "lastUpdated": member.get("updatedAt") or member.get("updated_at"),
                "values": {c.field: c.new_value for c in changes},
            },
            "conflicts": [
                {
                    "field": c.field,
                    "localValue": c.old_value,
                    "remoteValue": c.new_value,
                    "recommendedResolution": self.policy.strategy_for(c.field).value,
                }
                for c in changes
            ],
        }
