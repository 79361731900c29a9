"""
Heuristic Scorer

Deterministic urgency (1-10) from what happened to a member record and
which fields changed. This is the only urgency table in the pipeline: the
webhook ingestor and the polling sync both score through it, and its result
is the fallback whenever enrichment fails.

    deletion                              -> 9
    update touching marital status/address -> 7
    update touching phone/email           -> 5
    creation                              -> 6
    anything else                         -> 4

Upcoming birthdays are scored by proximity instead: 8 within a week, 6
within two weeks, 4 within a month, 3 beyond that.
"""

from typing import Iterable, Set

from ..common.schemas import ChangeKind, ChangeType, canonical_field

DELETION_SCORE = 9
RELATIONSHIP_OR_ADDRESS_SCORE = 7
CONTACT_SCORE = 5
CREATION_SCORE = 6
DEFAULT_SCORE = 4

# (days until, score), first match wins
UPCOMING_BIRTHDAY_SCORES = ((7, 8), (14, 6), (30, 4))
DISTANT_BIRTHDAY_SCORE = 3

_HIGH_SIGNAL_FIELDS = {"marital_status", "address"}
_CONTACT_FIELDS = {"phone", "email"}
_CRITICAL_FIELDS = {"marital_status", "address", "phone"}


def _normalize(changed_fields: Iterable[str]) -> Set[str]:
    return {canonical_field(f) for f in (changed_fields or ())}


class HeuristicScorer:
    """Pure scoring and classification of member-record changes."""

    def score(self, change_kind: ChangeKind, changed_fields: Iterable[str] = ()) -> int:
        """
        Score a change.

        Args:
            change_kind: creation, update, deletion, group, conflict or upcoming date
            changed_fields: Field names (camelCase or snake_case)

        Returns:
            Urgency in [1, 10]
        """
        kind = ChangeKind(change_kind)
        fields = _normalize(changed_fields)

        if kind == ChangeKind.DELETION:
            return DELETION_SCORE
        if kind == ChangeKind.UPDATE:
            if fields & _HIGH_SIGNAL_FIELDS:
                return RELATIONSHIP_OR_ADDRESS_SCORE
            if fields & _CONTACT_FIELDS:
                return CONTACT_SCORE
        if kind == ChangeKind.CREATION:
            return CREATION_SCORE
        return DEFAULT_SCORE

    def is_critical(self, change_kind: ChangeKind, changed_fields: Iterable[str] = ()) -> bool:
        """Deletions and updates touching marital status, address or phone."""
        kind = ChangeKind(change_kind)
        if kind == ChangeKind.DELETION:
            return True
        return kind == ChangeKind.UPDATE and bool(_normalize(changed_fields) & _CRITICAL_FIELDS)

    def score_upcoming_birthday(self, days_until: int) -> int:
        for limit, score in UPCOMING_BIRTHDAY_SCORES:
            if days_until <= limit:
                return score
        return DISTANT_BIRTHDAY_SCORE

    def classify(self, change_kind: ChangeKind, changed_fields: Iterable[str] = ()) -> ChangeType:
        """Pastoral category for the change record."""
        kind = ChangeKind(change_kind)
        fields = _normalize(changed_fields)

        if kind in (ChangeKind.CREATION, ChangeKind.DELETION):
            return ChangeType.LIFE_EVENT
        if kind == ChangeKind.GROUP:
            return ChangeType.ENGAGEMENT
        if kind == ChangeKind.UPCOMING_DATE:
            return ChangeType.SPECIAL_DATE
        if kind == ChangeKind.CONFLICT:
            return ChangeType.PERSONAL_DATA
        if "marital_status" in fields:
            return ChangeType.RELATIONSHIP
        if fields == {"birth_date"}:
            return ChangeType.SPECIAL_DATE
        return ChangeType.PERSONAL_DATA
