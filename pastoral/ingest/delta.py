"""
Delta Detector

Field-level diff between a stored Person and a directory member payload.
Strings compare trimmed and case-insensitive, mappings compare as JSON,
and null and empty values are treated as equal.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..common.schemas import TRACKED_FIELDS, Person


@dataclass
class FieldChange:
    """One changed tracked field (camelCase name, as the directory spells it)."""
    field: str
    old_value: Any
    new_value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "oldValue": self.old_value, "newValue": self.new_value}


def member_value(member: Dict[str, Any], field: str) -> Any:
    """Read a tracked field from a payload that may use camelCase or snake_case keys."""
    if field in member:
        return member[field]
    return member.get(TRACKED_FIELDS.get(field, field))


def has_field(member: Dict[str, Any], field: str) -> bool:
    return field in member or TRACKED_FIELDS.get(field, field) in member


def _parse_json_safely(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _is_null_or_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    return False


def has_field_changed(old_value: Any, new_value: Any) -> bool:
    if old_value == new_value:
        return False
    if _is_null_or_empty(old_value) and _is_null_or_empty(new_value):
        return False
    if isinstance(old_value, (dict, list)) and isinstance(new_value, (dict, list)):
        return json.dumps(old_value, sort_keys=True, default=str) != json.dumps(new_value, sort_keys=True, default=str)
    if isinstance(old_value, str) and isinstance(new_value, str):
        return old_value.strip().lower() != new_value.strip().lower()
    return True


class DeltaDetector:
    """Detects which tracked fields differ between a person and a member payload."""

    def detect_changes(
        self,
        existing: Optional[Person],
        member: Dict[str, Any],
        only_present: bool = False,
    ) -> List[FieldChange]:
        """
        Args:
            existing: Stored person, or None when the member is new
            member: Directory member payload
            only_present: Compare only fields present in the payload (partial
                webhook updates); otherwise a missing field counts as cleared

        Returns:
            Changed fields in tracked-field order
        """
        changes = []
        for field, attr in TRACKED_FIELDS.items():
            if only_present and not has_field(member, field):
                continue

            old_value = getattr(existing, attr) if existing is not None else None
            if field == "address":
                old_value = _parse_json_safely(old_value)
            new_value = member_value(member, field)
            if _is_null_or_empty(new_value):
                new_value = None

            if has_field_changed(old_value, new_value):
                changes.append(FieldChange(field=field, old_value=old_value, new_value=new_value))
        return changes

    @staticmethod
    def significance(changes: List[FieldChange]) -> str:
        """'high' for marital status or address, 'medium' for contact fields or many changes."""
        fields = {c.field for c in changes}
        if fields & {"maritalStatus", "address"}:
            return "high"
        if fields & {"phone", "email"} or len(changes) > 2:
            return "medium"
        return "low"
