"""
Inbound InChurch webhook event.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .records import ChangeKind


class WebhookEventType(str, Enum):
    MEMBER_CREATED = "member.created"
    MEMBER_UPDATED = "member.updated"
    MEMBER_DELETED = "member.deleted"
    GROUP_UPDATED = "group.updated"


_EVENT_KINDS = {
    WebhookEventType.MEMBER_CREATED: ChangeKind.CREATION,
    WebhookEventType.MEMBER_UPDATED: ChangeKind.UPDATE,
    WebhookEventType.MEMBER_DELETED: ChangeKind.DELETION,
    WebhookEventType.GROUP_UPDATED: ChangeKind.GROUP,
}


class WebhookEvent(BaseModel):
    """``{id, type, timestamp, organizationId, data}`` as delivered by InChurch"""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    type: WebhookEventType
    timestamp: str = ""
    organization_id: str = Field(alias="organizationId", min_length=1)
    data: Dict[str, Any]

    @field_validator("data")
    @classmethod
    def _member_events_carry_member_id(cls, value: Dict[str, Any], info) -> Dict[str, Any]:
        event_type = info.data.get("type")
        if event_type is not None and event_type != WebhookEventType.GROUP_UPDATED:
            member_id = value.get("id") or value.get("memberId")
            if member_id is None or str(member_id).strip() == "":
                raise ValueError("member events require data.id")
        return value

    @property
    def change_kind(self) -> ChangeKind:
        return _EVENT_KINDS[self.type]

    @property
    def member_id(self) -> Optional[str]:
        member_id = self.data.get("id") or self.data.get("memberId")
        return str(member_id) if member_id is not None else None

    @property
    def is_member_event(self) -> bool:
        return self.type != WebhookEventType.GROUP_UPDATED
