"""
Core records: organizations, leaders, people and detected changes.

A PersonChange is an immutable fact ("field X of person P changed from A to
B, detected at T"). Only its processing annotations are ever updated, and
``processed_at`` moves from None to a timestamp exactly once.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    """Generate a prefixed identifier, e.g. ``chg_3f9a1c0d2b7e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ============================================================================
# Enums
# ============================================================================

class ChangeType(str, Enum):
    """Pastoral category of a detected change"""
    LIFE_EVENT = "life_event"
    ENGAGEMENT = "engagement"
    PERSONAL_DATA = "personal_data"
    RELATIONSHIP = "relationship"
    SPECIAL_DATE = "special_date"


class ChangeKind(str, Enum):
    """What happened to the member record"""
    CREATION = "creation"
    UPDATE = "update"
    DELETION = "deletion"
    GROUP = "group"
    CONFLICT = "conflict"
    UPCOMING_DATE = "upcoming_date"


class SyncSource(str, Enum):
    """Provenance of a person record"""
    WEBHOOK = "webhook"
    POLLING = "polling"
    MANUAL = "manual"


# Canonical tracked fields, with the camelCase spelling used by the directory API
TRACKED_FIELDS = {
    "name": "name",
    "email": "email",
    "phone": "phone",
    "birthDate": "birth_date",
    "maritalStatus": "marital_status",
    "address": "address",
}


def canonical_field(name: str) -> str:
    """Map camelCase or snake_case field names to the snake_case attribute name."""
    if name in TRACKED_FIELDS:
        return TRACKED_FIELDS[name]
    return name


# ============================================================================
# Records
# ============================================================================

class Organization(BaseModel):
    """A church using the CRM"""
    id: str
    name: str
    inchurch_api_key: Optional[str] = None
    inchurch_secret: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)

    @property
    def has_directory_credentials(self) -> bool:
        return bool(self.inchurch_api_key and self.inchurch_secret)


class Leader(BaseModel):
    """A staff member or volunteer responsible for a set of people"""
    id: str
    organization_id: str
    name: str = ""


class Person(BaseModel):
    """An individual under a leader's pastoral care"""
    id: str = Field(default_factory=lambda: generate_id("per"))
    inchurch_member_id: Optional[str] = None
    organization_id: str
    leader_id: Optional[str] = None
    name: str = "Nome não informado"
    email: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[str] = None
    marital_status: Optional[str] = None
    address: Optional[Union[Dict[str, Any], str]] = None
    profile_data: Dict[str, Any] = Field(default_factory=dict)
    sync_source: SyncSource = SyncSource.MANUAL
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def first_name(self) -> str:
        return self.name.split(" ")[0] if self.name else ""

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy kept on a deletion change after the row is gone."""
        return self.model_dump(mode="json")


class PersonChange(BaseModel):
    """A detected delta in a person's data, the unit of work for scoring"""
    id: str = Field(default_factory=lambda: generate_id("chg"))
    person_id: str
    organization_id: str
    change_type: ChangeType
    change_kind: ChangeKind = ChangeKind.UPDATE
    changed_fields: List[str] = Field(default_factory=list)
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    detected_at: datetime = Field(default_factory=utc_now)
    urgency_score: int = Field(ge=1, le=10)
    critical: bool = False
    source_event_id: Optional[str] = None

    # Processing annotations
    processed_at: Optional[datetime] = None
    enhanced_score: Optional[int] = Field(default=None, ge=1, le=10)
    ai_analysis: Optional[Dict[str, Any]] = None
    initiative_id: Optional[str] = None
    generated_at: Optional[datetime] = None

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None

    @property
    def effective_score(self) -> int:
        """Enhanced score when enrichment succeeded, heuristic otherwise."""
        return self.enhanced_score if self.enhanced_score is not None else self.urgency_score

    @property
    def llm_analysis(self) -> Optional[Dict[str, Any]]:
        if not self.ai_analysis:
            return None
        analysis = self.ai_analysis.get("llmAnalysis")
        return analysis if isinstance(analysis, dict) else None

    def person_snapshot(self) -> Optional[Person]:
        """Rebuild the deleted person from the snapshot stored on a deletion change."""
        if self.change_kind != ChangeKind.DELETION or not isinstance(self.old_value, dict):
            return None
        try:
            return Person.model_validate(self.old_value)
        except ValueError:
            return None
