"""
Pastoral Pipeline Schemas

Records exchanged between ingestion, enrichment, generation and the jobs.
"""

from .records import (
    ChangeKind,
    ChangeType,
    Leader,
    Organization,
    Person,
    PersonChange,
    SyncSource,
    TRACKED_FIELDS,
    canonical_field,
    generate_id,
    utc_now,
)
from .initiative import Initiative, InitiativeStatus, InitiativeType, OPEN_STATUSES
from .sync_log import JobStatus, SyncExecutionLog, SyncType, summarize_errors
from .events import WebhookEvent, WebhookEventType
from .templates import render_description, render_suggested_message, render_title

__all__ = [
    "ChangeKind",
    "ChangeType",
    "Leader",
    "Organization",
    "Person",
    "PersonChange",
    "SyncSource",
    "TRACKED_FIELDS",
    "canonical_field",
    "generate_id",
    "utc_now",
    "Initiative",
    "InitiativeStatus",
    "InitiativeType",
    "OPEN_STATUSES",
    "JobStatus",
    "SyncExecutionLog",
    "SyncType",
    "summarize_errors",
    "WebhookEvent",
    "WebhookEventType",
    "render_description",
    "render_suggested_message",
    "render_title",
]
