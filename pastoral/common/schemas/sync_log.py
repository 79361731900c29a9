"""
Execution log records for webhook deliveries and orchestration runs.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .records import generate_id, utc_now


class SyncType(str, Enum):
    WEBHOOK = "webhook"
    DAILY_POLLING = "daily_polling"
    LLM_SCORING = "llm_scoring"
    INITIATIVE_GENERATION = "initiative_generation"


class JobStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.COMPLETED_WITH_ERRORS,
    JobStatus.FAILED,
    JobStatus.SKIPPED,
})


class SyncExecutionLog(BaseModel):
    """Append-only summary of one webhook delivery or job run"""
    id: str = Field(default_factory=lambda: generate_id("log"))
    organization_id: Optional[str] = None
    sync_type: SyncType
    status: JobStatus
    event_id: Optional[str] = None
    records_processed: int = 0
    execution_time_ms: int = 0
    error_message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


def summarize_errors(errors: List[str], limit: int = 3) -> Optional[str]:
    """First ``limit`` errors joined with '; ', with '...' when more were dropped."""
    if not errors:
        return None
    message = "; ".join(errors[:limit])
    if len(errors) > limit:
        message += "..."
    return message
