"""
Change Ingestor

Turns verified InChurch webhook events into Person mutations and exactly one
PersonChange per accepted event.

Pipeline:
1. Verify signature over the raw body, decode and validate the event
2. Suppress redeliveries via the processed-event key set
3. Upsert (or hard-delete) the person
4. Record one scored PersonChange, reverting step 3 if that fails
5. Write an execution-log row and mark the event handled
6. Hand critical changes to the inline processor
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import pydantic

from ..common.errors import NotFoundError, PastoralError, PersistenceError, ValidationError, AuthenticationError
from ..common.schemas import (
    ChangeKind,
    JobStatus,
    Person,
    PersonChange,
    SyncExecutionLog,
    SyncSource,
    SyncType,
    TRACKED_FIELDS,
    WebhookEvent,
    utc_now,
)
from ..common.store import DataStore
from .delta import DeltaDetector, has_field, member_value
from .handlers import BaseHandler
from .scorer import HeuristicScorer

logger = logging.getLogger("pastoral.ingest.ingestor")

CriticalProcessor = Callable[[PersonChange], Awaitable[Any]]


@dataclass
class IngestResult:
    """Outcome of one webhook delivery."""
    accepted: bool
    event_id: str
    person_id: Optional[str] = None
    change_id: Optional[str] = None
    urgency_score: Optional[int] = None
    critical: bool = False
    duplicate: bool = False
    reason: Optional[str] = None


class ChangeIngestor:
    """
    Applies webhook events to the store.

    Only events that completed (or were skipped as not found) enter the
    processed-event set, so a delivery that failed on persistence can be
    retried by the sender.
    """

    def __init__(
        self,
        store: DataStore,
        handler: BaseHandler,
        scorer: Optional[HeuristicScorer] = None,
        delta_detector: Optional[DeltaDetector] = None,
        critical_processor: Optional[CriticalProcessor] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._handler = handler
        self._scorer = scorer or HeuristicScorer()
        self._delta = delta_detector or DeltaDetector()
        self._critical_processor = critical_processor
        self._clock = clock
        self._in_flight: Set[str] = set()

    def set_critical_processor(self, processor: Optional[CriticalProcessor]) -> None:
        self._critical_processor = processor

    async def ingest_raw(self, body: bytes, signature: Optional[str]) -> IngestResult:
        """
        Verify, decode and ingest a raw webhook body.

        Raises:
            ValidationError: missing signature header, malformed JSON or event shape
            AuthenticationError: signature present but not valid for this body
        """
        if not signature or not signature.strip():
            raise ValidationError("Missing signature")
        if not self._handler.verify_signature(body, signature):
            raise AuthenticationError("Invalid signature")

        data = self._handler.decode_body(body)
        event = self._handler.parse_event(data)
        return await self.ingest(event)

    async def ingest(self, event: WebhookEvent) -> IngestResult:
        if event.id in self._in_flight or await self._store.has_processed_event(SyncType.WEBHOOK, event.id):
            logger.info("Skipping duplicate event: %s", event.id)
            return IngestResult(accepted=False, event_id=event.id, duplicate=True, reason="duplicate")

        self._in_flight.add(event.id)
        started = time.monotonic()
        try:
            try:
                change = await self._apply(event)
            except NotFoundError as e:
                logger.warning("Event %s skipped: %s", event.id, e)
                await self._write_log(event, JobStatus.SKIPPED, started, error=str(e))
                await self._store.mark_event_processed(SyncType.WEBHOOK, event.id)
                return IngestResult(accepted=False, event_id=event.id, reason=str(e))
            except PastoralError as e:
                logger.error("Event %s failed: %s", event.id, e)
                await self._write_log(event, JobStatus.FAILED, started, error=str(e))
                raise
            except Exception as e:
                logger.exception("Event %s failed unexpectedly", event.id)
                await self._write_log(event, JobStatus.FAILED, started, error=str(e))
                raise PersistenceError(f"Failed to apply event {event.id}: {e}") from e

            await self._write_log(event, JobStatus.COMPLETED, started, records=1)
            await self._store.mark_event_processed(SyncType.WEBHOOK, event.id)
        finally:
            self._in_flight.discard(event.id)

        logger.info(
            "Event %s (%s) recorded change %s [score=%d%s]",
            event.id, event.type.value, change.id, change.urgency_score,
            ", critical" if change.critical else "",
        )

        if change.critical:
            await self._process_critical(change)

        return IngestResult(
            accepted=True,
            event_id=event.id,
            person_id=change.person_id,
            change_id=change.id,
            urgency_score=change.urgency_score,
            critical=change.critical,
        )

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    async def _apply(self, event: WebhookEvent) -> PersonChange:
        organization = await self._store.get_organization(event.organization_id)
        if organization is None:
            raise NotFoundError(f"Organization {event.organization_id} not found")

        kind = event.change_kind
        if kind == ChangeKind.DELETION:
            return await self._apply_deletion(event)
        if kind == ChangeKind.GROUP:
            return await self._apply_group(event)
        return await self._apply_upsert(event, kind)

    async def _apply_upsert(self, event: WebhookEvent, kind: ChangeKind) -> PersonChange:
        now = self._clock()
        member_id = event.member_id
        existing = await self._store.find_person_by_member_id(event.organization_id, member_id)

        field_changes = self._delta.detect_changes(existing, event.data, only_present=True)
        changed_fields = [c.field for c in field_changes]

        if existing is not None:
            leader_id = existing.leader_id
            base = existing.model_dump()
        else:
            leader = await self._store.get_default_leader(event.organization_id)
            if leader is None:
                raise NotFoundError(f"No leader found for organization {event.organization_id}")
            leader_id = leader.id
            base = {"organization_id": event.organization_id, "inchurch_member_id": member_id}

        updates = self._person_fields(event.data)
        profile_data = dict(base.get("profile_data") or {})
        profile_data.update(event.data)
        try:
            person = Person.model_validate({
                **base,
                **updates,
                "leader_id": leader_id,
                "profile_data": profile_data,
                "sync_source": SyncSource.WEBHOOK,
                "last_synced_at": now,
                "updated_at": now,
            })
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid member payload in event {event.id}: {e}") from e
        person = await self._store.save_person(person)

        if kind == ChangeKind.CREATION:
            old_value = None
            new_value = {f: member_value(event.data, f) for f in TRACKED_FIELDS if has_field(event.data, f)}
        else:
            old_value = {c.field: c.old_value for c in field_changes}
            new_value = {c.field: c.new_value for c in field_changes}

        try:
            return await self._record_change(event, person.id, kind, changed_fields, old_value, new_value, now)
        except Exception:
            await self._revert(person.id, existing)
            raise

    async def _apply_deletion(self, event: WebhookEvent) -> PersonChange:
        now = self._clock()
        existing = await self._store.find_person_by_member_id(event.organization_id, event.member_id)
        if existing is None:
            raise NotFoundError(f"Member {event.member_id} not found in {event.organization_id}")

        snapshot = existing.snapshot()
        await self._store.delete_person(existing.id)
        try:
            return await self._record_change(event, existing.id, ChangeKind.DELETION, [], snapshot, None, now)
        except Exception:
            await self._revert(existing.id, existing)
            raise

    async def _apply_group(self, event: WebhookEvent) -> PersonChange:
        now = self._clock()
        member_id = event.data.get("memberId")
        if member_id is None:
            raise NotFoundError(f"Group event {event.id} does not reference a member")
        person = await self._store.find_person_by_member_id(event.organization_id, str(member_id))
        if person is None:
            raise NotFoundError(f"Member {member_id} not found in {event.organization_id}")
        return await self._record_change(event, person.id, ChangeKind.GROUP, [], None, dict(event.data), now)

    async def _record_change(
        self,
        event: WebhookEvent,
        person_id: str,
        kind: ChangeKind,
        changed_fields,
        old_value,
        new_value,
        now: datetime,
    ) -> PersonChange:
        change = PersonChange(
            person_id=person_id,
            organization_id=event.organization_id,
            change_type=self._scorer.classify(kind, changed_fields),
            change_kind=kind,
            changed_fields=list(changed_fields),
            old_value=old_value,
            new_value=new_value,
            detected_at=now,
            urgency_score=self._scorer.score(kind, changed_fields),
            critical=self._scorer.is_critical(kind, changed_fields),
            source_event_id=event.id,
        )
        return await self._store.add_change(change)

    async def _revert(self, person_id: str, previous: Optional[Person]) -> None:
        """Put the person back the way it was when its change could not be recorded."""
        try:
            await self._store.revert_person(person_id, previous)
        except PastoralError as e:
            logger.error("Failed to revert person %s after losing its change: %s", person_id, e)

    @staticmethod
    def _person_fields(data: Dict[str, Any]) -> Dict[str, Any]:
        fields = {}
        for field, attr in TRACKED_FIELDS.items():
            if not has_field(data, field):
                continue
            value = member_value(data, field)
            if isinstance(value, str) and value.strip() == "":
                value = None
            fields[attr] = value
        if "name" in fields and not fields["name"]:
            fields["name"] = "Nome não informado"
        return fields

    async def _process_critical(self, change: PersonChange) -> None:
        if self._critical_processor is None:
            return
        try:
            await self._critical_processor(change)
        except Exception as e:
            # The change is durable; batch jobs will pick it up.
            logger.error("Inline processing of critical change %s failed: %s", change.id, e)

    async def _write_log(
        self,
        event: WebhookEvent,
        status: JobStatus,
        started: float,
        records: int = 0,
        error: Optional[str] = None,
    ) -> None:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        log = SyncExecutionLog(
            organization_id=event.organization_id,
            sync_type=SyncType.WEBHOOK,
            status=status,
            event_id=event.id,
            records_processed=records,
            execution_time_ms=elapsed_ms,
            error_message=error,
            details={"eventType": event.type.value},
            completed_at=self._clock(),
        )
        try:
            await self._store.add_log(log)
        except PastoralError as e:
            logger.error("Failed to write execution log for event %s: %s", event.id, e)
