"""
Initiative Generator

Turns processed, unlinked changes into pending initiatives for the person's
leader, respecting the per-person open-initiative cap and suppressing
near-duplicates of open initiatives.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..common.errors import NotFoundError, PastoralError
from ..common.schemas import (
    Initiative,
    InitiativeStatus,
    InitiativeType,
    Person,
    PersonChange,
    render_description,
    render_suggested_message,
    render_title,
    utc_now,
)
from ..common.store import DataStore
from .policy import calculate_due_date, select_initiative_type

logger = logging.getLogger("pastoral.initiatives.generator")


@dataclass
class GeneratedInitiative:
    """What happened to one candidate change."""
    change_id: str
    person_id: str
    initiative_id: str
    type: InitiativeType
    priority: int
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changeId": self.change_id,
            "personId": self.person_id,
            "initiativeId": self.initiative_id,
            "type": self.type.value,
            "priority": self.priority,
            "duplicate": self.duplicate,
        }


@dataclass
class GenerationResult:
    initiatives_generated: int = 0
    changes_processed: int = 0
    results: List[GeneratedInitiative] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    processing_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initiativesGenerated": self.initiatives_generated,
            "changesProcessed": self.changes_processed,
            "processingTime": self.processing_time_ms,
            "errors": list(self.errors),
            "results": [r.to_dict() for r in self.results],
        }


class InitiativeGenerator:
    """
    Creates initiatives from scored changes.

    The open-initiative count is read from the store before every insert, so
    repeated or overlapping runs cannot push a person past the cap.
    """

    def __init__(
        self,
        store: DataStore,
        clock: Callable[[], datetime] = utc_now,
        duplicate_window_days: int = 7,
    ):
        self._store = store
        self._clock = clock
        self._duplicate_window = timedelta(days=duplicate_window_days)

    async def generate_from_processed_changes(
        self,
        organization_id: Optional[str] = None,
        max_initiatives_per_person: int = 3,
        batch_size: int = 50,
        skip_duplicates: bool = True,
    ) -> GenerationResult:
        """
        Generate initiatives for up to ``batch_size`` candidate changes.

        Args:
            organization_id: Restrict to one organization (None for all)
            max_initiatives_per_person: Cap on open initiatives per person
            batch_size: Maximum candidate changes examined
            skip_duplicates: Link to a matching open initiative instead of creating one

        Returns:
            GenerationResult; per-person failures are listed in ``errors``
        """
        started = time.monotonic()
        result = GenerationResult()

        candidates = await self._store.list_generation_candidates(
            organization_id=organization_id, limit=batch_size,
        )
        for person_id, changes in self._group_by_person(candidates).items():
            await self._generate_person(person_id, changes, max_initiatives_per_person, skip_duplicates, result)

        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Generated %d initiative(s) from %d change(s)%s, errors=%d",
            result.initiatives_generated, result.changes_processed,
            f" for {organization_id}" if organization_id else "",
            len(result.errors),
        )
        return result

    async def generate_for_person(self, person_id: str, max_initiatives: int = 3) -> GenerationResult:
        started = time.monotonic()
        result = GenerationResult()
        changes = await self._store.list_generation_candidates(person_id=person_id)
        if changes:
            await self._generate_person(person_id, changes, max_initiatives, True, result)
        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        return result

    async def get_stats(self, organization_id: Optional[str] = None) -> Dict[str, Any]:
        initiatives = await self._store.list_initiatives(organization_id=organization_id)
        candidates = await self._store.list_generation_candidates(organization_id=organization_id)
        by_status: Dict[str, int] = {s.value: 0 for s in InitiativeStatus}
        for initiative in initiatives:
            by_status[initiative.status.value] += 1
        return {
            "totalInitiatives": len(initiatives),
            "byStatus": by_status,
            "pendingChanges": len(candidates),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _group_by_person(changes: List[PersonChange]) -> Dict[str, List[PersonChange]]:
        grouped: Dict[str, List[PersonChange]] = {}
        for change in changes:
            grouped.setdefault(change.person_id, []).append(change)
        return grouped

    async def _generate_person(
        self,
        person_id: str,
        changes: List[PersonChange],
        max_initiatives: int,
        skip_duplicates: bool,
        result: GenerationResult,
    ) -> None:
        try:
            person = await self._resolve_person(person_id, changes)
            for change in changes:
                result.changes_processed += 1
                outcome = await self._generate_one(person, change, max_initiatives, skip_duplicates)
                if outcome is None:
                    # Cap reached; the remaining changes stay eligible for a later run.
                    break
                result.results.append(outcome)
                if not outcome.duplicate:
                    result.initiatives_generated += 1
        except Exception as e:
            if not isinstance(e, PastoralError):
                logger.exception("Unexpected error generating initiatives for person %s", person_id)
            error = f"Error generating initiatives for person {person_id}: {str(e) or e.__class__.__name__}"
            logger.warning(error)
            result.errors.append(error)

    async def _resolve_person(self, person_id: str, changes: List[PersonChange]) -> Person:
        person = await self._store.get_person(person_id)
        if person is None:
            for change in changes:
                person = change.person_snapshot()
                if person is not None:
                    break
        if person is None:
            raise NotFoundError(f"Person not found: {person_id}")
        if not person.leader_id:
            raise NotFoundError(f"No leader assigned to person {person_id}")
        return person

    async def _generate_one(
        self,
        person: Person,
        change: PersonChange,
        max_initiatives: int,
        skip_duplicates: bool,
    ) -> Optional[GeneratedInitiative]:
        now = self._clock()
        score = change.effective_score
        initiative_type = select_initiative_type(change.change_type, score)

        if skip_duplicates:
            existing = await self._find_duplicate(person.id, change, initiative_type, now)
            if existing is not None:
                await self._store.link_change(change.id, existing.id, now)
                logger.info("Change %s linked to existing initiative %s", change.id, existing.id)
                return GeneratedInitiative(
                    change_id=change.id,
                    person_id=person.id,
                    initiative_id=existing.id,
                    type=initiative_type,
                    priority=existing.priority,
                    duplicate=True,
                )

        open_count = await self._store.count_open_initiatives(person.id)
        if open_count >= max_initiatives:
            logger.info(
                "Person %s already has %d open initiative(s), deferring change %s",
                person.id, open_count, change.id,
            )
            return None

        initiative = await self._store.add_initiative(self._build(person, change, initiative_type, score, now))
        if not await self._store.link_change(change.id, initiative.id, now):
            # Another run linked the change first; withdraw ours.
            await self._store.update_initiative(initiative.transition_to(InitiativeStatus.CANCELLED, now))
            raise PastoralError(f"Change {change.id} was linked concurrently")

        logger.info(
            "Created %s initiative %s for %s (priority %d)",
            initiative_type.value, initiative.id, person.id, score,
        )
        return GeneratedInitiative(
            change_id=change.id,
            person_id=person.id,
            initiative_id=initiative.id,
            type=initiative_type,
            priority=score,
        )

    async def _find_duplicate(
        self,
        person_id: str,
        change: PersonChange,
        initiative_type: InitiativeType,
        now: datetime,
    ) -> Optional[Initiative]:
        since = now - self._duplicate_window
        for initiative in await self._store.list_initiatives(person_id=person_id, open_only=True):
            if initiative.type != initiative_type or initiative.created_at < since:
                continue
            if not initiative.change_id:
                continue
            origin = await self._store.get_change(initiative.change_id)
            if origin is not None and origin.change_type == change.change_type:
                return initiative
        return None

    @staticmethod
    def _build(
        person: Person,
        change: PersonChange,
        initiative_type: InitiativeType,
        score: int,
        now: datetime,
    ) -> Initiative:
        analysis = change.llm_analysis
        timing = analysis.get("suggestedTiming") if analysis else None
        return Initiative(
            organization_id=person.organization_id,
            leader_id=person.leader_id,
            person_id=person.id,
            change_id=change.id,
            type=initiative_type,
            title=render_title(person, change, initiative_type),
            description=render_description(person, change, analysis),
            suggested_message=render_suggested_message(person, change, initiative_type),
            status=InitiativeStatus.PENDING,
            priority=score,
            due_date=calculate_due_date(now, score, timing),
            created_at=now,
            updated_at=now,
        )
