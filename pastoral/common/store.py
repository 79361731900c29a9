"""
Data Store

Narrow async persistence interface consumed by every pipeline component,
with an in-memory implementation and a JSON-file implementation persisted
to ~/.pastoral/data.json.

Ordering rules live here so every caller sees the same stable order:
- unprocessed changes: urgency desc, detected_at asc, id asc
- generation candidates: effective score desc, detected_at asc, id asc
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .errors import NotFoundError, PersistenceError
from .schemas import (
    Initiative,
    Leader,
    Organization,
    Person,
    PersonChange,
    SyncExecutionLog,
    SyncType,
)

logger = logging.getLogger("pastoral.common.store")


def _unprocessed_order(change: PersonChange):
    return (-change.urgency_score, change.detected_at, change.id)


def _generation_order(change: PersonChange):
    return (-change.effective_score, change.detected_at, change.id)


class DataStore(ABC):
    """Persistence interface. Implementations must make claim_change a compare-and-swap."""

    # -- organizations & leaders ------------------------------------------

    @abstractmethod
    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        pass

    @abstractmethod
    async def list_organizations(self) -> List[Organization]:
        pass

    @abstractmethod
    async def save_organization(self, organization: Organization) -> Organization:
        pass

    @abstractmethod
    async def save_leader(self, leader: Leader) -> Leader:
        pass

    @abstractmethod
    async def get_default_leader(self, organization_id: str) -> Optional[Leader]:
        """The leader new people of an organization are assigned to."""
        pass

    # -- people -----------------------------------------------------------

    @abstractmethod
    async def get_person(self, person_id: str) -> Optional[Person]:
        pass

    @abstractmethod
    async def find_person_by_member_id(self, organization_id: str, member_id: str) -> Optional[Person]:
        pass

    @abstractmethod
    async def save_person(self, person: Person) -> Person:
        """Insert or update by id. (organization_id, inchurch_member_id) must stay unique."""
        pass

    @abstractmethod
    async def delete_person(self, person_id: str) -> None:
        pass

    @abstractmethod
    async def list_people(self, organization_id: str) -> List[Person]:
        pass

    async def revert_person(self, person_id: str, previous: Optional[Person]) -> None:
        """Undo a save or delete of ``person_id``: restore ``previous``, or remove the row when there was none."""
        if previous is None:
            if await self.get_person(person_id) is not None:
                await self.delete_person(person_id)
        else:
            await self.save_person(previous)

    # -- changes ----------------------------------------------------------

    @abstractmethod
    async def add_change(self, change: PersonChange) -> PersonChange:
        pass

    @abstractmethod
    async def add_changes(self, changes: List[PersonChange]) -> List[PersonChange]:
        """Insert several changes as one unit: either all are stored or none are."""
        pass

    @abstractmethod
    async def get_change(self, change_id: str) -> Optional[PersonChange]:
        pass

    @abstractmethod
    async def list_unprocessed_changes(
        self,
        organization_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PersonChange]:
        pass

    @abstractmethod
    async def list_generation_candidates(
        self,
        organization_id: Optional[str] = None,
        person_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PersonChange]:
        """Processed changes not yet linked to an initiative."""
        pass

    @abstractmethod
    async def list_changes_for_person(
        self,
        person_id: str,
        processed: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[PersonChange]:
        """Most recent first."""
        pass

    @abstractmethod
    async def claim_change(
        self,
        change_id: str,
        processed_at: datetime,
        enhanced_score: Optional[int] = None,
        ai_analysis: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Set processed_at only if it is still None. Returns whether this caller won."""
        pass

    @abstractmethod
    async def link_change(self, change_id: str, initiative_id: str, generated_at: datetime) -> bool:
        """Attach an initiative to a change only if none is attached yet."""
        pass

    @abstractmethod
    async def organizations_with_unprocessed_changes(self) -> List[str]:
        pass

    @abstractmethod
    async def organizations_with_generation_work(self, since: Optional[datetime] = None) -> List[str]:
        pass

    # -- initiatives ------------------------------------------------------

    @abstractmethod
    async def add_initiative(self, initiative: Initiative) -> Initiative:
        pass

    @abstractmethod
    async def get_initiative(self, initiative_id: str) -> Optional[Initiative]:
        pass

    @abstractmethod
    async def update_initiative(self, initiative: Initiative) -> Initiative:
        pass

    @abstractmethod
    async def list_initiatives(
        self,
        organization_id: Optional[str] = None,
        person_id: Optional[str] = None,
        open_only: bool = False,
    ) -> List[Initiative]:
        pass

    async def count_open_initiatives(self, person_id: str) -> int:
        return len(await self.list_initiatives(person_id=person_id, open_only=True))

    # -- execution logs & processed events --------------------------------

    @abstractmethod
    async def add_log(self, log: SyncExecutionLog) -> SyncExecutionLog:
        pass

    @abstractmethod
    async def list_logs(
        self,
        sync_type: Optional[SyncType] = None,
        organization_id: Optional[str] = None,
    ) -> List[SyncExecutionLog]:
        pass

    @abstractmethod
    async def has_processed_event(self, sync_type: SyncType, event_id: str) -> bool:
        pass

    @abstractmethod
    async def mark_event_processed(self, sync_type: SyncType, event_id: str) -> bool:
        """Insert-if-absent on the (sync_type, event_id) key. Returns False if already present."""
        pass

    async def close(self) -> None:
        pass


class InMemoryStore(DataStore):
    """Dict-backed store. Single event loop; each method runs without yielding."""

    def __init__(self):
        self._organizations: Dict[str, Organization] = {}
        self._leaders: Dict[str, Leader] = {}
        self._people: Dict[str, Person] = {}
        self._changes: Dict[str, PersonChange] = {}
        self._initiatives: Dict[str, Initiative] = {}
        self._logs: List[SyncExecutionLog] = []
        self._processed_events: Set[str] = set()

    def _persist(self) -> None:
        """Hook for durable subclasses; called after every mutation."""
        pass

    @staticmethod
    def _event_key(sync_type: SyncType, event_id: str) -> str:
        return f"{SyncType(sync_type).value}:{event_id}"

    # -- organizations & leaders ------------------------------------------

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        return self._organizations.get(organization_id)

    async def list_organizations(self) -> List[Organization]:
        return sorted(self._organizations.values(), key=lambda o: o.id)

    async def save_organization(self, organization: Organization) -> Organization:
        self._organizations[organization.id] = organization
        self._persist()
        return organization

    async def save_leader(self, leader: Leader) -> Leader:
        if leader.organization_id not in self._organizations:
            raise NotFoundError(f"Organization not found: {leader.organization_id}")
        self._leaders[leader.id] = leader
        self._persist()
        return leader

    async def get_default_leader(self, organization_id: str) -> Optional[Leader]:
        leaders = sorted(
            (l for l in self._leaders.values() if l.organization_id == organization_id),
            key=lambda l: l.id,
        )
        return leaders[0] if leaders else None

    # -- people -----------------------------------------------------------

    async def get_person(self, person_id: str) -> Optional[Person]:
        return self._people.get(person_id)

    async def find_person_by_member_id(self, organization_id: str, member_id: str) -> Optional[Person]:
        for person in self._people.values():
            if person.organization_id == organization_id and person.inchurch_member_id == member_id:
                return person
        return None

    async def save_person(self, person: Person) -> Person:
        if person.inchurch_member_id:
            existing = await self.find_person_by_member_id(person.organization_id, person.inchurch_member_id)
            if existing is not None and existing.id != person.id:
                raise PersistenceError(
                    f"Member {person.inchurch_member_id} already exists in {person.organization_id}"
                )
        self._people[person.id] = person
        self._persist()
        return person

    async def delete_person(self, person_id: str) -> None:
        if self._people.pop(person_id, None) is None:
            raise NotFoundError(f"Person not found: {person_id}")
        self._persist()

    async def list_people(self, organization_id: str) -> List[Person]:
        return sorted(
            (p for p in self._people.values() if p.organization_id == organization_id),
            key=lambda p: p.id,
        )

    # -- changes ----------------------------------------------------------

    async def add_change(self, change: PersonChange) -> PersonChange:
        if change.id in self._changes:
            raise PersistenceError(f"Change already exists: {change.id}")
        self._changes[change.id] = change
        self._persist()
        return change

    async def add_changes(self, changes: List[PersonChange]) -> List[PersonChange]:
        ids = [c.id for c in changes]
        if len(set(ids)) != len(ids) or any(i in self._changes for i in ids):
            raise PersistenceError(f"Change already exists among: {', '.join(ids)}")
        for change in changes:
            self._changes[change.id] = change
        if changes:
            self._persist()
        return list(changes)

    async def get_change(self, change_id: str) -> Optional[PersonChange]:
        return self._changes.get(change_id)

    async def list_unprocessed_changes(
        self,
        organization_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PersonChange]:
        changes = [
            c for c in self._changes.values()
            if c.processed_at is None
            and (organization_id is None or c.organization_id == organization_id)
        ]
        changes.sort(key=_unprocessed_order)
        return changes[:limit] if limit is not None else changes

    async def list_generation_candidates(
        self,
        organization_id: Optional[str] = None,
        person_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PersonChange]:
        changes = [
            c for c in self._changes.values()
            if c.processed_at is not None
            and c.initiative_id is None
            and (organization_id is None or c.organization_id == organization_id)
            and (person_id is None or c.person_id == person_id)
        ]
        changes.sort(key=_generation_order)
        return changes[:limit] if limit is not None else changes

    async def list_changes_for_person(
        self,
        person_id: str,
        processed: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[PersonChange]:
        changes = [
            c for c in self._changes.values()
            if c.person_id == person_id
            and (processed is None or c.is_processed == processed)
        ]
        changes.sort(key=lambda c: (c.detected_at, c.id), reverse=True)
        return changes[:limit] if limit is not None else changes

    async def claim_change(
        self,
        change_id: str,
        processed_at: datetime,
        enhanced_score: Optional[int] = None,
        ai_analysis: Optional[Dict[str, Any]] = None,
    ) -> bool:
        change = self._changes.get(change_id)
        if change is None:
            raise NotFoundError(f"Change not found: {change_id}")
        if change.processed_at is not None:
            return False
        self._changes[change_id] = change.model_copy(update={
            "processed_at": processed_at,
            "enhanced_score": enhanced_score,
            "ai_analysis": ai_analysis,
        })
        self._persist()
        return True

    async def link_change(self, change_id: str, initiative_id: str, generated_at: datetime) -> bool:
        change = self._changes.get(change_id)
        if change is None:
            raise NotFoundError(f"Change not found: {change_id}")
        if change.initiative_id is not None:
            return False
        self._changes[change_id] = change.model_copy(update={
            "initiative_id": initiative_id,
            "generated_at": generated_at,
        })
        self._persist()
        return True

    async def organizations_with_unprocessed_changes(self) -> List[str]:
        return sorted({c.organization_id for c in self._changes.values() if c.processed_at is None})

    async def organizations_with_generation_work(self, since: Optional[datetime] = None) -> List[str]:
        return sorted({
            c.organization_id for c in self._changes.values()
            if c.processed_at is not None
            and c.initiative_id is None
            and (since is None or c.detected_at >= since)
        })

    # -- initiatives ------------------------------------------------------

    async def add_initiative(self, initiative: Initiative) -> Initiative:
        if initiative.id in self._initiatives:
            raise PersistenceError(f"Initiative already exists: {initiative.id}")
        self._initiatives[initiative.id] = initiative
        self._persist()
        return initiative

    async def get_initiative(self, initiative_id: str) -> Optional[Initiative]:
        return self._initiatives.get(initiative_id)

    async def update_initiative(self, initiative: Initiative) -> Initiative:
        if initiative.id not in self._initiatives:
            raise NotFoundError(f"Initiative not found: {initiative.id}")
        self._initiatives[initiative.id] = initiative
        self._persist()
        return initiative

    async def list_initiatives(
        self,
        organization_id: Optional[str] = None,
        person_id: Optional[str] = None,
        open_only: bool = False,
    ) -> List[Initiative]:
        initiatives = [
            i for i in self._initiatives.values()
            if (organization_id is None or i.organization_id == organization_id)
            and (person_id is None or i.person_id == person_id)
            and (not open_only or i.is_open)
        ]
        initiatives.sort(key=lambda i: (i.created_at, i.id))
        return initiatives

    # -- execution logs & processed events --------------------------------

    async def add_log(self, log: SyncExecutionLog) -> SyncExecutionLog:
        self._logs.append(log)
        self._persist()
        return log

    async def list_logs(
        self,
        sync_type: Optional[SyncType] = None,
        organization_id: Optional[str] = None,
    ) -> List[SyncExecutionLog]:
        return [
            log for log in self._logs
            if (sync_type is None or log.sync_type == sync_type)
            and (organization_id is None or log.organization_id == organization_id)
        ]

    async def has_processed_event(self, sync_type: SyncType, event_id: str) -> bool:
        return self._event_key(sync_type, event_id) in self._processed_events

    async def mark_event_processed(self, sync_type: SyncType, event_id: str) -> bool:
        key = self._event_key(sync_type, event_id)
        if key in self._processed_events:
            return False
        self._processed_events.add(key)
        self._persist()
        return True


class JsonFileStore(InMemoryStore):
    """
    InMemoryStore persisted to a single JSON file after every mutation.

    Suitable for a single process; the file is rewritten in full on save.
    When a save fails, memory is rolled back to the last state that reached
    disk, so a failed write never leaves the two disagreeing.
    """

    def __init__(self, path: Path):
        super().__init__()
        self._path = Path(path)
        self._committed: Dict[str, Any] = self._serialize()
        self._load()

    def _load(self) -> None:
        """Load state from disk"""
        if not self._path.exists():
            return

        try:
            with open(self._path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise PersistenceError(f"Failed to load store from {self._path}: {e}") from e

        self._restore(data)
        self._committed = data

        logger.info(
            "Loaded store from %s (%d people, %d changes, %d initiatives)",
            self._path, len(self._people), len(self._changes), len(self._initiatives),
        )

    def _serialize(self) -> Dict[str, Any]:
        return {
            "organizations": [o.model_dump(mode="json") for o in self._organizations.values()],
            "leaders": [l.model_dump(mode="json") for l in self._leaders.values()],
            "people": [p.model_dump(mode="json") for p in self._people.values()],
            "changes": [c.model_dump(mode="json") for c in self._changes.values()],
            "initiatives": [i.model_dump(mode="json") for i in self._initiatives.values()],
            "logs": [l.model_dump(mode="json") for l in self._logs],
            "processed_events": sorted(self._processed_events),
        }

    def _restore(self, data: Dict[str, Any]) -> None:
        self._organizations = {
            o["id"]: Organization.model_validate(o) for o in data.get("organizations", [])
        }
        self._leaders = {l["id"]: Leader.model_validate(l) for l in data.get("leaders", [])}
        self._people = {p["id"]: Person.model_validate(p) for p in data.get("people", [])}
        self._changes = {c["id"]: PersonChange.model_validate(c) for c in data.get("changes", [])}
        self._initiatives = {
            i["id"]: Initiative.model_validate(i) for i in data.get("initiatives", [])
        }
        self._logs = [SyncExecutionLog.model_validate(l) for l in data.get("logs", [])]
        self._processed_events = set(data.get("processed_events", []))

    def _persist(self) -> None:
        """Save state to disk, or roll memory back to the last saved state"""
        data = self._serialize()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            tmp_path.replace(self._path)
        except (IOError, OSError) as e:
            self._restore(self._committed)
            logger.error("Failed to save store to %s, rolled back the last change: %s", self._path, e)
            raise PersistenceError(f"Failed to save store to {self._path}: {e}") from e
        self._committed = data
