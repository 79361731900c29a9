"""
Directory Sync

Polls an organization's InChurch directory page by page and reconciles it
with the stored people: unknown members are created with a creation change,
known members are diffed and get one change per changed tracked field.
A person edited locally inside the review window keeps the fields its
conflict policy protects, and one conflict change describes them. After the
pages, stored people with a birthday inside the lookahead window get one
upcoming-date change per birthday.

A person write and the changes it produced are one unit: if the changes
cannot be stored, the person is put back so the next pass detects them again.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..common.errors import NotFoundError, PastoralError, ValidationError
from ..common.inchurch_client import InChurchClient
from ..common.rate_limiter import RateLimiter
from ..common.schemas import (
    ChangeKind,
    Organization,
    Person,
    PersonChange,
    SyncSource,
    TRACKED_FIELDS,
    canonical_field,
    utc_now,
)
from ..common.store import DataStore
from .conflicts import ConflictResolver, Resolution
from .delta import DeltaDetector, FieldChange, member_value
from .scorer import HeuristicScorer
from .special_dates import UpcomingBirthday, upcoming_birthday

logger = logging.getLogger("pastoral.ingest.sync")

ClientFactory = Callable[[Organization], InChurchClient]


@dataclass
class OrgSyncResult:
    """Counts for one organization's polling pass."""
    organization_id: str
    total_records: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    conflicts: int = 0
    special_dates: int = 0
    changes_recorded: int = 0
    pages: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRecords": self.total_records,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "conflicts": self.conflicts,
            "specialDates": self.special_dates,
            "changesRecorded": self.changes_recorded,
            "pages": self.pages,
            "errors": len(self.errors),
        }


class DirectorySyncService:
    """Reconciles stored people with the InChurch directory."""

    def __init__(
        self,
        store: DataStore,
        client_factory: ClientFactory,
        scorer: Optional[HeuristicScorer] = None,
        delta_detector: Optional[DeltaDetector] = None,
        conflict_resolver: Optional[ConflictResolver] = None,
        page_size: int = 100,
        birthday_lookahead_days: int = 30,
        page_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._client_factory = client_factory
        self._scorer = scorer or HeuristicScorer()
        self._delta = delta_detector or DeltaDetector()
        self._resolver = conflict_resolver or ConflictResolver()
        self._page_size = page_size
        self._birthday_lookahead_days = birthday_lookahead_days
        self._page_limiter = page_limiter or RateLimiter.fixed_delay(0.3)
        self._clock = clock

    async def sync_organization(self, organization: Organization) -> OrgSyncResult:
        """
        Pull every directory page for one organization.

        Member-level failures are collected; directory API failures propagate
        so the job can record the organization as failed.
        """
        if not organization.has_directory_credentials:
            raise ValidationError(f"Missing InChurch credentials for organization {organization.id}")

        leader = await self._store.get_default_leader(organization.id)
        if leader is None:
            raise NotFoundError(f"No leader found for organization {organization.id}")

        result = OrgSyncResult(organization_id=organization.id)
        client = self._client_factory(organization)
        try:
            page = 1
            has_more = True
            while has_more:
                await self._page_limiter.acquire()
                logger.info("Fetching page %d for organization %s", page, organization.id)
                members_page = await client.get_members(page=page, limit=self._page_size)
                result.pages += 1

                for member in members_page.members:
                    result.total_records += 1
                    try:
                        await self._sync_member(organization.id, leader.id, member, result)
                    except PastoralError as e:
                        error = f"Failed to sync member {member.get('id')}: {e}"
                        logger.warning(error)
                        result.errors.append(error)

                has_more = members_page.has_more and bool(members_page.members)
                page += 1
        finally:
            await client.aclose()

        await self._scan_special_dates(organization.id, result)

        logger.info(
            "Organization %s synced: %d records, %d created, %d updated, %d conflicts, "
            "%d upcoming birthdays, %d changes",
            organization.id, result.total_records, result.created, result.updated,
            result.conflicts, result.special_dates, result.changes_recorded,
        )
        return result

    async def sync_member(self, organization: Organization, member_id: str) -> OrgSyncResult:
        """
        Fetch and reconcile a single directory member.

        Raises:
            ValidationError: organization has no directory credentials
            NotFoundError: no default leader, or the directory has no such member
        """
        if not organization.has_directory_credentials:
            raise ValidationError(f"Missing InChurch credentials for organization {organization.id}")

        leader = await self._store.get_default_leader(organization.id)
        if leader is None:
            raise NotFoundError(f"No leader found for organization {organization.id}")

        client = self._client_factory(organization)
        try:
            member = await client.get_member(member_id)
        finally:
            await client.aclose()
        if member is None:
            raise NotFoundError(f"Member {member_id} not found in the directory of {organization.id}")

        result = OrgSyncResult(organization_id=organization.id, total_records=1)
        await self._sync_member(organization.id, leader.id, member, result)
        return result

    async def check_directory(self, organization: Organization) -> Dict[str, Any]:
        """Check the organization's directory API and report client limits."""
        if not organization.has_directory_credentials:
            raise ValidationError(f"Missing InChurch credentials for organization {organization.id}")

        client = self._client_factory(organization)
        try:
            healthy, error = await client.check_health()
            return {
                "organizationId": organization.id,
                "healthy": healthy,
                "error": error,
                "rateLimit": client.get_rate_limit_info(),
                "cache": client.get_cache_stats(),
            }
        finally:
            await client.aclose()

    async def _sync_member(
        self,
        organization_id: str,
        leader_id: str,
        member: Dict[str, Any],
        result: OrgSyncResult,
    ) -> None:
        member_id = member.get("id")
        if member_id is None or str(member_id).strip() == "":
            raise ValidationError("member without id")
        member_id = str(member_id)
        now = self._clock()

        existing = await self._store.find_person_by_member_id(organization_id, member_id)
        if existing is None:
            person = Person(
                organization_id=organization_id,
                leader_id=leader_id,
                inchurch_member_id=member_id,
                profile_data=dict(member),
                sync_source=SyncSource.POLLING,
                last_synced_at=now,
                **self._person_fields(member),
            )
            person = await self._store.save_person(person)
            creation = PersonChange(
                person_id=person.id,
                organization_id=organization_id,
                change_type=self._scorer.classify(ChangeKind.CREATION),
                change_kind=ChangeKind.CREATION,
                new_value={"name": person.name, "inchurchMemberId": member_id},
                detected_at=now,
                urgency_score=self._scorer.score(ChangeKind.CREATION),
            )
            await self._record(person.id, None, [creation])
            result.created += 1
            result.changes_recorded += 1
            return

        field_changes = self._delta.detect_changes(existing, member)
        resolution = self._resolver.resolve(existing, member, field_changes, now)

        fields = self._person_fields(member)
        for held in resolution.held:
            fields.pop(canonical_field(held.field), None)
        update = {**fields, "profile_data": dict(member), "last_synced_at": now}
        if not resolution.has_conflict:
            # Held fields leave the local edit's provenance and timestamp in place.
            update["sync_source"] = SyncSource.POLLING
            update["updated_at"] = now if field_changes else existing.updated_at
        await self._store.save_person(existing.model_copy(update=update))

        if not field_changes:
            result.unchanged += 1
            return

        logger.debug(
            "Member %s changed %s (%s significance)",
            member_id, ", ".join(c.field for c in field_changes), self._delta.significance(field_changes),
        )
        changes = [self._field_change(existing, change, now) for change in resolution.applied]
        if resolution.has_conflict and not await self._conflict_recorded(existing, resolution.held):
            changes.append(self._conflict_change(existing, resolution, now))
        await self._record(existing.id, existing, changes)

        if resolution.applied:
            result.updated += 1
        if resolution.has_conflict:
            result.conflicts += 1
        result.changes_recorded += len(changes)

    async def _record(self, person_id: str, previous: Optional[Person], changes: List[PersonChange]) -> None:
        """Store the changes of a person write, or undo the write when they cannot be stored."""
        try:
            await self._store.add_changes(changes)
        except Exception:
            try:
                await self._store.revert_person(person_id, previous)
            except PastoralError as e:
                logger.error("Failed to revert person %s after losing its changes: %s", person_id, e)
            raise

    async def _conflict_recorded(self, person: Person, held: List[FieldChange]) -> bool:
        """True when the same held fields were already reported since the local edit."""
        fields = sorted(c.field for c in held)
        for change in await self._store.list_changes_for_person(person.id):
            if (
                change.change_kind == ChangeKind.CONFLICT
                and sorted(change.changed_fields) == fields
                and change.detected_at >= person.updated_at
            ):
                return True
        return False

    def _conflict_change(self, person: Person, resolution: Resolution, now: datetime) -> PersonChange:
        fields = [c.field for c in resolution.held]
        return PersonChange(
            person_id=person.id,
            organization_id=person.organization_id,
            change_type=self._scorer.classify(ChangeKind.CONFLICT, fields),
            change_kind=ChangeKind.CONFLICT,
            changed_fields=fields,
            old_value={c.field: c.old_value for c in resolution.held},
            new_value=resolution.report,
            detected_at=now,
            urgency_score=self._scorer.score(ChangeKind.CONFLICT, fields),
        )

    async def _scan_special_dates(self, organization_id: str, result: OrgSyncResult) -> None:
        now = self._clock()
        for person in await self._store.list_people(organization_id):
            upcoming = upcoming_birthday(person.birth_date, now.date(), self._birthday_lookahead_days)
            if upcoming is None:
                continue
            try:
                if await self._birthday_recorded(person.id, upcoming):
                    continue
                await self._store.add_changes([self._birthday_change(person, upcoming, now)])
            except PastoralError as e:
                error = f"Failed to record upcoming birthday of person {person.id}: {e}"
                logger.warning(error)
                result.errors.append(error)
                continue
            result.special_dates += 1
            result.changes_recorded += 1

    async def _birthday_recorded(self, person_id: str, upcoming: UpcomingBirthday) -> bool:
        birthday = upcoming.occurrence.isoformat()
        for change in await self._store.list_changes_for_person(person_id):
            if (
                change.change_kind == ChangeKind.UPCOMING_DATE
                and isinstance(change.new_value, dict)
                and change.new_value.get("birthday") == birthday
            ):
                return True
        return False

    def _birthday_change(self, person: Person, upcoming: UpcomingBirthday, now: datetime) -> PersonChange:
        return PersonChange(
            person_id=person.id,
            organization_id=person.organization_id,
            change_type=self._scorer.classify(ChangeKind.UPCOMING_DATE),
            change_kind=ChangeKind.UPCOMING_DATE,
            new_value=upcoming.to_dict(),
            detected_at=now,
            urgency_score=self._scorer.score_upcoming_birthday(upcoming.days_until),
        )

    def _field_change(self, person: Person, change: FieldChange, now: datetime) -> PersonChange:
        fields = [change.field]
        return PersonChange(
            person_id=person.id,
            organization_id=person.organization_id,
            change_type=self._scorer.classify(ChangeKind.UPDATE, fields),
            change_kind=ChangeKind.UPDATE,
            changed_fields=fields,
            old_value=change.old_value,
            new_value=change.new_value,
            detected_at=now,
            urgency_score=self._scorer.score(ChangeKind.UPDATE, fields),
            critical=self._scorer.is_critical(ChangeKind.UPDATE, fields),
        )

    @staticmethod
    def _person_fields(member: Dict[str, Any]) -> Dict[str, Any]:
        fields = {}
        for field_name, attr in TRACKED_FIELDS.items():
            value = member_value(member, field_name)
            if isinstance(value, str) and value.strip() == "":
                value = None
            fields[attr] = value
        fields["name"] = fields.get("name") or "Nome não informado"
        return fields
