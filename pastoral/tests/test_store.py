"""Tests for the in-memory and JSON-file data stores."""

import json
import pytest
from datetime import timedelta
from unittest.mock import patch

from pastoral.common.errors import NotFoundError, PersistenceError
from pastoral.common.schemas import (
    Initiative,
    InitiativeStatus,
    InitiativeType,
    JobStatus,
    Leader,
    SyncExecutionLog,
    SyncType,
)


class TestPeople:
    @pytest.mark.asyncio
    async def test_find_by_member_id(self, store, add_person):
        person = await add_person("m-1")
        assert await store.find_person_by_member_id("org-1", "m-1") == person
        assert await store.find_person_by_member_id("org-2", "m-1") is None

    @pytest.mark.asyncio
    async def test_member_key_is_unique_per_organization(self, store, add_person):
        await add_person("m-1")
        with pytest.raises(PersistenceError):
            await add_person("m-1")

    @pytest.mark.asyncio
    async def test_delete_missing_person_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.delete_person("per_missing")

    @pytest.mark.asyncio
    async def test_default_leader_is_lowest_id(self, store):
        await store.save_leader(Leader(id="leader-0", organization_id="org-1"))
        leader = await store.get_default_leader("org-1")
        assert leader.id == "leader-0"
        assert await store.get_default_leader("org-unknown") is None

    @pytest.mark.asyncio
    async def test_leader_requires_organization(self, store):
        with pytest.raises(NotFoundError):
            await store.save_leader(Leader(id="leader-x", organization_id="org-missing"))

    @pytest.mark.asyncio
    async def test_revert_restores_previous_version(self, store, add_person):
        person = await add_person(marital_status="single")
        await store.save_person(person.model_copy(update={"marital_status": "married"}))

        await store.revert_person(person.id, person)

        assert (await store.get_person(person.id)).marital_status == "single"

    @pytest.mark.asyncio
    async def test_revert_without_previous_removes_insert(self, store, add_person):
        person = await add_person("m-9")

        await store.revert_person(person.id, None)
        await store.revert_person(person.id, None)

        assert await store.find_person_by_member_id("org-1", "m-9") is None


class TestChanges:
    @pytest.mark.asyncio
    async def test_unprocessed_order_is_urgency_then_oldest(self, store, add_person, add_change, clock):
        person = await add_person()
        low = await add_change(person.id, urgency_score=4)
        clock.advance(minutes=1)
        high_new = await add_change(person.id, urgency_score=9, detected_at=clock())
        high_old = await add_change(person.id, urgency_score=9, detected_at=clock() - timedelta(hours=1))

        changes = await store.list_unprocessed_changes()

        assert [c.id for c in changes] == [high_old.id, high_new.id, low.id]
        assert len(await store.list_unprocessed_changes(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_claim_is_compare_and_swap(self, store, add_person, add_change, clock):
        person = await add_person()
        change = await add_change(person.id)

        assert await store.claim_change(change.id, clock(), enhanced_score=6, ai_analysis={"a": 1})
        assert not await store.claim_change(change.id, clock(), enhanced_score=2)

        stored = await store.get_change(change.id)
        assert stored.enhanced_score == 6
        assert stored.processed_at == clock()
        assert await store.list_unprocessed_changes() == []

    @pytest.mark.asyncio
    async def test_claim_unknown_change_raises(self, store, clock):
        with pytest.raises(NotFoundError):
            await store.claim_change("chg_missing", clock())

    @pytest.mark.asyncio
    async def test_generation_candidates_use_effective_score(self, store, add_person, add_change, clock):
        person = await add_person()
        enhanced = await add_change(person.id, urgency_score=4)
        heuristic = await add_change(person.id, urgency_score=7)
        unprocessed = await add_change(person.id, urgency_score=9)
        await store.claim_change(enhanced.id, clock(), enhanced_score=8)
        await store.claim_change(heuristic.id, clock())

        candidates = await store.list_generation_candidates(organization_id="org-1")

        assert [c.id for c in candidates] == [enhanced.id, heuristic.id]
        assert unprocessed.id not in {c.id for c in candidates}

    @pytest.mark.asyncio
    async def test_link_is_compare_and_swap(self, store, add_person, add_change, clock):
        person = await add_person()
        change = await add_change(person.id)
        await store.claim_change(change.id, clock())

        assert await store.link_change(change.id, "ini_a", clock())
        assert not await store.link_change(change.id, "ini_b", clock())
        assert (await store.get_change(change.id)).initiative_id == "ini_a"
        assert await store.list_generation_candidates() == []

    @pytest.mark.asyncio
    async def test_organizations_with_work(self, store, add_person, add_change, clock):
        person = await add_person()
        old = await add_change(person.id, detected_at=clock() - timedelta(days=10))
        await add_change(person.id)
        await store.claim_change(old.id, clock())

        assert await store.organizations_with_unprocessed_changes() == ["org-1"]
        assert await store.organizations_with_generation_work() == ["org-1"]
        assert await store.organizations_with_generation_work(since=clock() - timedelta(days=7)) == []


    @pytest.mark.asyncio
    async def test_add_changes_is_all_or_nothing(self, store, add_person, add_change):
        from pastoral.common.schemas import ChangeType, PersonChange

        person = await add_person()
        existing = await add_change(person.id)
        fresh = PersonChange(
            person_id=person.id, organization_id="org-1",
            change_type=ChangeType.PERSONAL_DATA, urgency_score=5,
        )

        with pytest.raises(PersistenceError):
            await store.add_changes([fresh, existing])

        assert await store.get_change(fresh.id) is None
        assert [c.id for c in await store.add_changes([fresh])] == [fresh.id]


class TestInitiativesAndEvents:
    def _initiative(self, person_id, status=InitiativeStatus.PENDING):
        return Initiative(
            organization_id="org-1",
            leader_id="leader-1",
            person_id=person_id,
            type=InitiativeType.MESSAGE,
            title="t",
            priority=5,
            status=status,
        )

    @pytest.mark.asyncio
    async def test_count_open_initiatives(self, store):
        await store.add_initiative(self._initiative("per_1"))
        await store.add_initiative(self._initiative("per_1", InitiativeStatus.IN_PROGRESS))
        await store.add_initiative(self._initiative("per_1", InitiativeStatus.COMPLETED))
        await store.add_initiative(self._initiative("per_2"))

        assert await store.count_open_initiatives("per_1") == 2

    @pytest.mark.asyncio
    async def test_update_unknown_initiative_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.update_initiative(self._initiative("per_1"))

    @pytest.mark.asyncio
    async def test_processed_events_are_keyed_by_type(self, store):
        assert await store.mark_event_processed(SyncType.WEBHOOK, "evt-1")
        assert not await store.mark_event_processed(SyncType.WEBHOOK, "evt-1")
        assert await store.has_processed_event(SyncType.WEBHOOK, "evt-1")
        assert not await store.has_processed_event(SyncType.LLM_SCORING, "evt-1")


class TestJsonFileStore:
    @pytest.mark.asyncio
    async def test_state_survives_reload(self, tmp_path, clock):
        from pastoral.common.schemas import ChangeType, Organization, Person, PersonChange
        from pastoral.common.store import JsonFileStore

        path = tmp_path / "data.json"
        store = JsonFileStore(path)
        await store.save_organization(Organization(id="org-1", name="Igreja"))
        await store.save_leader(Leader(id="leader-1", organization_id="org-1"))
        person = await store.save_person(Person(organization_id="org-1", inchurch_member_id="m-1", name="Ana"))
        change = await store.add_change(PersonChange(
            person_id=person.id,
            organization_id="org-1",
            change_type=ChangeType.PERSONAL_DATA,
            urgency_score=5,
            detected_at=clock(),
        ))
        await store.claim_change(change.id, clock(), enhanced_score=6)
        await store.mark_event_processed(SyncType.WEBHOOK, "evt-1")
        await store.add_log(SyncExecutionLog(sync_type=SyncType.WEBHOOK, status=JobStatus.COMPLETED))

        reloaded = JsonFileStore(path)

        assert (await reloaded.get_person(person.id)).name == "Ana"
        assert (await reloaded.get_change(change.id)).enhanced_score == 6
        assert await reloaded.has_processed_event(SyncType.WEBHOOK, "evt-1")
        assert len(await reloaded.list_logs(sync_type=SyncType.WEBHOOK)) == 1
        assert not (tmp_path / "data.json.tmp").exists()

    def test_corrupt_file_raises_persistence_error(self, tmp_path):
        from pastoral.common.store import JsonFileStore

        path = tmp_path / "data.json"
        path.write_text("{broken")
        with pytest.raises(PersistenceError):
            JsonFileStore(path)

    @pytest.mark.asyncio
    async def test_written_file_is_plain_json(self, tmp_path):
        from pastoral.common.schemas import Organization
        from pastoral.common.store import JsonFileStore

        path = tmp_path / "nested" / "data.json"
        store = JsonFileStore(path)
        await store.save_organization(Organization(id="org-1", name="Igreja"))

        data = json.loads(path.read_text())
        assert data["organizations"][0]["id"] == "org-1"

    @pytest.mark.asyncio
    async def test_failed_save_rolls_memory_back(self, tmp_path, clock):
        from pastoral.common.schemas import ChangeType, Organization, Person, PersonChange
        from pastoral.common.store import JsonFileStore

        path = tmp_path / "data.json"
        store = JsonFileStore(path)
        await store.save_organization(Organization(id="org-1", name="Igreja"))
        person = await store.save_person(Person(organization_id="org-1", inchurch_member_id="m-1", name="Ana"))
        change = await store.add_change(PersonChange(
            person_id=person.id,
            organization_id="org-1",
            change_type=ChangeType.RELATIONSHIP,
            urgency_score=7,
            detected_at=clock(),
        ))

        with patch("pastoral.common.store.open", side_effect=OSError("disk full"), create=True):
            with pytest.raises(PersistenceError):
                await store.claim_change(change.id, clock(), enhanced_score=8)
            with pytest.raises(PersistenceError):
                await store.delete_person(person.id)

        assert (await store.get_change(change.id)).processed_at is None
        assert await store.get_person(person.id) is not None
        assert await store.claim_change(change.id, clock(), enhanced_score=8)
        assert (await JsonFileStore(path).get_change(change.id)).enhanced_score == 8
