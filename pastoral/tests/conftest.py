"""Shared fixtures: a seeded in-memory store, a controllable clock and LLM mocks."""

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
import pytest_asyncio

FIXED_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
SIGNING_SECRET = "whsec_test_secret"


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def signing_secret():
    return SIGNING_SECRET


@pytest.fixture
def sign():
    """Compute the InChurch signature header for a raw body."""
    def _sign(body: bytes, secret: str = SIGNING_SECRET) -> str:
        return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return _sign


@pytest_asyncio.fixture
async def store():
    """In-memory store with one organization and its leader."""
    from pastoral.common.schemas import Leader, Organization
    from pastoral.common.store import InMemoryStore

    store = InMemoryStore()
    await store.save_organization(Organization(
        id="org-1",
        name="Igreja Central",
        inchurch_api_key="key-1",
        inchurch_secret="secret-1",
    ))
    await store.save_leader(Leader(id="leader-1", organization_id="org-1", name="Pastor João"))
    return store


@pytest.fixture
def add_person(store, clock):
    """Saves a person last edited a month before the fixed clock."""
    async def _add(member_id: str = "m-1", organization_id: str = "org-1", **fields):
        from pastoral.common.schemas import Person

        fields.setdefault("name", "Maria Silva")
        fields.setdefault("leader_id", "leader-1")
        fields.setdefault("created_at", clock() - timedelta(days=30))
        fields.setdefault("updated_at", fields["created_at"])
        return await store.save_person(Person(
            organization_id=organization_id,
            inchurch_member_id=member_id,
            **fields,
        ))
    return _add


@pytest.fixture
def add_change(store, clock):
    async def _add(person_id: str, **fields):
        from pastoral.common.schemas import ChangeKind, ChangeType, PersonChange

        fields.setdefault("organization_id", "org-1")
        fields.setdefault("change_type", ChangeType.PERSONAL_DATA)
        fields.setdefault("change_kind", ChangeKind.UPDATE)
        fields.setdefault("urgency_score", 5)
        fields.setdefault("detected_at", clock())
        return await store.add_change(PersonChange(person_id=person_id, **fields))
    return _add


@pytest.fixture
def make_llm():
    """Mock LLMClient whose ``complete`` returns the given JSON (or raises)."""
    def _make(response=None, error=None, prompt_tokens=600, completion_tokens=200):
        from pastoral.common.llm_client import LLMCompletion

        llm = Mock()
        llm.is_available = True
        llm.provider = "openai"
        llm.model = "gpt-4o-mini"
        if error is not None:
            llm.complete.side_effect = error
        else:
            text = response if isinstance(response, str) else json.dumps(response)
            llm.complete.return_value = LLMCompletion(
                text=text,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            )
        return llm
    return _make


class FakeDirectoryClient:
    """Stands in for InChurchClient: serves canned member pages and records calls."""

    def __init__(self, pages=None, error=None, healthy=(True, None)):
        self.pages = pages or []
        self.error = error
        self.healthy = healthy
        self.requested = []
        self.closed = False

    async def get_members(self, page=1, limit=50, filters=None):
        from pastoral.common.inchurch_client import MembersPage

        self.requested.append((page, limit))
        if self.error is not None:
            raise self.error
        members = self.pages[page - 1] if page <= len(self.pages) else []
        return MembersPage(members=members, page=page, limit=limit, has_more=page < len(self.pages))

    async def get_member(self, member_id):
        self.requested.append(member_id)
        if self.error is not None:
            raise self.error
        for members in self.pages:
            for member in members:
                if str(member.get("id")) == member_id:
                    return member
        return None

    async def check_health(self):
        return self.healthy

    def get_rate_limit_info(self):
        return {"requestsRemaining": 200}

    def get_cache_stats(self):
        return {"hits": 0}

    async def aclose(self):
        self.closed = True


@pytest.fixture
def directory():
    return FakeDirectoryClient()
