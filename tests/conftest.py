"""Shared pytest fixtures for plansync tests.

Provides a controllable clock and in-memory fakes of both external
systems. The fakes stamp every write with the clock, so tests move time
explicitly with ``clock.advance()`` between passes.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from plansync.sync.clients import ClientPair, ParsedDocument, RemoteEntity
from plansync.sync.models import (
    EntityKind,
    StoryPayload,
    SyncPairConfig,
)
from plansync.sync.store import SyncStateStore

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 60) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def story(title: str, **fields: Any) -> StoryPayload:
    """Build a story payload."""
    return StoryPayload(title=title, **fields)


class _FakeSystem:
    """Shared bookkeeping for the two fakes."""

    prefix = "X"

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.items: dict[str, RemoteEntity] = {}
        self.created: list[str] = []
        self.updated: list[str] = []
        self.deleted: list[str] = []
        self.fail_entities: set[str] = set()
        self.unavailable = False
        self._seq = 0

    def put(
        self,
        entity_id: str,
        payload: Any,
        updated_at: datetime | None = None,
        native_id: str | None = None,
    ) -> RemoteEntity:
        """Insert or replace an entity as if edited by a user."""
        if native_id is None:
            existing = self.items.get(entity_id)
            if existing is not None:
                native_id = existing.native_id
            else:
                self._seq += 1
                native_id = f"{self.prefix}-{self._seq}"
        entity = RemoteEntity(
            entity_id=entity_id,
            native_id=native_id,
            updated_at=updated_at or self.clock(),
            payload=payload,
        )
        self.items[entity_id] = entity
        return entity

    def remove(self, entity_id: str) -> None:
        del self.items[entity_id]

    def title(self, entity_id: str) -> str:
        return self.items[entity_id].payload.title

    def _by_native(self, native_id: str) -> str:
        for entity_id, entity in self.items.items():
            if entity.native_id == native_id:
                return entity_id
        raise KeyError(f"unknown native id {native_id}")

    def _check(self, entity_id: str) -> None:
        if entity_id in self.fail_entities:
            raise RuntimeError(f"write rejected for {entity_id}")


class FakeWorkTracking(_FakeSystem):
    """In-memory work-tracking system."""

    prefix = "WI"

    def query_changed_since(self, team_id, since):
        if self.unavailable:
            raise ConnectionError("work tracking unavailable")
        return [
            e
            for e in self.items.values()
            if since is None or e.updated_at is None or e.updated_at > since
        ]

    def list_entity_ids(self, team_id):
        if self.unavailable:
            raise ConnectionError("work tracking unavailable")
        return list(self.items)

    def find_entity(self, entity_id):
        return self.items.get(entity_id)

    def create_entity(self, kind: EntityKind, payload, entity_id):
        self._check(entity_id)
        entity = self.put(entity_id, payload)
        self.created.append(entity_id)
        return entity.native_id

    def update_entity(self, native_id, payload):
        entity_id = self._by_native(native_id)
        self._check(entity_id)
        self.put(entity_id, payload)
        self.updated.append(entity_id)

    def delete_entity(self, native_id):
        entity_id = self._by_native(native_id)
        self._check(entity_id)
        self.remove(entity_id)
        self.deleted.append(entity_id)


class FakeDocument(_FakeSystem):
    """In-memory planning document."""

    prefix = "sec"

    def parse(self, document_ref):
        if self.unavailable:
            raise ConnectionError("document unavailable")
        return ParsedDocument(
            elements=[
                {"type": "heading", "text": e.payload.title}
                for e in self.items.values()
            ],
            planning_tree=list(self.items.values()),
        )

    def create_section(self, document_ref, kind: EntityKind, payload, entity_id):
        self._check(entity_id)
        entity = self.put(entity_id, payload)
        self.created.append(entity_id)
        return entity.native_id

    def update_section(self, document_ref, section_id, payload):
        entity_id = self._by_native(section_id)
        self._check(entity_id)
        self.put(entity_id, payload)
        self.updated.append(entity_id)

    def delete_section(self, document_ref, section_id):
        entity_id = self._by_native(section_id)
        self._check(entity_id)
        self.remove(entity_id)
        self.deleted.append(entity_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def work_tracking(clock):
    return FakeWorkTracking(clock)


@pytest.fixture
def document(clock):
    return FakeDocument(clock)


@pytest.fixture
def pair_config():
    return SyncPairConfig(name="roadmap", document_ref="doc-1", team_id="ENG")


@pytest.fixture
def client_factory(work_tracking, document):
    """Factory returning the shared fakes for every configuration."""

    def build(config: SyncPairConfig) -> ClientPair:
        return ClientPair(work_tracking, document)

    return build


@pytest.fixture
async def store(tmp_path):
    """Opened SQLite state store in a temporary directory."""
    s = SyncStateStore(tmp_path / "state.db")
    await s.open()
    yield s
    await s.close()
