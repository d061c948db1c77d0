"""Interfaces to the two external systems kept in step.

The engine never talks to a concrete API. It is handed a
``WorkTrackingClient`` and a ``DocumentClient`` per configuration by a
``ClientFactory`` named in configuration as ``"package.module:attribute"``.

Client methods may be plain functions (they are run in a worker thread)
or coroutine functions (they are awaited directly).
"""

from __future__ import annotations

import importlib
import logging
from datetime import datetime
from typing import Any, Callable, NamedTuple, Protocol

from pydantic import BaseModel, field_validator

from .models import (
    EntityKind,
    EntityPayload,
    SyncPairConfig,
    content_hash,
    ensure_utc,
)

logger = logging.getLogger(__name__)


class RemoteEntity(BaseModel):
    """A planning entity as observed in one of the two systems.

    Attributes:
        entity_id: Logical identifier shared by both systems.
        native_id: The system's own identifier (issue id, section id).
        updated_at: Last-modified time, when the system reports one.
        payload: Typed entity content.
    """

    entity_id: str
    native_id: str | None = None
    updated_at: datetime | None = None
    payload: EntityPayload

    model_config = {"frozen": True}

    @field_validator("updated_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @property
    def kind(self) -> EntityKind:
        return EntityKind(self.payload.kind)

    @property
    def hash(self) -> str:
        """Normalised content hash of the payload."""
        return content_hash(self.payload)


class ParsedDocument(BaseModel):
    """Result of parsing a planning document.

    Attributes:
        elements: Raw structural elements as extracted (opaque to the engine).
        planning_tree: Every planning entity found in the document.
        last_modified: Document-level modification time, used for entities
            without their own timestamp.
    """

    elements: list[dict[str, Any]] = []
    planning_tree: list[RemoteEntity] = []
    last_modified: datetime | None = None

    model_config = {"frozen": True}

    @field_validator("last_modified")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


class WorkTrackingClient(Protocol):
    """Query/mutate interface of the work-tracking system."""

    def query_changed_since(
        self, team_id: str, since: datetime | None
    ) -> list[RemoteEntity]:
        """Return entities of *team_id* modified after *since*.

        ``since=None`` returns every entity of the team.
        """
        ...  # pragma: no cover

    def list_entity_ids(self, team_id: str) -> list[str]:
        """Return the logical ids of every live entity of *team_id*."""
        ...  # pragma: no cover

    def find_entity(self, entity_id: str) -> RemoteEntity | None:
        """Look an entity up by logical id, ``None`` if absent."""
        ...  # pragma: no cover

    def create_entity(
        self, kind: EntityKind, payload: Any, entity_id: str
    ) -> str:
        """Create an entity and return its native id.

        The entity must be reported with *entity_id* by later queries.
        """
        ...  # pragma: no cover

    def update_entity(self, native_id: str, payload: Any) -> None:
        ...  # pragma: no cover

    def delete_entity(self, native_id: str) -> None:
        ...  # pragma: no cover


class DocumentClient(Protocol):
    """Read/write interface of the document system."""

    def parse(self, document_ref: str) -> ParsedDocument:
        """Parse *document_ref* into its planning tree."""
        ...  # pragma: no cover

    def create_section(
        self, document_ref: str, kind: EntityKind, payload: Any, entity_id: str
    ) -> str:
        """Insert a section for a new entity and return its section id.

        The section must be parsed back with *entity_id*.
        """
        ...  # pragma: no cover

    def update_section(
        self, document_ref: str, section_id: str, payload: Any
    ) -> None:
        ...  # pragma: no cover

    def delete_section(self, document_ref: str, section_id: str) -> None:
        ...  # pragma: no cover


class ClientPair(NamedTuple):
    """The two clients one configuration synchronizes between."""

    work_tracking: WorkTrackingClient
    document: DocumentClient


ClientFactory = Callable[[SyncPairConfig], Any]


def load_client_factory(path: str) -> Callable[[SyncPairConfig], ClientPair]:
    """Import a client factory from a ``"module:attribute"`` path.

    The factory is called with a ``SyncPairConfig`` and must return a
    ``(work_tracking_client, document_client)`` pair.

    Args:
        path: Import path such as ``"mypkg.clients:build_clients"``.

    Returns:
        A callable returning a ``ClientPair``.

    Raises:
        ValueError: If the path is malformed, cannot be imported, or does
            not name a callable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(
            f"Invalid client factory '{path}': expected 'module:attribute'"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(
            f"Cannot import client factory module '{module_name}': {e}"
        ) from e

    factory = module
    for part in attr.split("."):
        try:
            factory = getattr(factory, part)
        except AttributeError as e:
            raise ValueError(
                f"Module '{module_name}' has no attribute '{attr}'"
            ) from e
    if not callable(factory):
        raise ValueError(f"Client factory '{path}' is not callable")

    logger.info("Loaded client factory %s", path)

    def build(config: SyncPairConfig) -> ClientPair:
        work_tracking, document = factory(config)
        return ClientPair(work_tracking=work_tracking, document=document)

    return build
