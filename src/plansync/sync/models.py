"""Pydantic models for the synchronization engine.

Defines the core data contracts used across all sync modules:

- ``EntityKind``, ``Origin``, ``ChangeAction``: enums tagging a change.
- ``EpicPayload``, ``FeaturePayload``, ``StoryPayload``,
  ``EnablerPayload``: the planning entity variants, discriminated on
  ``kind`` (``EntityPayload``).
- ``Change``: one detected delta for one logical entity.
- ``Conflict``: a pair of same-entity changes from both origins.
- ``SyncPair``, ``SyncCursor``, ``SyncPairConfig``: what is synchronized
  and how far.
- ``EntitySnapshot``: per-entity link and archive hashes.
- ``SyncHistoryRecord``, ``ApplyOutcome``, ``PassReport``: pass results.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EntityKind(str, Enum):
    """Planning entity kinds shared by both systems."""

    EPIC = "epic"
    FEATURE = "feature"
    STORY = "story"
    ENABLER = "enabler"


class Origin(str, Enum):
    """System a change was detected in."""

    DOCUMENT = "document"
    WORK_TRACKING = "work_tracking"

    @property
    def opposite(self) -> Origin:
        """The system a change from this origin is applied to."""
        if self is Origin.DOCUMENT:
            return Origin.WORK_TRACKING
        return Origin.DOCUMENT


class ChangeAction(str, Enum):
    """What happened to an entity."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class SyncDirection(str, Enum):
    """Which origins a configuration propagates."""

    BIDIRECTIONAL = "bidirectional"
    DOCUMENT_TO_WORK_TRACKING = "document_to_work_tracking"
    WORK_TRACKING_TO_DOCUMENT = "work_tracking_to_document"

    def allows(self, origin: Origin) -> bool:
        """Return ``True`` if changes from *origin* may be applied."""
        if self is SyncDirection.BIDIRECTIONAL:
            return True
        if self is SyncDirection.DOCUMENT_TO_WORK_TRACKING:
            return origin is Origin.DOCUMENT
        return origin is Origin.WORK_TRACKING


class SyncCadence(str, Enum):
    """Scheduler bucket a configuration belongs to."""

    ON_DEMAND = "on_demand"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class ResolutionStrategy(str, Enum):
    """Conflict resolution strategies."""

    WORK_TRACKING_WINS = "work-tracking-wins"
    DOCUMENT_WINS = "document-wins"
    NEWER_WINS = "newer-wins"
    MANUAL = "manual"


class PassState(str, Enum):
    """States of one synchronization pass."""

    IDLE = "idle"
    DETECTING = "detecting"
    APPLYING_NON_CONFLICTING = "applying_non_conflicting"
    RESOLVING_CONFLICTS = "resolving_conflicts"
    APPLYING_RESOLVED = "applying_resolved"
    COMMITTED = "committed"
    FAILED = "failed"


class ApplyStatus(str, Enum):
    """Outcome of applying one change to its target system."""

    APPLIED = "applied"
    LINKED = "linked"
    SKIPPED = "skipped"
    HELD = "held"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Entity payloads (tagged by kind)
# ---------------------------------------------------------------------------


class EnablerType(str, Enum):
    """Categories of enabler work."""

    ARCHITECTURE = "architecture"
    INFRASTRUCTURE = "infrastructure"
    TECHNICAL_DEBT = "technical_debt"
    RESEARCH = "research"
    COMPLIANCE = "compliance"


class _PlanningItem(BaseModel):
    """Fields every planning entity carries."""

    title: str = Field(min_length=1)
    description: str = ""
    state: str | None = None
    labels: tuple[str, ...] = ()

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("labels")
    @classmethod
    def _normalise_labels(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        # Label order carries no meaning on either side.
        return tuple(sorted({label.strip() for label in value if label.strip()}))


class EpicPayload(_PlanningItem):
    """An epic: top of the planning hierarchy."""

    kind: Literal["epic"] = "epic"


class FeaturePayload(_PlanningItem):
    """A feature, optionally under an epic."""

    kind: Literal["feature"] = "feature"
    epic_id: str | None = None
    estimate: float | None = Field(default=None, ge=0)


class StoryPayload(_PlanningItem):
    """A user story, optionally under a feature."""

    kind: Literal["story"] = "story"
    feature_id: str | None = None
    estimate: float | None = Field(default=None, ge=0)
    acceptance_criteria: tuple[str, ...] = ()


class EnablerPayload(_PlanningItem):
    """An enabler, optionally under a feature or epic."""

    kind: Literal["enabler"] = "enabler"
    enabler_type: EnablerType | None = None
    parent_id: str | None = None
    estimate: float | None = Field(default=None, ge=0)


EntityPayload = Annotated[
    Union[EpicPayload, FeaturePayload, StoryPayload, EnablerPayload],
    Field(discriminator="kind"),
]

PAYLOAD_ADAPTER: TypeAdapter[Any] = TypeAdapter(EntityPayload)


def _normalise_text(text: str) -> str:
    text = text.lstrip("\ufeff").replace("\r\n", "\n")
    lines = [line.rstrip() for line in text.split("\n")]
    while lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines)


def _normalise_value(value: Any) -> Any:
    if isinstance(value, str):
        return _normalise_text(value)
    if isinstance(value, dict):
        return {k: _normalise_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalise_value(v) for v in value]
    return value


def content_hash(payload: BaseModel) -> str:
    """Compute a normalised SHA-256 hex digest of an entity payload.

    Strings are normalised (BOM, line endings, trailing whitespace) and
    keys sorted, so the hash is stable across systems that reformat text.
    Volatile data (timestamps, native ids) never lives on a payload, so it
    never affects the hash.
    """
    data = _normalise_value(payload.model_dump(mode="json"))
    encoded = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Pairs, cursors and configurations
# ---------------------------------------------------------------------------


class SyncPair(BaseModel):
    """A (document, work-tracking team) tuple: the unit of synchronization."""

    document_id: str = Field(min_length=1)
    team_id: str = Field(min_length=1)

    model_config = {"frozen": True}

    @property
    def pair_key(self) -> str:
        """Stable string key used by the state store."""
        return f"{self.document_id}::{self.team_id}"


class SyncCursor(BaseModel):
    """Watermark of the last committed pass for a pair."""

    pair_key: str
    document_id: str
    team_id: str
    timestamp: datetime

    model_config = {"frozen": True}

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class SyncPairConfig(BaseModel):
    """A named, schedulable synchronization configuration.

    Attributes:
        name: Unique configuration name.
        document_ref: Document identifier or URL.
        team_id: Work-tracking team identifier.
        direction: Which origins are propagated.
        cadence: Scheduler bucket.
        enabled: Disabled configurations are never run by the scheduler.
        auto_resolve: Resolve conflicts automatically with ``strategy``.
        strategy: Default strategy used when ``auto_resolve`` is set.
    """

    name: str = Field(min_length=1)
    document_ref: str = Field(min_length=1)
    team_id: str = Field(min_length=1)
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    cadence: SyncCadence = SyncCadence.HOURLY
    enabled: bool = True
    auto_resolve: bool = False
    strategy: ResolutionStrategy = ResolutionStrategy.WORK_TRACKING_WINS

    model_config = {"frozen": True}

    @property
    def pair(self) -> SyncPair:
        """The sync pair this configuration covers."""
        return SyncPair(document_id=self.document_ref, team_id=self.team_id)


# ---------------------------------------------------------------------------
# Changes and conflicts
# ---------------------------------------------------------------------------


class Change(BaseModel):
    """A detected delta for one logical entity.

    Attributes:
        change_id: Identifier of this change, unique within a pass.
        entity_id: Logical entity identifier shared by both systems.
        kind: Entity kind.
        origin: System the change was detected in.
        action: Created, updated or deleted.
        timestamp: Last-modified time on the origin side.
        payload: Current entity content (``None`` only for deletions).
    """

    change_id: str
    entity_id: str
    kind: EntityKind
    origin: Origin
    action: ChangeAction
    timestamp: datetime
    payload: Optional[EntityPayload] = None

    model_config = {"frozen": True}

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_payload(self) -> Change:
        if self.payload is None and self.action is not ChangeAction.DELETED:
            raise ValueError(
                f"{self.action.value} change for {self.entity_id} has no payload"
            )
        if self.payload is not None and self.payload.kind != self.kind.value:
            raise ValueError(
                f"payload kind '{self.payload.kind}' does not match "
                f"change kind '{self.kind.value}'"
            )
        return self

    @staticmethod
    def make_id(origin: Origin, entity_id: str, timestamp: datetime) -> str:
        """Build a deterministic change identifier."""
        stamp = ensure_utc(timestamp).strftime("%Y%m%dT%H%M%S%fZ")
        return f"{origin.value}-change-{entity_id}-{stamp}"

    @property
    def hash(self) -> str | None:
        """Content hash of the payload, ``None`` for deletions."""
        if self.payload is None:
            return None
        return content_hash(self.payload)


class Conflict(BaseModel):
    """Two same-entity changes from both origins within one pass.

    Resolution is atomic: either ``is_resolved`` is ``False`` and
    ``resolved_change`` is ``None``, or both are set together.
    """

    conflict_id: str
    pair_key: str
    entity_id: str
    kind: EntityKind
    document_change: Change | None = None
    work_tracking_change: Change | None = None
    is_resolved: bool = False
    strategy: ResolutionStrategy | None = None
    resolved_change: Change | None = None
    detected_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_resolution(self) -> Conflict:
        if self.is_resolved and self.resolved_change is None:
            raise ValueError(
                f"conflict {self.conflict_id} is resolved without a change"
            )
        if not self.is_resolved and self.resolved_change is not None:
            raise ValueError(
                f"conflict {self.conflict_id} has a change but is unresolved"
            )
        return self

    @staticmethod
    def make_id(pair_key: str, entity_id: str) -> str:
        """Deterministic conflict identifier for an entity of a pair."""
        return f"conflict:{pair_key}:{entity_id}"

    def change_for(self, origin: Origin) -> Change | None:
        """Return the change that came from *origin*."""
        if origin is Origin.DOCUMENT:
            return self.document_change
        return self.work_tracking_change


class EntitySnapshot(BaseModel):
    """Link and archive state of one entity at the last applied change.

    Attributes:
        pair_key: Pair the entity belongs to.
        entity_id: Logical entity identifier.
        kind: Entity kind.
        work_item_id: Native id in the work-tracking system.
        section_id: Section id in the document.
        document_hash: Content hash last synchronized on the document side.
        work_tracking_hash: Content hash last synchronized on the
            work-tracking side.
    """

    pair_key: str
    entity_id: str
    kind: EntityKind
    work_item_id: str | None = None
    section_id: str | None = None
    document_hash: str | None = None
    work_tracking_hash: str | None = None

    model_config = {"frozen": True}

    def hash_for(self, origin: Origin) -> str | None:
        """Archived hash for *origin*."""
        if origin is Origin.DOCUMENT:
            return self.document_hash
        return self.work_tracking_hash


# ---------------------------------------------------------------------------
# Pass results
# ---------------------------------------------------------------------------


class ApplyOutcome(BaseModel):
    """Result of applying one change to the opposite system.

    Attributes:
        change_id: The applied change.
        entity_id: Logical entity identifier.
        origin: Origin of the change.
        action: Action of the change.
        status: What happened.
        resolved: ``True`` when the change won a conflict.
        error: Error message when ``status`` is ``FAILED`` or a reason
            for ``SKIPPED``/``HELD``.
    """

    change_id: str
    entity_id: str
    origin: Origin
    action: ChangeAction
    status: ApplyStatus
    resolved: bool = False
    error: str | None = None

    model_config = {"frozen": True}

    @property
    def target(self) -> Origin:
        """System the change was applied to."""
        return self.origin.opposite


class SyncHistoryRecord(BaseModel):
    """One row per completed or failed pass. Append-only."""

    history_id: int | None = None
    pair_key: str
    config_name: str | None = None
    success: bool
    error: str | None = None
    document_created: int = 0
    document_updated: int = 0
    document_deleted: int = 0
    work_tracking_created: int = 0
    work_tracking_updated: int = 0
    work_tracking_deleted: int = 0
    failed_changes: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    started_at: datetime
    completed_at: datetime

    model_config = {"frozen": True}

    @property
    def created(self) -> int:
        """Created changes applied from both origins."""
        return self.document_created + self.work_tracking_created

    @property
    def updated(self) -> int:
        """Updated changes applied from both origins."""
        return self.document_updated + self.work_tracking_updated

    @property
    def deleted(self) -> int:
        """Deleted changes applied from both origins."""
        return self.document_deleted + self.work_tracking_deleted


class PassReport(BaseModel):
    """Aggregate result of one synchronization pass.

    Attributes:
        config_name: Name of the configuration that ran.
        pair_key: Pair synchronized.
        states: Every state the pass went through, in order.
        bootstrap: ``True`` when no cursor existed.
        outcomes: Per-change application results.
        conflicts: Conflicts detected this pass, in their final state.
        cursor_before: Cursor loaded at the start of the pass.
        cursor_after: Cursor after commit (unchanged on failure).
        error: Error message for a failed pass.
        error_type: Exception class name for a failed pass.
        started_at: When the pass started.
        completed_at: When the pass ended.
    """

    config_name: str
    pair_key: str
    states: list[PassState] = []
    bootstrap: bool = False
    outcomes: list[ApplyOutcome] = []
    conflicts: list[Conflict] = []
    cursor_before: datetime | None = None
    cursor_after: datetime | None = None
    error: str | None = None
    error_type: str | None = None
    started_at: datetime
    completed_at: datetime | None = None

    model_config = {"frozen": True}

    @property
    def state(self) -> PassState:
        """Final state of the pass."""
        return self.states[-1] if self.states else PassState.IDLE

    @property
    def success(self) -> bool:
        """Whether the pass reached ``committed``."""
        return self.state is PassState.COMMITTED

    @property
    def failures(self) -> list[ApplyOutcome]:
        """Outcomes that failed to apply."""
        return [o for o in self.outcomes if o.status is ApplyStatus.FAILED]

    @property
    def unresolved(self) -> list[Conflict]:
        """Conflicts left for manual handling."""
        return [c for c in self.conflicts if not c.is_resolved]

    def count(self, origin: Origin, action: ChangeAction) -> int:
        """Number of changes from *origin*/*action* written to the target.

        Changes linked to an existing target entity are not counted.
        """
        return sum(
            1
            for o in self.outcomes
            if o.origin is origin
            and o.action is action
            and o.status is ApplyStatus.APPLIED
        )

    def to_history(self) -> SyncHistoryRecord:
        """Build the history record for this pass."""
        return SyncHistoryRecord(
            pair_key=self.pair_key,
            config_name=self.config_name,
            success=self.success,
            error=self.error,
            document_created=self.count(Origin.DOCUMENT, ChangeAction.CREATED),
            document_updated=self.count(Origin.DOCUMENT, ChangeAction.UPDATED),
            document_deleted=self.count(Origin.DOCUMENT, ChangeAction.DELETED),
            work_tracking_created=self.count(
                Origin.WORK_TRACKING, ChangeAction.CREATED
            ),
            work_tracking_updated=self.count(
                Origin.WORK_TRACKING, ChangeAction.UPDATED
            ),
            work_tracking_deleted=self.count(
                Origin.WORK_TRACKING, ChangeAction.DELETED
            ),
            failed_changes=len(self.failures),
            conflicts_detected=len(self.conflicts),
            conflicts_resolved=sum(1 for c in self.conflicts if c.is_resolved),
            started_at=self.started_at,
            completed_at=self.completed_at or utcnow(),
        )
