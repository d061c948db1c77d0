"""Change detection for one sync pair.

Each side is compared against its own archived content hash (the
``sync_entity`` table), restricted to entities modified after the cursor
plus the entities whose last application failed (the retry list). Both
sides hash the same normalized payload, so hashes are comparable across
sides: a change whose content already equals the other side's live or
archived hash is treated as converged rather than applied again.

Classification per entity (incremental pass):

==========================  ==========================  ====================
document side               work-tracking side          result
==========================  ==========================  ====================
changed                     unchanged                   document change
unchanged                   changed                     work-tracking change
changed                     changed, same content       no-op (converged)
changed                     changed, one side stale     later side's update
changed                     changed                     conflict
deleted                     unchanged                   document deletion
deleted                     changed                     conflict
deleted                     deleted                     dropped from archive
==========================  ==========================  ====================

Without a cursor (bootstrap) every entity on each side is a ``created``
change from that side and no conflicts are produced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from ..core.async_utils import CallLimiter
from .clients import DocumentClient, ParsedDocument, RemoteEntity, WorkTrackingClient
from .errors import DetectionFailure
from .models import (
    Change,
    ChangeAction,
    Conflict,
    EntityKind,
    EntitySnapshot,
    Origin,
    SyncCursor,
    SyncPairConfig,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionResult:
    """Everything one detection run found for a pair.

    Attributes:
        document_changes: Non-conflicting changes from the document.
        work_tracking_changes: Non-conflicting changes from work tracking.
        conflicts: Entities changed incompatibly on both sides.
        bootstrap: ``True`` when no cursor existed.
        document_index: Every entity currently in the document.
        work_tracking_index: Work-tracking entities returned by the query
            (all of them on bootstrap, the changed and retried ones
            otherwise).
        converged: Entity ids changed on both sides to identical content.
        vanished: Entity ids deleted on both sides.
        last_modified: Document-level modification time, if reported.
    """

    document_changes: list[Change] = field(default_factory=list)
    work_tracking_changes: list[Change] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    bootstrap: bool = False
    document_index: dict[str, RemoteEntity] = field(default_factory=dict)
    work_tracking_index: dict[str, RemoteEntity] = field(default_factory=dict)
    converged: list[str] = field(default_factory=list)
    vanished: list[str] = field(default_factory=list)
    last_modified: datetime | None = None

    @property
    def changes(self) -> list[Change]:
        """All non-conflicting changes, document side first."""
        return [*self.document_changes, *self.work_tracking_changes]

    @property
    def is_empty(self) -> bool:
        return not (
            self.document_changes
            or self.work_tracking_changes
            or self.conflicts
        )


class ChangeDetector:
    """Compute the changes of one pair since its cursor.

    Args:
        work_tracking: Client of the work-tracking system.
        document: Client of the document system.
        limiter: Call limiter shared with the rest of the engine.
        clock: Source of "now" for deletion timestamps.
    """

    def __init__(
        self,
        work_tracking: WorkTrackingClient,
        document: DocumentClient,
        limiter: CallLimiter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.work_tracking = work_tracking
        self.document = document
        self.limiter = limiter or CallLimiter()
        self.clock = clock

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def detect_changes(
        self,
        config: SyncPairConfig,
        cursor: SyncCursor | None,
        archive: dict[str, EntitySnapshot] | None = None,
        retry: Iterable[tuple[str, Origin]] = (),
    ) -> DetectionResult:
        """Detect the changes of *config*'s pair since *cursor*.

        Args:
            config: The pair configuration.
            cursor: Last committed cursor, ``None`` to bootstrap.
            archive: Archived entity snapshots keyed by entity id.
            retry: ``(entity_id, origin)`` pairs whose last application
                failed. They are re-examined whatever their timestamp.

        Returns:
            A ``DetectionResult``. Never partial.

        Raises:
            DetectionFailure: If either side cannot be queried or returns a
                malformed response.
        """
        since = cursor.timestamp if cursor is not None else None

        raw_changed = await self._query(
            Origin.WORK_TRACKING,
            self.work_tracking.query_changed_since,
            config.team_id,
            since,
        )
        work_tracking_entities = self._validate_entities(
            Origin.WORK_TRACKING, raw_changed
        )
        parsed = self._validate_document(
            await self._query(
                Origin.DOCUMENT, self.document.parse, config.document_ref
            )
        )
        work_tracking_index = self._index(
            Origin.WORK_TRACKING, work_tracking_entities
        )
        document_index = self._index(Origin.DOCUMENT, parsed.planning_tree)

        if cursor is None:
            return self._bootstrap(parsed, document_index, work_tracking_index)

        live_ids = await self._query(
            Origin.WORK_TRACKING, self.work_tracking.list_entity_ids, config.team_id
        )
        if not isinstance(live_ids, (list, tuple, set, frozenset)):
            raise DetectionFailure(
                Origin.WORK_TRACKING.value,
                f"list_entity_ids returned {type(live_ids).__name__}",
            )

        retry_document: set[str] = set()
        retry_work_tracking: set[str] = set()
        for entity_id, origin in retry:
            if origin == Origin.DOCUMENT:
                retry_document.add(entity_id)
            else:
                retry_work_tracking.add(entity_id)

        # Failed work-tracking changes fall outside the query window.
        for entity_id in sorted(retry_work_tracking - set(work_tracking_index)):
            found = await self._query(
                Origin.WORK_TRACKING, self.work_tracking.find_entity, entity_id
            )
            if found is None:
                continue
            entity = self._validate_entities(Origin.WORK_TRACKING, [found])[0]
            if entity.entity_id == entity_id:
                work_tracking_index[entity_id] = entity

        return self._incremental(
            config,
            cursor,
            archive or {},
            parsed,
            document_index,
            work_tracking_index,
            {str(i) for i in live_ids},
            retry_document,
            retry_work_tracking,
        )

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def _bootstrap(
        self,
        parsed: ParsedDocument,
        document_index: dict[str, RemoteEntity],
        work_tracking_index: dict[str, RemoteEntity],
    ) -> DetectionResult:
        document_changes = [
            self._change(
                Origin.DOCUMENT,
                entity,
                ChangeAction.CREATED,
                self._document_time(entity, parsed),
            )
            for _, entity in sorted(document_index.items())
        ]
        work_tracking_changes = [
            self._change(
                Origin.WORK_TRACKING,
                entity,
                ChangeAction.CREATED,
                entity.updated_at or self.clock(),
            )
            for _, entity in sorted(work_tracking_index.items())
        ]
        logger.info(
            "Bootstrap detection: %d document, %d work-tracking entities",
            len(document_changes),
            len(work_tracking_changes),
        )
        return DetectionResult(
            document_changes=document_changes,
            work_tracking_changes=work_tracking_changes,
            bootstrap=True,
            document_index=document_index,
            work_tracking_index=work_tracking_index,
            last_modified=parsed.last_modified,
        )

    # ------------------------------------------------------------------
    # Incremental detection
    # ------------------------------------------------------------------

    def _incremental(
        self,
        config: SyncPairConfig,
        cursor: SyncCursor,
        archive: dict[str, EntitySnapshot],
        parsed: ParsedDocument,
        document_index: dict[str, RemoteEntity],
        work_tracking_index: dict[str, RemoteEntity],
        live_ids: set[str],
        retry_document: set[str],
        retry_work_tracking: set[str],
    ) -> DetectionResult:
        pair_key = config.pair.pair_key
        since = cursor.timestamp

        # Per-side candidates: entity changed since the cursor (or awaiting
        # a retry) with content that differs from what was last synchronized
        # on that side.
        doc_changed: dict[str, RemoteEntity] = {}
        for entity_id, entity in document_index.items():
            stamp = entity.updated_at or parsed.last_modified
            if (
                stamp is not None
                and stamp <= since
                and entity_id not in retry_document
            ):
                continue
            snapshot = archive.get(entity_id)
            if snapshot is None or snapshot.document_hash != entity.hash:
                doc_changed[entity_id] = entity

        wt_changed: dict[str, RemoteEntity] = {}
        for entity_id, entity in work_tracking_index.items():
            snapshot = archive.get(entity_id)
            if snapshot is None or snapshot.work_tracking_hash != entity.hash:
                wt_changed[entity_id] = entity

        doc_deleted = {
            entity_id
            for entity_id, snapshot in archive.items()
            if snapshot.section_id is not None and entity_id not in document_index
        }
        wt_deleted = {
            entity_id
            for entity_id, snapshot in archive.items()
            if snapshot.work_item_id is not None and entity_id not in live_ids
        }

        document_changes: list[Change] = []
        work_tracking_changes: list[Change] = []
        conflicts: list[Conflict] = []
        converged: list[str] = []
        vanished: list[str] = []

        candidates = sorted(
            set(doc_changed) | set(wt_changed) | doc_deleted | wt_deleted
        )
        for entity_id in candidates:
            snapshot = archive.get(entity_id)
            doc_entity = doc_changed.get(entity_id)
            wt_entity = wt_changed.get(entity_id)
            doc_gone = entity_id in doc_deleted
            wt_gone = entity_id in wt_deleted

            if doc_gone and wt_gone:
                vanished.append(entity_id)
                continue

            doc_change = None
            if doc_gone:
                doc_change = self._deletion(
                    Origin.DOCUMENT,
                    entity_id,
                    snapshot,
                    parsed.last_modified or self.clock(),
                )
            elif doc_entity is not None:
                doc_change = self._change(
                    Origin.DOCUMENT,
                    doc_entity,
                    self._action(snapshot, entity_id in live_ids),
                    self._document_time(doc_entity, parsed),
                )

            wt_change = None
            if wt_gone:
                wt_change = self._deletion(
                    Origin.WORK_TRACKING, entity_id, snapshot, self.clock()
                )
            elif wt_entity is not None:
                wt_change = self._change(
                    Origin.WORK_TRACKING,
                    wt_entity,
                    self._action(snapshot, entity_id in document_index),
                    wt_entity.updated_at or self.clock(),
                )

            if doc_change is None and wt_change is None:
                continue

            if wt_change is None:
                # The work-tracking side may already hold this content.
                if (
                    doc_entity is not None
                    and snapshot is not None
                    and snapshot.work_tracking_hash == doc_entity.hash
                ):
                    converged.append(entity_id)
                    continue
                document_changes.append(doc_change)
                continue

            if doc_change is None:
                current = document_index.get(entity_id)
                if (
                    wt_entity is not None
                    and current is not None
                    and current.hash == wt_entity.hash
                ):
                    converged.append(entity_id)
                    continue
                work_tracking_changes.append(wt_change)
                continue

            if (
                doc_entity is not None
                and wt_entity is not None
                and doc_entity.hash == wt_entity.hash
            ):
                converged.append(entity_id)
                continue

            # Both sides moved. A side whose timestamp is not past the
            # cursor is stale and loses without a conflict, unless it is
            # being retried.
            doc_stale = (
                not doc_gone
                and doc_change.timestamp <= since
                and entity_id not in retry_document
            )
            wt_stale = (
                not wt_gone
                and wt_change.timestamp <= since
                and entity_id not in retry_work_tracking
            )
            if doc_stale and not wt_stale:
                work_tracking_changes.append(wt_change)
                continue
            if wt_stale and not doc_stale:
                document_changes.append(doc_change)
                continue

            conflicts.append(
                Conflict(
                    conflict_id=Conflict.make_id(pair_key, entity_id),
                    pair_key=pair_key,
                    entity_id=entity_id,
                    kind=(wt_change if doc_gone else doc_change).kind,
                    document_change=doc_change,
                    work_tracking_change=wt_change,
                    detected_at=self.clock(),
                )
            )

        logger.info(
            "Detected %d document, %d work-tracking changes and %d conflicts "
            "for %s since %s",
            len(document_changes),
            len(work_tracking_changes),
            len(conflicts),
            pair_key,
            since.isoformat(),
        )
        return DetectionResult(
            document_changes=document_changes,
            work_tracking_changes=work_tracking_changes,
            conflicts=conflicts,
            document_index=document_index,
            work_tracking_index=work_tracking_index,
            converged=converged,
            vanished=vanished,
            last_modified=parsed.last_modified,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _query(self, origin: Origin, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await self.limiter.call(func, *args)
        except Exception as exc:
            logger.error("Query against %s failed: %s", origin.value, exc)
            raise DetectionFailure(
                origin.value, str(exc) or type(exc).__name__
            ) from exc

    @staticmethod
    def _validate_entities(origin: Origin, raw: Any) -> list[RemoteEntity]:
        if not isinstance(raw, (list, tuple)):
            raise DetectionFailure(
                origin.value, f"expected a list of entities, got {type(raw).__name__}"
            )
        try:
            return [RemoteEntity.model_validate(item) for item in raw]
        except ValidationError as exc:
            raise DetectionFailure(origin.value, f"malformed entity: {exc}") from exc

    @staticmethod
    def _validate_document(raw: Any) -> ParsedDocument:
        try:
            return ParsedDocument.model_validate(raw)
        except ValidationError as exc:
            raise DetectionFailure(
                Origin.DOCUMENT.value, f"malformed document: {exc}"
            ) from exc

    @staticmethod
    def _index(
        origin: Origin, entities: list[RemoteEntity]
    ) -> dict[str, RemoteEntity]:
        index: dict[str, RemoteEntity] = {}
        for entity in entities:
            if entity.entity_id in index:
                raise DetectionFailure(
                    origin.value, f"duplicate entity id '{entity.entity_id}'"
                )
            index[entity.entity_id] = entity
        return index

    @staticmethod
    def _action(snapshot: EntitySnapshot | None, on_other_side: bool) -> ChangeAction:
        if snapshot is None and not on_other_side:
            return ChangeAction.CREATED
        return ChangeAction.UPDATED

    def _document_time(self, entity: RemoteEntity, parsed: ParsedDocument) -> datetime:
        return entity.updated_at or parsed.last_modified or self.clock()

    @staticmethod
    def _change(
        origin: Origin,
        entity: RemoteEntity,
        action: ChangeAction,
        timestamp: datetime,
    ) -> Change:
        return Change(
            change_id=Change.make_id(origin, entity.entity_id, timestamp),
            entity_id=entity.entity_id,
            kind=entity.kind,
            origin=origin,
            action=action,
            timestamp=timestamp,
            payload=entity.payload,
        )

    @staticmethod
    def _deletion(
        origin: Origin,
        entity_id: str,
        snapshot: EntitySnapshot | None,
        timestamp: datetime,
    ) -> Change:
        kind = snapshot.kind if snapshot is not None else EntityKind.STORY
        return Change(
            change_id=Change.make_id(origin, entity_id, timestamp),
            entity_id=entity_id,
            kind=kind,
            origin=origin,
            action=ChangeAction.DELETED,
            timestamp=timestamp,
        )
