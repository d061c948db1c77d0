"""Synchronization manager that runs one pass for one configuration.

A pass moves through these states::

    idle -> detecting -> applying_non_conflicting -> resolving_conflicts
         -> applying_resolved -> committed

with ``failed`` reachable from every non-terminal state. The
``SyncManager``:

1. Loads the cursor, the entity archive, the held (pending) entities and
   the retry list.
2. Runs the ``ChangeDetector``.
3. Applies each non-conflicting change to the opposite system.
4. Resolves conflicts, plus pending conflicts carrying a strategy.
5. Applies the winning changes.
6. Advances the cursor and appends a history record in one transaction.

Error handling is per-change: an ``ApplicationFailure`` is recorded and the
pass continues. The failed change goes on the store's retry list, so the
next pass re-reads that entity even though the cursor moved past it.
Detection and persistence failures fail the pass and leave
the cursor where it was.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from ..core.async_utils import CallLimiter
from .clients import DocumentClient, RemoteEntity, WorkTrackingClient
from .detector import ChangeDetector, DetectionResult
from .errors import ApplicationFailure, ConflictNotFound, ResolutionFailure
from .models import (
    ApplyOutcome,
    ApplyStatus,
    Change,
    ChangeAction,
    Conflict,
    EntitySnapshot,
    Origin,
    PassReport,
    PassState,
    ResolutionStrategy,
    SyncPairConfig,
    utcnow,
)
from .resolver import ConflictResolver
from .store import SyncStateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolveResult:
    """Result of resolving one conflict on operator request.

    Attributes:
        conflict: The conflict in its final persisted state.
        outcome: Application result of the winning change, ``None`` when
            nothing was applied (manual, or already resolved).
    """

    conflict: Conflict
    outcome: ApplyOutcome | None = None


class SyncManager:
    """Run synchronization passes for one configuration.

    Args:
        config: The pair configuration.
        work_tracking: Client of the work-tracking system.
        document: Client of the document system.
        store: The sync state store.
        limiter: Call limiter for external calls.
        resolver: Conflict resolver.
        clock: Source of "now".
    """

    def __init__(
        self,
        config: SyncPairConfig,
        work_tracking: WorkTrackingClient,
        document: DocumentClient,
        store: SyncStateStore,
        limiter: CallLimiter | None = None,
        resolver: ConflictResolver | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.work_tracking = work_tracking
        self.document = document
        self.store = store
        self.limiter = limiter or CallLimiter()
        self.resolver = resolver or ConflictResolver()
        self.clock = clock
        self.detector = ChangeDetector(
            work_tracking, document, self.limiter, clock
        )
        self.pair = config.pair

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run(self) -> PassReport:
        """Execute one synchronization pass.

        Returns:
            A ``PassReport``. A failed pass is reported, not raised.
        """
        pair_key = self.pair.pair_key
        started_at = self.clock()
        states: list[PassState] = [PassState.IDLE]
        outcomes: list[ApplyOutcome] = []
        conflicts: list[Conflict] = []
        cursor_before: datetime | None = None
        bootstrap = False

        logger.info("Starting sync pass for '%s' (%s)", self.config.name, pair_key)
        try:
            states.append(PassState.DETECTING)
            cursor = await self.store.get_cursor(self.pair)
            cursor_before = cursor.timestamp if cursor is not None else None
            archive = await self.store.get_snapshots(pair_key)
            held = await self.store.unresolved_entity_ids(pair_key)
            retries = await self.store.list_retries(pair_key)
            result = await self.detector.detect_changes(
                self.config, cursor, archive, retries
            )
            bootstrap = result.bootstrap
            await self._refresh_archive(result, archive)
            await self._drop_settled_retries(retries, result)

            states.append(PassState.APPLYING_NON_CONFLICTING)
            for change in result.changes:
                if change.entity_id in held:
                    outcome = await self._hold(change)
                else:
                    outcome = await self._apply(change, archive, result)
                await self._track_retry(change, outcome)
                outcomes.append(outcome)

            states.append(PassState.RESOLVING_CONFLICTS)
            detected_ids = {c.conflict_id for c in result.conflicts}
            for conflict in result.conflicts:
                conflicts.append(await self._resolve(conflict))
            for pending in await self.store.list_conflicts(pair_key, resolved=False):
                if pending.conflict_id in detected_ids:
                    continue
                if pending.strategy in (None, ResolutionStrategy.MANUAL):
                    continue
                conflicts.append(await self._resolve(pending))

            states.append(PassState.APPLYING_RESOLVED)
            for index, conflict in enumerate(conflicts):
                if not conflict.is_resolved:
                    continue
                outcome = await self._apply_winner(conflict, archive, result)
                outcomes.append(outcome)
                if outcome.status is ApplyStatus.FAILED:
                    conflicts[index] = await self._reopen(conflict)

            states.append(PassState.COMMITTED)
            report = PassReport(
                config_name=self.config.name,
                pair_key=pair_key,
                states=states,
                bootstrap=bootstrap,
                outcomes=outcomes,
                conflicts=conflicts,
                cursor_before=cursor_before,
                started_at=started_at,
                completed_at=self.clock(),
            )
            committed = await self.store.commit_pass(
                self.pair, started_at, report.to_history()
            )
        except Exception as exc:
            logger.error(
                "Sync pass for '%s' failed in state %s: %s",
                self.config.name,
                states[-1].value,
                exc,
            )
            states.append(PassState.FAILED)
            report = PassReport(
                config_name=self.config.name,
                pair_key=pair_key,
                states=states,
                bootstrap=bootstrap,
                outcomes=outcomes,
                conflicts=conflicts,
                cursor_before=cursor_before,
                cursor_after=cursor_before,
                error=str(exc) or type(exc).__name__,
                error_type=type(exc).__name__,
                started_at=started_at,
                completed_at=self.clock(),
            )
            await self._record_failure(report)
            return report

        report = report.model_copy(update={"cursor_after": committed.timestamp})
        logger.info(
            "Sync pass for '%s' committed: %d applied, %d failed, "
            "%d conflicts (%d unresolved)",
            self.config.name,
            sum(1 for o in outcomes if o.status is ApplyStatus.APPLIED),
            len(report.failures),
            len(conflicts),
            len(report.unresolved),
        )
        return report

    # ------------------------------------------------------------------
    # Operator resolution
    # ------------------------------------------------------------------

    async def resolve_conflict(
        self, conflict_id: str, strategy: ResolutionStrategy | str
    ) -> ResolveResult:
        """Resolve a persisted conflict and apply the winner immediately.

        Args:
            conflict_id: Id of a conflict of this configuration's pair.
            strategy: Strategy to resolve with.

        Returns:
            A ``ResolveResult``.

        Raises:
            ConflictNotFound: If no such conflict exists for this pair.
            ResolutionFailure: If no winner can be determined or the
                conflict was resolved with another strategy.
            ValueError: If the strategy is not recognised.
        """
        conflict = await self.store.get_conflict(conflict_id)
        if conflict is None or conflict.pair_key != self.pair.pair_key:
            raise ConflictNotFound(conflict_id)

        was_resolved = conflict.is_resolved
        resolved = self.resolver.resolve(conflict, strategy)
        if was_resolved:
            return ResolveResult(conflict=resolved)

        if not resolved.is_resolved:
            await self.store.save_conflict(resolved)
            return ResolveResult(conflict=resolved)

        archive = await self.store.get_snapshots(self.pair.pair_key)
        outcome = await self._apply_winner(resolved, archive, None)
        if outcome.status is ApplyStatus.FAILED:
            return ResolveResult(conflict=await self._reopen(resolved), outcome=outcome)
        await self.store.save_conflict(resolved)
        return ResolveResult(conflict=resolved, outcome=outcome)

    # ------------------------------------------------------------------
    # Conflict handling
    # ------------------------------------------------------------------

    async def _resolve(self, conflict: Conflict) -> Conflict:
        """Resolve with the operator override, else the pair policy."""
        existing = await self.store.get_conflict(conflict.conflict_id)
        override = None
        if existing is not None and not existing.is_resolved:
            override = existing.strategy

        if override is not None:
            strategy = override
        elif self.config.auto_resolve:
            strategy = self.config.strategy
        else:
            strategy = ResolutionStrategy.MANUAL

        if strategy is ResolutionStrategy.MANUAL and override is None:
            resolved = conflict
        else:
            try:
                resolved = self.resolver.resolve(conflict, strategy)
            except ResolutionFailure as exc:
                logger.warning(
                    "Leaving %s unresolved: %s", conflict.conflict_id, exc
                )
                resolved = conflict

        await self.store.save_conflict(resolved)
        return resolved

    async def _reopen(self, conflict: Conflict) -> Conflict:
        """Put back a resolved conflict whose winner failed to apply.

        The strategy stays recorded so the next pass retries it.
        """
        reopened = conflict.model_copy(
            update={"is_resolved": False, "resolved_change": None}
        )
        await self.store.save_conflict(reopened)
        return reopened

    async def _hold(self, change: Change) -> ApplyOutcome:
        """Fold a change for an entity with a pending conflict into it."""
        conflict_id = Conflict.make_id(self.pair.pair_key, change.entity_id)
        pending = await self.store.get_conflict(conflict_id)
        if pending is not None and not pending.is_resolved:
            field = (
                "document_change"
                if change.origin is Origin.DOCUMENT
                else "work_tracking_change"
            )
            await self.store.save_conflict(
                pending.model_copy(update={field: change})
            )
        logger.warning(
            "Holding %s change for %s: unresolved conflict",
            change.origin.value,
            change.entity_id,
        )
        return ApplyOutcome(
            change_id=change.change_id,
            entity_id=change.entity_id,
            origin=change.origin,
            action=change.action,
            status=ApplyStatus.HELD,
            error="entity has unresolved conflict",
        )

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    async def _apply_winner(
        self,
        conflict: Conflict,
        archive: dict[str, EntitySnapshot],
        result: DetectionResult | None,
    ) -> ApplyOutcome:
        """Apply the resolved change of *conflict* to the losing side."""
        winner = conflict.resolved_change
        if winner is None:
            raise ResolutionFailure(
                conflict.conflict_id, "no winning change recorded"
            )
        loser = conflict.change_for(winner.origin.opposite)
        snapshot = archive.get(conflict.entity_id)
        if (
            snapshot is not None
            and loser is not None
            and loser.action is ChangeAction.DELETED
        ):
            # The losing side deleted the entity: its link is dead.
            if loser.origin is Origin.WORK_TRACKING:
                cleared = {"work_item_id": None, "work_tracking_hash": None}
            else:
                cleared = {"section_id": None, "document_hash": None}
            archive[conflict.entity_id] = snapshot.model_copy(update=cleared)
        return await self._apply(winner, archive, result, resolved=True)

    async def _apply(
        self,
        change: Change,
        archive: dict[str, EntitySnapshot],
        result: DetectionResult | None,
        resolved: bool = False,
    ) -> ApplyOutcome:
        """Apply *change* to the opposite system and archive the outcome."""

        def outcome(status: ApplyStatus, error: str | None = None) -> ApplyOutcome:
            return ApplyOutcome(
                change_id=change.change_id,
                entity_id=change.entity_id,
                origin=change.origin,
                action=change.action,
                status=status,
                resolved=resolved,
                error=error,
            )

        if not self.config.direction.allows(change.origin):
            logger.info(
                "Skipping %s change for %s (direction=%s)",
                change.origin.value,
                change.entity_id,
                self.config.direction.value,
            )
            return outcome(
                ApplyStatus.SKIPPED,
                f"direction {self.config.direction.value}",
            )

        snapshot = archive.get(change.entity_id)
        try:
            if change.action is ChangeAction.DELETED:
                await self._delete(change, snapshot)
                new_snapshot, linked = None, False
            else:
                new_snapshot, linked = await self._write(change, snapshot, result)
        except ApplicationFailure as exc:
            logger.error("%s", exc)
            return outcome(ApplyStatus.FAILED, str(exc))

        # Persisted right away so a crash never loses a fresh link.
        if new_snapshot is None:
            await self.store.delete_snapshot(self.pair.pair_key, change.entity_id)
            archive.pop(change.entity_id, None)
        else:
            await self.store.upsert_snapshot(new_snapshot)
            archive[change.entity_id] = new_snapshot

        return outcome(ApplyStatus.LINKED if linked else ApplyStatus.APPLIED)

    async def _write(
        self,
        change: Change,
        snapshot: EntitySnapshot | None,
        result: DetectionResult | None,
    ) -> tuple[EntitySnapshot, bool]:
        """Create or update the entity in the target system.

        Returns:
            The new archive snapshot and whether an existing target entity
            was linked instead of written.
        """
        target = change.origin.opposite
        payload_hash = change.hash
        linked = False

        native_id = None
        if snapshot is not None:
            native_id = (
                snapshot.work_item_id
                if target is Origin.WORK_TRACKING
                else snapshot.section_id
            )
        target_hash = snapshot.hash_for(target) if snapshot is not None else None

        if native_id is None:
            existing = await self._find_existing(change, target, result)
            if existing is not None:
                native_id = existing.native_id
                target_hash = existing.hash
                if change.action is ChangeAction.CREATED:
                    linked = True
        elif change.action is ChangeAction.CREATED:
            linked = True

        if linked:
            if target_hash != payload_hash:
                target_hash = await self._settle_link(change, target, native_id)
                linked = target_hash != payload_hash
        elif native_id is None:
            native_id = await self._create(change, target)
            target_hash = payload_hash
        else:
            await self._update(change, target, native_id)
            target_hash = payload_hash

        origin_native = self._origin_native_id(change, snapshot, result)
        if target is Origin.WORK_TRACKING:
            new_snapshot = EntitySnapshot(
                pair_key=self.pair.pair_key,
                entity_id=change.entity_id,
                kind=change.kind,
                work_item_id=native_id,
                section_id=origin_native,
                document_hash=payload_hash,
                work_tracking_hash=target_hash,
            )
        else:
            new_snapshot = EntitySnapshot(
                pair_key=self.pair.pair_key,
                entity_id=change.entity_id,
                kind=change.kind,
                work_item_id=origin_native,
                section_id=native_id,
                document_hash=target_hash,
                work_tracking_hash=payload_hash,
            )
        return new_snapshot, linked

    def _authoritative_origin(self) -> Origin:
        """Side whose content wins when a link finds different content."""
        if self.config.direction.allows(Origin.WORK_TRACKING):
            return Origin.WORK_TRACKING
        return Origin.DOCUMENT

    async def _settle_link(
        self, change: Change, target: Origin, native_id: str
    ) -> str | None:
        """Reconcile a link between two entities with different content.

        Returns:
            The archived hash for the target side: the change's hash when
            the target was overwritten, ``None`` when the target wins and
            is queued to be re-read next pass.
        """
        if change.origin is self._authoritative_origin():
            logger.warning(
                "Overwriting %s entity %s with %s content for %s",
                target.value,
                native_id,
                change.origin.value,
                change.entity_id,
            )
            await self._update(change, target, native_id)
            return change.hash

        logger.warning(
            "Linked %s to existing %s entity %s with different content; "
            "%s content wins",
            change.entity_id,
            target.value,
            native_id,
            target.value,
        )
        await self.store.mark_retry(
            self.pair.pair_key,
            change.entity_id,
            target,
            "linked with different content",
        )
        return None

    async def _find_existing(
        self,
        change: Change,
        target: Origin,
        result: DetectionResult | None,
    ) -> RemoteEntity | None:
        """Look for the entity in the target before creating it."""
        if result is not None:
            index = (
                result.work_tracking_index
                if target is Origin.WORK_TRACKING
                else result.document_index
            )
            found = index.get(change.entity_id)
            if found is not None and found.native_id is not None:
                return found
        if target is not Origin.WORK_TRACKING:
            return None
        found = await self._call(
            change, target, self.work_tracking.find_entity, change.entity_id
        )
        if found is None:
            return None
        if isinstance(found, dict):
            found = RemoteEntity.model_validate(found)
        return found if found.native_id is not None else None

    def _origin_native_id(
        self,
        change: Change,
        snapshot: EntitySnapshot | None,
        result: DetectionResult | None,
    ) -> str | None:
        if change.origin is Origin.DOCUMENT:
            index = result.document_index if result is not None else {}
            current = snapshot.section_id if snapshot is not None else None
        else:
            index = result.work_tracking_index if result is not None else {}
            current = snapshot.work_item_id if snapshot is not None else None
        entity = index.get(change.entity_id)
        if entity is not None and entity.native_id is not None:
            return entity.native_id
        return current

    async def _create(self, change: Change, target: Origin) -> str:
        if target is Origin.WORK_TRACKING:
            native_id = await self._call(
                change,
                target,
                self.work_tracking.create_entity,
                change.kind,
                change.payload,
                change.entity_id,
            )
        else:
            native_id = await self._call(
                change,
                target,
                self.document.create_section,
                self.config.document_ref,
                change.kind,
                change.payload,
                change.entity_id,
            )
        if not native_id:
            raise ApplicationFailure(
                change.entity_id, target.value, "create returned no id"
            )
        logger.info(
            "Created %s %s in %s as %s",
            change.kind.value,
            change.entity_id,
            target.value,
            native_id,
        )
        return str(native_id)

    async def _update(self, change: Change, target: Origin, native_id: str) -> None:
        if target is Origin.WORK_TRACKING:
            await self._call(
                change,
                target,
                self.work_tracking.update_entity,
                native_id,
                change.payload,
            )
        else:
            await self._call(
                change,
                target,
                self.document.update_section,
                self.config.document_ref,
                native_id,
                change.payload,
            )
        logger.info("Updated %s in %s", change.entity_id, target.value)

    async def _delete(self, change: Change, snapshot: EntitySnapshot | None) -> None:
        target = change.origin.opposite
        if target is Origin.WORK_TRACKING:
            native_id = snapshot.work_item_id if snapshot is not None else None
            if native_id is not None:
                await self._call(
                    change, target, self.work_tracking.delete_entity, native_id
                )
        else:
            native_id = snapshot.section_id if snapshot is not None else None
            if native_id is not None:
                await self._call(
                    change,
                    target,
                    self.document.delete_section,
                    self.config.document_ref,
                    native_id,
                )
        if native_id is None:
            logger.info(
                "Nothing to delete for %s in %s", change.entity_id, target.value
            )
        else:
            logger.info("Deleted %s from %s", change.entity_id, target.value)

    async def _call(
        self,
        change: Change,
        target: Origin,
        func: Callable[..., Any],
        *args: Any,
    ) -> Any:
        try:
            return await self.limiter.call(func, *args)
        except Exception as exc:
            raise ApplicationFailure(
                change.entity_id, target.value, str(exc) or type(exc).__name__
            ) from exc

    # ------------------------------------------------------------------
    # Archive maintenance
    # ------------------------------------------------------------------

    async def _refresh_archive(
        self,
        result: DetectionResult,
        archive: dict[str, EntitySnapshot],
    ) -> None:
        """Record converged entities and forget ones deleted on both sides."""
        for entity_id in result.converged:
            doc = result.document_index.get(entity_id)
            wt = result.work_tracking_index.get(entity_id)
            previous = archive.get(entity_id)
            source = doc or wt
            if source is None:
                continue
            snapshot = EntitySnapshot(
                pair_key=self.pair.pair_key,
                entity_id=entity_id,
                kind=source.kind,
                work_item_id=(
                    wt.native_id
                    if wt is not None
                    else previous.work_item_id if previous else None
                ),
                section_id=(
                    doc.native_id
                    if doc is not None
                    else previous.section_id if previous else None
                ),
                document_hash=(
                    doc.hash
                    if doc is not None
                    else previous.document_hash if previous else None
                ),
                work_tracking_hash=(
                    wt.hash
                    if wt is not None
                    else previous.work_tracking_hash if previous else None
                ),
            )
            await self.store.upsert_snapshot(snapshot)
            archive[entity_id] = snapshot

        for entity_id in result.vanished:
            await self.store.delete_snapshot(self.pair.pair_key, entity_id)
            archive.pop(entity_id, None)

    async def _track_retry(self, change: Change, outcome: ApplyOutcome) -> None:
        """Keep a failed change on the retry list until it goes through."""
        if outcome.status is ApplyStatus.FAILED:
            await self.store.mark_retry(
                self.pair.pair_key, change.entity_id, change.origin, outcome.error
            )
        else:
            await self.store.clear_retry(
                self.pair.pair_key, change.entity_id, change.origin
            )

    async def _drop_settled_retries(
        self,
        retries: list[tuple[str, Origin]],
        result: DetectionResult,
    ) -> None:
        """Forget retries that no longer produce a change.

        They converged, vanished or turned into a conflict, which tracks
        the entity from now on.
        """
        pending = {(c.entity_id, c.origin) for c in result.changes}
        for entity_id, origin in retries:
            if (entity_id, origin) not in pending:
                await self.store.clear_retry(self.pair.pair_key, entity_id, origin)

    async def _record_failure(self, report: PassReport) -> None:
        """Append a failed history record; the store may be the culprit."""
        try:
            await self.store.append_history(report.to_history())
        except Exception as exc:
            logger.error(
                "Could not record failed pass for '%s': %s",
                self.config.name,
                exc,
            )
