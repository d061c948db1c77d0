"""Tests for SyncManager passes against in-memory fakes.

Covers:
- State sequence of committed and failed passes
- Bootstrap: creation on the opposite side, linking of overlap
- Conflict scenario end-to-end with newer-wins and with manual handling
- Idempotence: a second pass with no edits writes nothing
- Partial-failure isolation and cursor handling on failed detection
- Retry of failed changes on later passes, store failures mid-pass
- Direction filtering, held changes, deletion propagation
- Operator resolution through resolve_conflict()
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from plansync.sync.errors import (
    ConflictNotFound,
    PersistenceFailure,
    ResolutionFailure,
)
from plansync.sync.manager import SyncManager
from plansync.sync.models import (
    ApplyStatus,
    ChangeAction,
    Origin,
    PassState,
    ResolutionStrategy,
    SyncDirection,
)

from conftest import T0, story

COMMITTED_STATES = [
    PassState.IDLE,
    PassState.DETECTING,
    PassState.APPLYING_NON_CONFLICTING,
    PassState.RESOLVING_CONFLICTS,
    PassState.APPLYING_RESOLVED,
    PassState.COMMITTED,
]


@pytest.fixture
def make_manager(work_tracking, document, store, clock, pair_config):
    """Build a manager, optionally with config overrides."""

    def build(**updates):
        config = pair_config.model_copy(update=updates) if updates else pair_config
        return SyncManager(config, work_tracking, document, store, clock=clock)

    return build


async def _conflicting_edits(store, pair_config, work_tracking, document, clock):
    """Cursor T0; work tracking S1 'A' at T1; document S1 'B' at T2 > T1."""
    await store.set_cursor(pair_config.pair, T0)
    work_tracking.put("S1", story("A"), updated_at=T0 + timedelta(minutes=10))
    document.put("S1", story("B"), updated_at=T0 + timedelta(minutes=20))
    clock.advance(30 * 60)


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


class TestBootstrapPass:
    """First pass for a pair."""

    async def test_three_and_two_created(
        self, make_manager, work_tracking, document, store, pair_config
    ):
        for i in range(1, 4):
            work_tracking.put(f"W{i}", story(f"work {i}"))
        for i in range(1, 3):
            document.put(f"D{i}", story(f"doc {i}"))

        report = await make_manager().run()

        assert report.success
        assert report.bootstrap
        assert report.states == COMMITTED_STATES
        assert report.conflicts == []
        assert report.count(Origin.WORK_TRACKING, ChangeAction.CREATED) == 3
        assert report.count(Origin.DOCUMENT, ChangeAction.CREATED) == 2
        assert sorted(document.created) == ["W1", "W2", "W3"]
        assert sorted(work_tracking.created) == ["D1", "D2"]
        assert set(document.items) == set(work_tracking.items)

        cursor = await store.get_cursor(pair_config.pair)
        assert cursor.timestamp == T0
        assert report.cursor_before is None
        assert report.cursor_after == T0

        [record] = await store.list_history(pair_config.pair.pair_key)
        assert record.success
        assert record.created == 5

    async def test_overlap_is_linked_not_duplicated(
        self, make_manager, work_tracking, document, store, pair_config
    ):
        work_tracking.put("S1", story("A"))
        document.put("S1", story("A"))

        report = await make_manager().run()

        assert report.success
        assert {o.status for o in report.outcomes} == {ApplyStatus.LINKED}
        assert work_tracking.created == []
        assert document.created == []
        snapshot = (await store.get_snapshots(pair_config.pair.pair_key))["S1"]
        assert snapshot.work_item_id == "WI-1"
        assert snapshot.section_id == "sec-1"

    async def test_overlap_with_different_content_converges(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        work_tracking.put("S1", story("A"))
        document.put("S1", story("B"))
        manager = make_manager()

        report = await manager.run()

        assert report.success
        assert document.title("S1") == work_tracking.title("S1") == "A"
        assert work_tracking.updated == []
        assert document.updated == ["S1"]
        assert work_tracking.created == document.created == []
        snapshot = (await store.get_snapshots(pair_config.pair.pair_key))["S1"]
        assert snapshot.document_hash == snapshot.work_tracking_hash
        assert snapshot.work_tracking_hash == work_tracking.items["S1"].hash
        assert await store.list_retries(pair_config.pair.pair_key) == []

        clock.advance()
        again = await manager.run()

        assert again.outcomes == []
        assert document.title("S1") == work_tracking.title("S1") == "A"

    async def test_overlap_one_way_document_wins(
        self, make_manager, work_tracking, document, clock
    ):
        work_tracking.put("S1", story("A"))
        document.put("S1", story("B"))
        manager = make_manager(direction=SyncDirection.DOCUMENT_TO_WORK_TRACKING)

        report = await manager.run()

        statuses = {(o.origin, o.status) for o in report.outcomes}
        assert statuses == {
            (Origin.DOCUMENT, ApplyStatus.APPLIED),
            (Origin.WORK_TRACKING, ApplyStatus.SKIPPED),
        }
        assert work_tracking.title("S1") == document.title("S1") == "B"

        clock.advance()
        assert (await manager.run()).outcomes == []

    async def test_second_pass_is_noop(
        self, make_manager, work_tracking, document, clock
    ):
        work_tracking.put("W1", story("w"))
        document.put("D1", story("d"))
        manager = make_manager()
        await manager.run()
        writes = (list(work_tracking.created), list(document.created))

        clock.advance()
        report = await manager.run()

        assert report.success
        assert not report.bootstrap
        assert report.outcomes == []
        assert (work_tracking.created, document.created) == writes
        assert work_tracking.updated == document.updated == []


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class TestConflictPass:
    """Passes that detect conflicting edits."""

    async def test_newer_wins_applies_document_title(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        await _conflicting_edits(store, pair_config, work_tracking, document, clock)
        manager = make_manager(
            auto_resolve=True, strategy=ResolutionStrategy.NEWER_WINS
        )

        report = await manager.run()

        assert report.success
        [conflict] = report.conflicts
        assert conflict.is_resolved
        assert conflict.resolved_change.payload.title == "B"
        assert work_tracking.title("S1") == "B"
        assert document.title("S1") == "B"
        [outcome] = report.outcomes
        assert outcome.resolved
        assert outcome.status is ApplyStatus.APPLIED
        assert await store.list_conflicts(pair_config.pair.pair_key) == []

    async def test_manual_conflict_persisted_untouched(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        await _conflicting_edits(store, pair_config, work_tracking, document, clock)

        report = await make_manager().run()

        assert report.success
        assert len(report.unresolved) == 1
        assert work_tracking.title("S1") == "A"
        assert document.title("S1") == "B"
        [pending] = await store.list_conflicts(pair_config.pair.pair_key)
        assert pending.entity_id == "S1"
        assert pending.strategy is None

    async def test_unresolved_conflict_has_no_winner_to_apply(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        await _conflicting_edits(store, pair_config, work_tracking, document, clock)
        manager = make_manager()
        [pending] = (await manager.run()).unresolved

        with pytest.raises(ResolutionFailure, match="no winning change"):
            await manager._apply_winner(pending, {}, None)

    async def test_later_edit_is_held(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        await _conflicting_edits(store, pair_config, work_tracking, document, clock)
        manager = make_manager()
        await manager.run()

        clock.advance()
        work_tracking.put("S1", story("A2"))
        clock.advance()
        report = await manager.run()

        [outcome] = report.outcomes
        assert outcome.status is ApplyStatus.HELD
        assert document.title("S1") == "B"
        [pending] = await store.list_conflicts(pair_config.pair.pair_key)
        assert pending.work_tracking_change.payload.title == "A2"

    async def test_override_resolved_on_next_pass(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        await _conflicting_edits(store, pair_config, work_tracking, document, clock)
        manager = make_manager()
        await manager.run()
        [pending] = await store.list_conflicts(pair_config.pair.pair_key)
        await store.set_conflict_override(
            pending.conflict_id, ResolutionStrategy.DOCUMENT_WINS
        )

        clock.advance()
        report = await manager.run()

        assert report.success
        assert work_tracking.title("S1") == "B"
        assert await store.list_conflicts(pair_config.pair.pair_key) == []


# ---------------------------------------------------------------------------
# Operator resolution
# ---------------------------------------------------------------------------


class TestResolveConflict:
    """Tests for SyncManager.resolve_conflict()."""

    async def _pending(self, make_manager, work_tracking, document, store, pair_config, clock):
        await _conflicting_edits(store, pair_config, work_tracking, document, clock)
        manager = make_manager()
        await manager.run()
        [pending] = await store.list_conflicts(pair_config.pair.pair_key)
        return manager, pending

    async def test_applies_winner(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        manager, pending = await self._pending(
            make_manager, work_tracking, document, store, pair_config, clock
        )

        result = await manager.resolve_conflict(pending.conflict_id, "newer-wins")

        assert result.conflict.is_resolved
        assert result.outcome.status is ApplyStatus.APPLIED
        assert work_tracking.title("S1") == "B"
        stored = await store.get_conflict(pending.conflict_id)
        assert stored.is_resolved
        assert stored.strategy is ResolutionStrategy.NEWER_WINS

    async def test_resolving_twice_is_idempotent(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        manager, pending = await self._pending(
            make_manager, work_tracking, document, store, pair_config, clock
        )
        await manager.resolve_conflict(pending.conflict_id, "document-wins")
        updates = list(work_tracking.updated)

        result = await manager.resolve_conflict(pending.conflict_id, "document-wins")

        assert result.outcome is None
        assert work_tracking.updated == updates

    async def test_failed_winner_reopens(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        manager, pending = await self._pending(
            make_manager, work_tracking, document, store, pair_config, clock
        )
        work_tracking.fail_entities.add("S1")

        result = await manager.resolve_conflict(pending.conflict_id, "document-wins")

        assert result.outcome.status is ApplyStatus.FAILED
        assert not result.conflict.is_resolved
        stored = await store.get_conflict(pending.conflict_id)
        assert not stored.is_resolved
        assert stored.strategy is ResolutionStrategy.DOCUMENT_WINS

        # The recorded strategy is retried by the next pass.
        work_tracking.fail_entities.clear()
        clock.advance()
        report = await manager.run()
        assert report.success
        assert work_tracking.title("S1") == "B"

    async def test_manual_keeps_pending(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        manager, pending = await self._pending(
            make_manager, work_tracking, document, store, pair_config, clock
        )
        result = await manager.resolve_conflict(pending.conflict_id, "manual")
        assert not result.conflict.is_resolved
        assert result.outcome is None

    async def test_unknown_conflict(self, make_manager):
        with pytest.raises(ConflictNotFound):
            await make_manager().resolve_conflict("conflict:nope:S1", "newer-wins")


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    """Failure handling inside a pass."""

    async def test_one_failed_change_does_not_stop_the_pass(
        self, make_manager, work_tracking, document, store, pair_config
    ):
        document.put("D1", story("one"))
        document.put("D2", story("two"))
        work_tracking.fail_entities.add("D1")

        report = await make_manager().run()

        assert report.success
        [failure] = report.failures
        assert failure.entity_id == "D1"
        assert "write rejected" in failure.error
        assert work_tracking.created == ["D2"]
        [record] = await store.list_history(pair_config.pair.pair_key)
        assert record.failed_changes == 1
        assert record.work_tracking_created == 0
        assert record.document_created == 1

    async def test_detection_failure_keeps_cursor(
        self, make_manager, work_tracking, store, pair_config, clock
    ):
        manager = make_manager()
        await manager.run()
        clock.advance()
        work_tracking.unavailable = True

        report = await manager.run()

        assert report.state is PassState.FAILED
        assert report.states == [PassState.IDLE, PassState.DETECTING, PassState.FAILED]
        assert report.error_type == "DetectionFailure"
        assert report.cursor_after == report.cursor_before == T0
        cursor = await store.get_cursor(pair_config.pair)
        assert cursor.timestamp == T0
        latest = (await store.list_history(pair_config.pair.pair_key))[0]
        assert latest.success is False
        assert "work tracking unavailable" in latest.error

    async def test_rejected_create_is_retried_next_pass(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        document.put("D1", story("one"))
        work_tracking.fail_entities.add("D1")
        manager = make_manager()

        first = await manager.run()

        assert first.success
        assert [f.entity_id for f in first.failures] == ["D1"]
        assert await store.list_retries(pair_config.pair.pair_key) == [
            ("D1", Origin.DOCUMENT)
        ]

        work_tracking.fail_entities.discard("D1")
        clock.advance()
        second = await manager.run()

        assert not second.bootstrap
        assert second.count(Origin.DOCUMENT, ChangeAction.CREATED) == 1
        assert work_tracking.created == ["D1"]
        assert work_tracking.title("D1") == "one"
        assert await store.list_retries(pair_config.pair.pair_key) == []

        clock.advance()
        assert (await manager.run()).outcomes == []

    async def test_failed_update_is_retried_next_pass(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        document.put("D1", story("one"))
        manager = make_manager()
        await manager.run()

        clock.advance()
        document.put("D1", story("two"))
        work_tracking.fail_entities.add("D1")
        clock.advance()
        failed = await manager.run()

        [failure] = failed.failures
        assert failure.action is ChangeAction.UPDATED
        assert work_tracking.title("D1") == "one"

        work_tracking.fail_entities.discard("D1")
        clock.advance()
        retried = await manager.run()

        assert retried.failures == []
        assert retried.count(Origin.DOCUMENT, ChangeAction.UPDATED) == 1
        assert work_tracking.title("D1") == "two"
        assert await store.list_retries(pair_config.pair.pair_key) == []

    async def test_failed_work_tracking_change_is_retried(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        work_tracking.put("W1", story("one"))
        manager = make_manager()
        await manager.run()

        clock.advance()
        work_tracking.put("W1", story("two"))
        document.fail_entities.add("W1")
        clock.advance()
        failed = await manager.run()

        assert [f.origin for f in failed.failures] == [Origin.WORK_TRACKING]

        document.fail_entities.discard("W1")
        clock.advance()
        retried = await manager.run()

        assert retried.count(Origin.WORK_TRACKING, ChangeAction.UPDATED) == 1
        assert document.title("W1") == "two"
        assert await store.list_retries(pair_config.pair.pair_key) == []

    async def test_retry_dropped_when_sides_converge(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        document.put("D1", story("one"))
        manager = make_manager()
        await manager.run()

        clock.advance()
        document.put("D1", story("two"))
        work_tracking.fail_entities.add("D1")
        clock.advance()
        await manager.run()

        # Someone makes the same edit in work tracking by hand.
        work_tracking.fail_entities.discard("D1")
        clock.advance()
        work_tracking.put("D1", story("two"))
        clock.advance()
        report = await manager.run()

        assert report.outcomes == []
        assert report.conflicts == []
        assert await store.list_retries(pair_config.pair.pair_key) == []
        snapshot = (await store.get_snapshots(pair_config.pair.pair_key))["D1"]
        assert snapshot.document_hash == snapshot.work_tracking_hash

    async def test_archive_write_failure_fails_pass(
        self, make_manager, document, store, pair_config
    ):
        document.put("D1", story("one"))

        with patch.object(
            store, "upsert_snapshot", side_effect=PersistenceFailure("disk full")
        ):
            report = await make_manager().run()

        assert not report.success
        assert report.states[-2:] == [
            PassState.APPLYING_NON_CONFLICTING,
            PassState.FAILED,
        ]
        assert report.error_type == "PersistenceFailure"
        assert report.cursor_after is None
        assert await store.get_cursor(pair_config.pair) is None
        [record] = await store.list_history(pair_config.pair.pair_key)
        assert record.success is False
        assert record.error == "disk full"

    async def test_commit_failure_keeps_cursor(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        manager = make_manager()
        await manager.run()
        clock.advance()
        document.put("D1", story("one"))

        with patch.object(
            store, "commit_pass", side_effect=PersistenceFailure("database is locked")
        ):
            report = await manager.run()

        assert report.state is PassState.FAILED
        assert report.states[-2:] == [PassState.COMMITTED, PassState.FAILED]
        assert report.cursor_after == report.cursor_before == T0
        assert (await store.get_cursor(pair_config.pair)).timestamp == T0
        latest = (await store.list_history(pair_config.pair.pair_key))[0]
        assert latest.success is False
        assert "database is locked" in latest.error

        # The archived link keeps the rerun from creating D1 twice.
        clock.advance()
        rerun = await manager.run()
        assert rerun.success
        assert work_tracking.created == ["D1"]


# ---------------------------------------------------------------------------
# Direction and deletions
# ---------------------------------------------------------------------------


class TestDirectionAndDeletion:
    async def test_one_way_skips_other_origin(
        self, make_manager, work_tracking, document
    ):
        work_tracking.put("W1", story("w"))
        document.put("D1", story("d"))

        report = await make_manager(
            direction=SyncDirection.DOCUMENT_TO_WORK_TRACKING
        ).run()

        statuses = {o.entity_id: o.status for o in report.outcomes}
        assert statuses == {"D1": ApplyStatus.APPLIED, "W1": ApplyStatus.SKIPPED}
        assert "W1" not in document.items

    async def test_document_deletion_propagates(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        document.put("D1", story("d"))
        manager = make_manager()
        await manager.run()
        assert "D1" in work_tracking.items

        clock.advance()
        document.remove("D1")
        report = await manager.run()

        assert report.count(Origin.DOCUMENT, ChangeAction.DELETED) == 1
        assert "D1" not in work_tracking.items
        assert await store.get_snapshots(pair_config.pair.pair_key) == {}

        clock.advance()
        assert (await manager.run()).outcomes == []

    async def test_work_tracking_deletion_propagates(
        self, make_manager, work_tracking, document, clock
    ):
        work_tracking.put("W1", story("w"))
        manager = make_manager()
        await manager.run()

        clock.advance()
        work_tracking.remove("W1")
        report = await manager.run()

        assert report.count(Origin.WORK_TRACKING, ChangeAction.DELETED) == 1
        assert document.deleted == ["W1"]

    async def test_deleted_on_both_sides_forgotten(
        self, make_manager, work_tracking, document, store, pair_config, clock
    ):
        document.put("D1", story("d"))
        manager = make_manager()
        await manager.run()

        clock.advance()
        document.remove("D1")
        work_tracking.remove("D1")
        report = await manager.run()

        assert report.outcomes == []
        assert await store.get_snapshots(pair_config.pair.pair_key) == {}
