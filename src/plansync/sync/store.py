"""Durable sync state backed by SQLite.

The store exclusively owns every persisted piece of engine state:

* ``sync_cursor``  -- one watermark per pair, never moved backwards.
* ``conflict``     -- detected conflicts and their resolution state.
* ``sync_history`` -- append-only pass records.
* ``sync_entity``  -- per-entity links and archived content hashes.
* ``sync_config``  -- named synchronization configurations.
* ``sync_retry``   -- entity changes whose last application failed.

All writes go through a single ``aiosqlite`` connection guarded by an
``asyncio.Lock``; upserts use ``INSERT ... ON CONFLICT DO UPDATE`` so
concurrent passes for distinct pairs never interleave partial rows.
Timestamps are stored as integer milliseconds since the epoch (UTC).

Any database error is raised as ``PersistenceFailure``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import aiosqlite

from .errors import PairNotFound, PersistenceFailure
from .models import (
    Change,
    Conflict,
    EntityKind,
    EntitySnapshot,
    Origin,
    ResolutionStrategy,
    SyncCadence,
    SyncCursor,
    SyncDirection,
    SyncHistoryRecord,
    SyncPair,
    SyncPairConfig,
    utcnow,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_cursor (
    pair_key TEXT PRIMARY KEY,
    document_id TEXT NOT NULL,
    team_id TEXT NOT NULL,
    timestamp INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS conflict (
    id TEXT PRIMARY KEY,
    pair_key TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    document_change TEXT,
    work_tracking_change TEXT,
    is_resolved INTEGER NOT NULL DEFAULT 0,
    strategy TEXT,
    resolved_change TEXT,
    detected_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conflict_pair
    ON conflict (pair_key, is_resolved);

CREATE TABLE IF NOT EXISTS sync_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pair_key TEXT NOT NULL,
    config_name TEXT,
    success INTEGER NOT NULL,
    error TEXT,
    document_created INTEGER NOT NULL DEFAULT 0,
    document_updated INTEGER NOT NULL DEFAULT 0,
    document_deleted INTEGER NOT NULL DEFAULT 0,
    work_tracking_created INTEGER NOT NULL DEFAULT 0,
    work_tracking_updated INTEGER NOT NULL DEFAULT 0,
    work_tracking_deleted INTEGER NOT NULL DEFAULT 0,
    failed_changes INTEGER NOT NULL DEFAULT 0,
    conflicts_detected INTEGER NOT NULL DEFAULT 0,
    conflicts_resolved INTEGER NOT NULL DEFAULT 0,
    started_at INTEGER NOT NULL,
    completed_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_history_pair
    ON sync_history (pair_key, completed_at);

CREATE TABLE IF NOT EXISTS sync_entity (
    pair_key TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    work_item_id TEXT,
    section_id TEXT,
    document_hash TEXT,
    work_tracking_hash TEXT,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (pair_key, entity_id)
);

CREATE TABLE IF NOT EXISTS sync_config (
    name TEXT PRIMARY KEY,
    document_ref TEXT NOT NULL,
    team_id TEXT NOT NULL,
    direction TEXT NOT NULL,
    cadence TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    auto_resolve INTEGER NOT NULL DEFAULT 0,
    strategy TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_retry (
    pair_key TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    origin TEXT NOT NULL,
    error TEXT,
    failed_at INTEGER NOT NULL,
    PRIMARY KEY (pair_key, entity_id, origin)
);
"""


def to_millis(value: datetime) -> int:
    """Convert an aware datetime to integer epoch milliseconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def from_millis(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=value)


def _dump_change(change: Change | None) -> str | None:
    return change.model_dump_json() if change is not None else None


def _load_change(raw: str | None) -> Change | None:
    return Change.model_validate_json(raw) if raw is not None else None


class SyncStateStore:
    """Async SQLite store for cursors, conflicts, history, archive and configs.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Open the connection and create the schema if needed."""
        if self._connection is not None:
            return
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._connection = await aiosqlite.connect(
                self.db_path, isolation_level=None
            )
            self._connection.row_factory = aiosqlite.Row
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.executescript(SCHEMA)
        except aiosqlite.Error as e:
            raise PersistenceFailure(
                f"Cannot open sync state store at {self.db_path}: {e}"
            ) from e
        logger.info("Sync state store opened at %s", self.db_path)

    async def close(self) -> None:
        """Close the connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> SyncStateStore:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise PersistenceFailure("Sync state store is not open")
        return self._connection

    async def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run one statement and return the affected row count."""
        async with self._lock:
            try:
                cursor = await self._conn.execute(sql, tuple(params))
                return cursor.rowcount
            except aiosqlite.Error as e:
                raise PersistenceFailure(str(e)) from e

    async def _fetchone(
        self, sql: str, params: Iterable[Any] = ()
    ) -> aiosqlite.Row | None:
        async with self._lock:
            try:
                cursor = await self._conn.execute(sql, tuple(params))
                return await cursor.fetchone()
            except aiosqlite.Error as e:
                raise PersistenceFailure(str(e)) from e

    async def _fetchall(
        self, sql: str, params: Iterable[Any] = ()
    ) -> list[aiosqlite.Row]:
        async with self._lock:
            try:
                cursor = await self._conn.execute(sql, tuple(params))
                return list(await cursor.fetchall())
            except aiosqlite.Error as e:
                raise PersistenceFailure(str(e)) from e

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Hold the lock and run the body inside ``BEGIN``/``COMMIT``."""
        async with self._lock:
            conn = self._conn
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as e:
                raise PersistenceFailure(str(e)) from e
            try:
                yield conn
                await conn.execute("COMMIT")
            except aiosqlite.Error as e:
                await conn.execute("ROLLBACK")
                raise PersistenceFailure(str(e)) from e
            except BaseException:
                await conn.execute("ROLLBACK")
                raise

    # ------------------------------------------------------------------
    # Cursors
    # ------------------------------------------------------------------

    _UPSERT_CURSOR = """
        INSERT INTO sync_cursor (pair_key, document_id, team_id, timestamp)
        VALUES (?, ?, ?, ?)
        ON CONFLICT (pair_key) DO UPDATE SET
            timestamp = MAX(sync_cursor.timestamp, excluded.timestamp)
    """

    async def get_cursor(self, pair: SyncPair) -> SyncCursor | None:
        """Return the cursor for *pair*, ``None`` if never synchronized."""
        row = await self._fetchone(
            "SELECT * FROM sync_cursor WHERE pair_key = ?", (pair.pair_key,)
        )
        if row is None:
            return None
        return SyncCursor(
            pair_key=row["pair_key"],
            document_id=row["document_id"],
            team_id=row["team_id"],
            timestamp=from_millis(row["timestamp"]),
        )

    async def set_cursor(self, pair: SyncPair, timestamp: datetime) -> None:
        """Advance the cursor for *pair*. Never moves it backwards."""
        await self._execute(
            self._UPSERT_CURSOR,
            (pair.pair_key, pair.document_id, pair.team_id, to_millis(timestamp)),
        )

    async def reset_cursor(self, pair: SyncPair) -> bool:
        """Delete the cursor so the next pass bootstraps.

        Returns:
            ``True`` if a cursor existed.
        """
        count = await self._execute(
            "DELETE FROM sync_cursor WHERE pair_key = ?", (pair.pair_key,)
        )
        return count > 0

    async def commit_pass(
        self,
        pair: SyncPair,
        timestamp: datetime,
        record: SyncHistoryRecord,
    ) -> SyncCursor:
        """Advance the cursor and append the history record atomically.

        Returns:
            The cursor as stored after the commit.
        """
        async with self._transaction() as conn:
            await conn.execute(
                self._UPSERT_CURSOR,
                (
                    pair.pair_key,
                    pair.document_id,
                    pair.team_id,
                    to_millis(timestamp),
                ),
            )
            await conn.execute(self._INSERT_HISTORY, self._history_row(record))
            cursor = await conn.execute(
                "SELECT timestamp FROM sync_cursor WHERE pair_key = ?",
                (pair.pair_key,),
            )
            row = await cursor.fetchone()
        return SyncCursor(
            pair_key=pair.pair_key,
            document_id=pair.document_id,
            team_id=pair.team_id,
            timestamp=from_millis(row["timestamp"]),
        )

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def save_conflict(self, conflict: Conflict) -> None:
        """Insert or update a conflict.

        While an existing row is unresolved its first detection time and
        any operator strategy override are kept.
        """
        now = to_millis(utcnow())
        await self._execute(
            """
            INSERT INTO conflict (
                id, pair_key, entity_id, kind, document_change,
                work_tracking_change, is_resolved, strategy,
                resolved_change, detected_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                kind = excluded.kind,
                document_change = excluded.document_change,
                work_tracking_change = excluded.work_tracking_change,
                strategy = CASE
                    WHEN conflict.is_resolved = 0 AND excluded.strategy IS NULL
                    THEN conflict.strategy
                    ELSE excluded.strategy
                END,
                detected_at = CASE
                    WHEN conflict.is_resolved = 0 THEN conflict.detected_at
                    ELSE excluded.detected_at
                END,
                is_resolved = excluded.is_resolved,
                resolved_change = excluded.resolved_change,
                updated_at = excluded.updated_at
            """,
            (
                conflict.conflict_id,
                conflict.pair_key,
                conflict.entity_id,
                conflict.kind.value,
                _dump_change(conflict.document_change),
                _dump_change(conflict.work_tracking_change),
                int(conflict.is_resolved),
                conflict.strategy.value if conflict.strategy else None,
                _dump_change(conflict.resolved_change),
                to_millis(conflict.detected_at),
                now,
            ),
        )

    async def set_conflict_override(
        self, conflict_id: str, strategy: ResolutionStrategy
    ) -> bool:
        """Record an operator strategy on an unresolved conflict.

        Returns:
            ``True`` if an unresolved conflict was updated.
        """
        count = await self._execute(
            "UPDATE conflict SET strategy = ?, updated_at = ? "
            "WHERE id = ? AND is_resolved = 0",
            (strategy.value, to_millis(utcnow()), conflict_id),
        )
        return count > 0

    async def get_conflict(self, conflict_id: str) -> Conflict | None:
        """Return one conflict by id, ``None`` if absent."""
        row = await self._fetchone(
            "SELECT * FROM conflict WHERE id = ?", (conflict_id,)
        )
        return self._conflict_from_row(row) if row is not None else None

    async def list_conflicts(
        self,
        pair_key: str | None = None,
        resolved: bool | None = False,
    ) -> list[Conflict]:
        """List conflicts, oldest first.

        Args:
            pair_key: Restrict to one pair.
            resolved: ``False`` for unresolved only (default), ``True`` for
                resolved only, ``None`` for all.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if pair_key is not None:
            clauses.append("pair_key = ?")
            params.append(pair_key)
        if resolved is not None:
            clauses.append("is_resolved = ?")
            params.append(int(resolved))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(
            f"SELECT * FROM conflict {where} ORDER BY detected_at, id", params
        )
        return [self._conflict_from_row(row) for row in rows]

    async def unresolved_entity_ids(self, pair_key: str) -> set[str]:
        """Entity ids of *pair_key* with a pending conflict."""
        rows = await self._fetchall(
            "SELECT entity_id FROM conflict "
            "WHERE pair_key = ? AND is_resolved = 0",
            (pair_key,),
        )
        return {row["entity_id"] for row in rows}

    async def delete_conflict(self, conflict_id: str) -> bool:
        """Delete one conflict. Returns ``True`` if it existed."""
        count = await self._execute(
            "DELETE FROM conflict WHERE id = ?", (conflict_id,)
        )
        return count > 0

    async def clear_conflicts(
        self, pair_key: str, resolved_only: bool = True
    ) -> int:
        """Delete conflicts of *pair_key*.

        Args:
            pair_key: Pair to clear.
            resolved_only: Keep unresolved conflicts when ``True``.

        Returns:
            Number of rows removed.
        """
        sql = "DELETE FROM conflict WHERE pair_key = ?"
        if resolved_only:
            sql += " AND is_resolved = 1"
        return await self._execute(sql, (pair_key,))

    @staticmethod
    def _conflict_from_row(row: aiosqlite.Row) -> Conflict:
        return Conflict(
            conflict_id=row["id"],
            pair_key=row["pair_key"],
            entity_id=row["entity_id"],
            kind=EntityKind(row["kind"]),
            document_change=_load_change(row["document_change"]),
            work_tracking_change=_load_change(row["work_tracking_change"]),
            is_resolved=bool(row["is_resolved"]),
            strategy=(
                ResolutionStrategy(row["strategy"]) if row["strategy"] else None
            ),
            resolved_change=_load_change(row["resolved_change"]),
            detected_at=from_millis(row["detected_at"]),
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    _INSERT_HISTORY = """
        INSERT INTO sync_history (
            pair_key, config_name, success, error,
            document_created, document_updated, document_deleted,
            work_tracking_created, work_tracking_updated, work_tracking_deleted,
            failed_changes, conflicts_detected, conflicts_resolved,
            started_at, completed_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """

    @staticmethod
    def _history_row(record: SyncHistoryRecord) -> tuple:
        return (
            record.pair_key,
            record.config_name,
            int(record.success),
            record.error,
            record.document_created,
            record.document_updated,
            record.document_deleted,
            record.work_tracking_created,
            record.work_tracking_updated,
            record.work_tracking_deleted,
            record.failed_changes,
            record.conflicts_detected,
            record.conflicts_resolved,
            to_millis(record.started_at),
            to_millis(record.completed_at),
        )

    async def append_history(self, record: SyncHistoryRecord) -> None:
        """Append a pass record without touching the cursor."""
        await self._execute(self._INSERT_HISTORY, self._history_row(record))

    async def list_history(
        self, pair_key: str | None = None, limit: int = 20
    ) -> list[SyncHistoryRecord]:
        """Return pass records, most recent first."""
        if pair_key is None:
            rows = await self._fetchall(
                "SELECT * FROM sync_history "
                "ORDER BY completed_at DESC, id DESC LIMIT ?",
                (limit,),
            )
        else:
            rows = await self._fetchall(
                "SELECT * FROM sync_history WHERE pair_key = ? "
                "ORDER BY completed_at DESC, id DESC LIMIT ?",
                (pair_key, limit),
            )
        return [
            SyncHistoryRecord(
                history_id=row["id"],
                pair_key=row["pair_key"],
                config_name=row["config_name"],
                success=bool(row["success"]),
                error=row["error"],
                document_created=row["document_created"],
                document_updated=row["document_updated"],
                document_deleted=row["document_deleted"],
                work_tracking_created=row["work_tracking_created"],
                work_tracking_updated=row["work_tracking_updated"],
                work_tracking_deleted=row["work_tracking_deleted"],
                failed_changes=row["failed_changes"],
                conflicts_detected=row["conflicts_detected"],
                conflicts_resolved=row["conflicts_resolved"],
                started_at=from_millis(row["started_at"]),
                completed_at=from_millis(row["completed_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Entity archive
    # ------------------------------------------------------------------

    async def get_snapshots(self, pair_key: str) -> dict[str, EntitySnapshot]:
        """Return the archive of *pair_key* keyed by entity id."""
        rows = await self._fetchall(
            "SELECT * FROM sync_entity WHERE pair_key = ?", (pair_key,)
        )
        return {
            row["entity_id"]: EntitySnapshot(
                pair_key=row["pair_key"],
                entity_id=row["entity_id"],
                kind=EntityKind(row["kind"]),
                work_item_id=row["work_item_id"],
                section_id=row["section_id"],
                document_hash=row["document_hash"],
                work_tracking_hash=row["work_tracking_hash"],
            )
            for row in rows
        }

    async def upsert_snapshot(self, snapshot: EntitySnapshot) -> None:
        """Write the archive entry for one entity."""
        await self._execute(
            """
            INSERT INTO sync_entity (
                pair_key, entity_id, kind, work_item_id, section_id,
                document_hash, work_tracking_hash, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (pair_key, entity_id) DO UPDATE SET
                kind = excluded.kind,
                work_item_id = excluded.work_item_id,
                section_id = excluded.section_id,
                document_hash = excluded.document_hash,
                work_tracking_hash = excluded.work_tracking_hash,
                updated_at = excluded.updated_at
            """,
            (
                snapshot.pair_key,
                snapshot.entity_id,
                snapshot.kind.value,
                snapshot.work_item_id,
                snapshot.section_id,
                snapshot.document_hash,
                snapshot.work_tracking_hash,
                to_millis(utcnow()),
            ),
        )

    async def delete_snapshot(self, pair_key: str, entity_id: str) -> bool:
        """Forget one entity. Returns ``True`` if it was archived."""
        count = await self._execute(
            "DELETE FROM sync_entity WHERE pair_key = ? AND entity_id = ?",
            (pair_key, entity_id),
        )
        return count > 0

    # ------------------------------------------------------------------
    # Retries
    # ------------------------------------------------------------------

    async def mark_retry(
        self,
        pair_key: str,
        entity_id: str,
        origin: Origin,
        error: str | None = None,
    ) -> None:
        """Remember that applying *origin*'s change to *entity_id* failed.

        The next pass re-reads the entity whatever its timestamp.
        """
        await self._execute(
            """
            INSERT INTO sync_retry (pair_key, entity_id, origin, error, failed_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (pair_key, entity_id, origin) DO UPDATE SET
                error = excluded.error,
                failed_at = excluded.failed_at
            """,
            (pair_key, entity_id, origin.value, error, to_millis(utcnow())),
        )

    async def list_retries(self, pair_key: str) -> list[tuple[str, Origin]]:
        """Return ``(entity_id, origin)`` pairs awaiting a retry, oldest first."""
        rows = await self._fetchall(
            "SELECT entity_id, origin FROM sync_retry WHERE pair_key = ? "
            "ORDER BY failed_at, entity_id",
            (pair_key,),
        )
        return [(row["entity_id"], Origin(row["origin"])) for row in rows]

    async def clear_retry(
        self, pair_key: str, entity_id: str, origin: Origin
    ) -> bool:
        """Drop a pending retry. Returns ``True`` if one existed."""
        count = await self._execute(
            "DELETE FROM sync_retry "
            "WHERE pair_key = ? AND entity_id = ? AND origin = ?",
            (pair_key, entity_id, origin.value),
        )
        return count > 0

    # ------------------------------------------------------------------
    # Configurations
    # ------------------------------------------------------------------

    async def upsert_config(self, config: SyncPairConfig) -> None:
        """Insert or replace a named configuration."""
        await self._execute(
            """
            INSERT INTO sync_config (
                name, document_ref, team_id, direction, cadence,
                enabled, auto_resolve, strategy, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (name) DO UPDATE SET
                document_ref = excluded.document_ref,
                team_id = excluded.team_id,
                direction = excluded.direction,
                cadence = excluded.cadence,
                enabled = excluded.enabled,
                auto_resolve = excluded.auto_resolve,
                strategy = excluded.strategy,
                updated_at = excluded.updated_at
            """,
            (
                config.name,
                config.document_ref,
                config.team_id,
                config.direction.value,
                config.cadence.value,
                int(config.enabled),
                int(config.auto_resolve),
                config.strategy.value,
                to_millis(utcnow()),
            ),
        )

    async def get_config(self, name: str) -> SyncPairConfig | None:
        """Return a configuration by name, ``None`` if absent."""
        row = await self._fetchone(
            "SELECT * FROM sync_config WHERE name = ?", (name,)
        )
        return self._config_from_row(row) if row is not None else None

    async def list_configs(
        self,
        cadence: SyncCadence | None = None,
        enabled_only: bool = False,
    ) -> list[SyncPairConfig]:
        """List configurations ordered by name."""
        clauses: list[str] = []
        params: list[Any] = []
        if cadence is not None:
            clauses.append("cadence = ?")
            params.append(cadence.value)
        if enabled_only:
            clauses.append("enabled = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(
            f"SELECT * FROM sync_config {where} ORDER BY name", params
        )
        return [self._config_from_row(row) for row in rows]

    async def set_enabled(self, name: str, enabled: bool) -> SyncPairConfig:
        """Enable or disable a configuration.

        Raises:
            PairNotFound: If no configuration has that name.
        """
        count = await self._execute(
            "UPDATE sync_config SET enabled = ?, updated_at = ? WHERE name = ?",
            (int(enabled), to_millis(utcnow()), name),
        )
        if count == 0:
            raise PairNotFound(name)
        config = await self.get_config(name)
        if config is None:
            raise PairNotFound(name)
        return config

    async def delete_config(self, name: str) -> bool:
        """Delete a configuration. Returns ``True`` if it existed."""
        count = await self._execute(
            "DELETE FROM sync_config WHERE name = ?", (name,)
        )
        return count > 0

    @staticmethod
    def _config_from_row(row: aiosqlite.Row) -> SyncPairConfig:
        return SyncPairConfig(
            name=row["name"],
            document_ref=row["document_ref"],
            team_id=row["team_id"],
            direction=SyncDirection(row["direction"]),
            cadence=SyncCadence(row["cadence"]),
            enabled=bool(row["enabled"]),
            auto_resolve=bool(row["auto_resolve"]),
            strategy=ResolutionStrategy(row["strategy"]),
        )
