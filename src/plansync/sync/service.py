"""Operational surface of the engine.

``SyncService`` is what hosts (the MCP server, tests, embedding
applications) call. Every operation returns an ``OperationResult`` with a
``ResultCode`` instead of raising, so callers can map outcomes directly to
responses:

- ``success``              -- the operation completed.
- ``not_found``            -- unknown configuration or conflict.
- ``already_running``      -- a pass for the configuration is in progress.
- ``upstream_unavailable`` -- an external system (or the state store)
  failed.
- ``invalid_request``      -- malformed input such as an unknown strategy.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from ..core.async_utils import CallLimiter
from .clients import ClientPair
from .errors import (
    ConflictNotFound,
    DetectionFailure,
    PairNotFound,
    PassAlreadyRunning,
    PersistenceFailure,
    ResolutionFailure,
)
from .manager import SyncManager
from .models import (
    ApplyStatus,
    PassReport,
    SyncHistoryRecord,
    SyncPairConfig,
    utcnow,
)
from .resolver import ConflictResolver, parse_strategy
from .scheduler import PassLocks
from .store import SyncStateStore

logger = logging.getLogger(__name__)


class ResultCode(str, Enum):
    """Outcome codes of operational requests."""

    SUCCESS = "success"
    NOT_FOUND = "not_found"
    ALREADY_RUNNING = "already_running"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    INVALID_REQUEST = "invalid_request"


@dataclass(frozen=True)
class OperationResult:
    """Coded result of an operational request.

    Attributes:
        code: Outcome code.
        message: Human-readable summary.
        data: Operation-specific payload (report, status, conflicts...).
    """

    code: ResultCode
    message: str
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.code is ResultCode.SUCCESS


def _store_unavailable(func):
    """Report state store failures as ``upstream_unavailable``."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except PersistenceFailure as exc:
            logger.error("State store failed during %s: %s", func.__name__, exc)
            return OperationResult(ResultCode.UPSTREAM_UNAVAILABLE, str(exc))

    return wrapper


@dataclass(frozen=True)
class SyncStatus:
    """Current state of one configuration."""

    config: SyncPairConfig
    running: bool
    cursor: datetime | None
    last_pass: SyncHistoryRecord | None
    unresolved_conflicts: int


class SyncService:
    """Trigger passes, inspect state and resolve conflicts.

    Args:
        store: The opened state store.
        client_factory: Builds the client pair for a configuration.
        locks: Lock registry shared with the scheduler.
        limiter: Call limiter shared by every pass.
        resolver: Conflict resolver.
        clock: Source of "now".
    """

    def __init__(
        self,
        store: SyncStateStore,
        client_factory: Callable[[SyncPairConfig], ClientPair],
        locks: PassLocks | None = None,
        limiter: CallLimiter | None = None,
        resolver: ConflictResolver | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.client_factory = client_factory
        self.locks = locks or PassLocks()
        self.limiter = limiter or CallLimiter()
        self.resolver = resolver or ConflictResolver()
        self.clock = clock

    def manager_for(self, config: SyncPairConfig) -> SyncManager:
        """Build a ``SyncManager`` for *config* with fresh clients."""
        work_tracking, document = self.client_factory(config)
        return SyncManager(
            config,
            work_tracking,
            document,
            self.store,
            limiter=self.limiter,
            resolver=self.resolver,
            clock=self.clock,
        )

    async def run_pass(self, config: SyncPairConfig) -> PassReport:
        """Run one pass for *config*. The caller holds the lock.

        Used as the scheduler's runner.
        """
        return await self.manager_for(config).run()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @_store_unavailable
    async def trigger_sync(self, name: str) -> OperationResult:
        """Run a pass for configuration *name* now."""
        config = await self.store.get_config(name)
        if config is None:
            return OperationResult(
                ResultCode.NOT_FOUND, f"Sync configuration '{name}' not found"
            )
        try:
            async with self.locks.hold(name):
                try:
                    manager = self.manager_for(config)
                except Exception as exc:
                    logger.error("Cannot build clients for '%s': %s", name, exc)
                    return OperationResult(
                        ResultCode.UPSTREAM_UNAVAILABLE,
                        f"Cannot build clients for '{name}': {exc}",
                    )
                report = await manager.run()
        except PassAlreadyRunning as exc:
            return OperationResult(ResultCode.ALREADY_RUNNING, str(exc))

        if not report.success:
            return OperationResult(
                ResultCode.UPSTREAM_UNAVAILABLE,
                f"Sync pass for '{name}' failed: {report.error}",
                report,
            )
        return OperationResult(
            ResultCode.SUCCESS, f"Sync pass for '{name}' committed", report
        )

    @_store_unavailable
    async def get_status(self, name: str) -> OperationResult:
        """Report the cursor, last pass and pending conflicts of *name*."""
        config = await self.store.get_config(name)
        if config is None:
            return OperationResult(
                ResultCode.NOT_FOUND, f"Sync configuration '{name}' not found"
            )
        pair_key = config.pair.pair_key
        cursor = await self.store.get_cursor(config.pair)
        history = await self.store.list_history(pair_key, limit=1)
        unresolved = await self.store.list_conflicts(pair_key, resolved=False)
        status = SyncStatus(
            config=config,
            running=self.locks.is_running(name),
            cursor=cursor.timestamp if cursor is not None else None,
            last_pass=history[0] if history else None,
            unresolved_conflicts=len(unresolved),
        )
        return OperationResult(ResultCode.SUCCESS, f"Status of '{name}'", status)

    @_store_unavailable
    async def list_unresolved_conflicts(
        self, name: str | None = None
    ) -> OperationResult:
        """List unresolved conflicts of *name*, or of every pair."""
        pair_key = None
        if name is not None:
            config = await self.store.get_config(name)
            if config is None:
                return OperationResult(
                    ResultCode.NOT_FOUND,
                    f"Sync configuration '{name}' not found",
                )
            pair_key = config.pair.pair_key
        conflicts = await self.store.list_conflicts(pair_key, resolved=False)
        return OperationResult(
            ResultCode.SUCCESS,
            f"{len(conflicts)} unresolved conflict(s)",
            conflicts,
        )

    @_store_unavailable
    async def resolve_conflict(
        self, conflict_id: str, strategy: str
    ) -> OperationResult:
        """Resolve one conflict with *strategy* and apply the winner."""
        try:
            parsed = parse_strategy(strategy)
        except ValueError as exc:
            return OperationResult(ResultCode.INVALID_REQUEST, str(exc))

        conflict = await self.store.get_conflict(conflict_id)
        if conflict is None:
            return OperationResult(
                ResultCode.NOT_FOUND, f"Conflict '{conflict_id}' not found"
            )
        config = await self._config_for_pair(conflict.pair_key)
        if config is None:
            return OperationResult(
                ResultCode.NOT_FOUND,
                f"No sync configuration covers pair '{conflict.pair_key}'",
            )

        try:
            async with self.locks.hold(config.name):
                try:
                    manager = self.manager_for(config)
                except Exception as exc:
                    return OperationResult(
                        ResultCode.UPSTREAM_UNAVAILABLE,
                        f"Cannot build clients for '{config.name}': {exc}",
                    )
                result = await manager.resolve_conflict(conflict_id, parsed)
        except PassAlreadyRunning as exc:
            return OperationResult(ResultCode.ALREADY_RUNNING, str(exc))
        except ConflictNotFound as exc:
            return OperationResult(ResultCode.NOT_FOUND, str(exc))
        except ResolutionFailure as exc:
            return OperationResult(ResultCode.INVALID_REQUEST, str(exc))
        except DetectionFailure as exc:
            return OperationResult(ResultCode.UPSTREAM_UNAVAILABLE, str(exc))

        if result.outcome is not None and result.outcome.status is ApplyStatus.FAILED:
            return OperationResult(
                ResultCode.UPSTREAM_UNAVAILABLE,
                f"Resolved '{conflict_id}' but applying it failed: "
                f"{result.outcome.error}",
                result,
            )
        if not result.conflict.is_resolved:
            message = f"Conflict '{conflict_id}' left for manual resolution"
        else:
            message = (
                f"Conflict '{conflict_id}' resolved with "
                f"{result.conflict.strategy.value}"
            )
        return OperationResult(ResultCode.SUCCESS, message, result)

    @_store_unavailable
    async def list_history(self, name: str, limit: int = 20) -> OperationResult:
        """Return recent pass records of *name*, most recent first."""
        config = await self.store.get_config(name)
        if config is None:
            return OperationResult(
                ResultCode.NOT_FOUND, f"Sync configuration '{name}' not found"
            )
        records = await self.store.list_history(config.pair.pair_key, limit)
        return OperationResult(
            ResultCode.SUCCESS, f"{len(records)} pass record(s)", records
        )

    @_store_unavailable
    async def set_enabled(self, name: str, enabled: bool) -> OperationResult:
        """Enable or disable scheduled passes for *name*."""
        config = await self.store.get_config(name)
        if config is None:
            return OperationResult(
                ResultCode.NOT_FOUND, f"Sync configuration '{name}' not found"
            )
        try:
            updated = await self.store.set_enabled(name, enabled)
        except PairNotFound as exc:
            return OperationResult(ResultCode.NOT_FOUND, str(exc))
        state = "enabled" if enabled else "disabled"
        return OperationResult(
            ResultCode.SUCCESS, f"Sync configuration '{name}' {state}", updated
        )

    async def _config_for_pair(self, pair_key: str) -> SyncPairConfig | None:
        for config in await self.store.list_configs():
            if config.pair.pair_key == pair_key:
                return config
        return None
