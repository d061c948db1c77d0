"""Cadence scheduler for synchronization passes.

One asyncio timer per cadence bucket (hourly, daily, weekly). On each tick
the scheduler loads the enabled configurations of that bucket from the
store and starts a pass for each one whose previous pass has finished.
A configuration still running is skipped for that tick, never queued.

The scheduler is an explicit instance created and owned by the host; it
has no module-level state.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from .errors import PassAlreadyRunning, SyncError
from .models import PassReport, SyncCadence, SyncPairConfig
from .store import SyncStateStore

logger = logging.getLogger(__name__)

PassRunner = Callable[[SyncPairConfig], Awaitable[PassReport]]

DEFAULT_INTERVALS: dict[SyncCadence, float] = {
    SyncCadence.HOURLY: 60 * 60,
    SyncCadence.DAILY: 24 * 60 * 60,
    SyncCadence.WEEKLY: 7 * 24 * 60 * 60,
}


class PassLocks:
    """Per-configuration locks shared by the scheduler and manual triggers."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, name: str) -> asyncio.Lock:
        return self._locks.setdefault(name, asyncio.Lock())

    def is_running(self, name: str) -> bool:
        """Whether a pass for *name* currently holds its lock."""
        lock = self._locks.get(name)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[None]:
        """Take the lock for *name* without waiting.

        Raises:
            PassAlreadyRunning: If the lock is already held.
        """
        lock = self._lock(name)
        if lock.locked():
            raise PassAlreadyRunning(name)
        async with lock:
            yield


class SyncScheduler:
    """Run passes for enabled configurations on their cadence.

    Args:
        store: State store holding the configurations.
        runner: Coroutine function running one pass for a configuration.
        locks: Lock registry shared with the operational surface.
        intervals: Seconds between ticks per cadence, overriding defaults.
        max_concurrent_passes: Global cap on concurrent passes, ``None``
            for no cap.
    """

    def __init__(
        self,
        store: SyncStateStore,
        runner: PassRunner,
        locks: PassLocks | None = None,
        intervals: dict[SyncCadence, float] | None = None,
        max_concurrent_passes: int | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.locks = locks or PassLocks()
        self.intervals = {**DEFAULT_INTERVALS, **(intervals or {})}
        self.intervals.pop(SyncCadence.ON_DEMAND, None)
        self._semaphore = (
            asyncio.Semaphore(max_concurrent_passes)
            if max_concurrent_passes
            else None
        )
        self._timers: dict[SyncCadence, asyncio.Task] = {}
        self._in_flight: set[asyncio.Task] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the timers are active."""
        return self._running

    @property
    def in_flight(self) -> int:
        """Number of passes currently started by the scheduler."""
        return len(self._in_flight)

    async def start(self) -> None:
        """Start one timer per cadence bucket."""
        if self._running:
            logger.warning("Scheduler already running")
            return
        self._running = True
        for cadence, interval in self.intervals.items():
            self._timers[cadence] = asyncio.create_task(
                self._timer(cadence, interval),
                name=f"plansync-{cadence.value}",
            )
        logger.info(
            "Scheduler started: %s",
            ", ".join(f"{c.value}={i:g}s" for c, i in self.intervals.items()),
        )

    async def stop(self) -> None:
        """Cancel the timers and wait for in-flight passes to finish."""
        self._running = False
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        await self.drain()
        logger.info("Scheduler stopped")

    async def drain(self) -> None:
        """Wait until every pass started so far has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def _timer(self, cadence: SyncCadence, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.tick(cadence)

    async def tick(self, cadence: SyncCadence) -> list[str]:
        """Start passes for the enabled configurations of *cadence*.

        Returns:
            Names of the configurations a pass was started for.
        """
        try:
            configs = await self.store.list_configs(cadence, enabled_only=True)
        except SyncError as exc:
            logger.error("Cannot load %s configurations: %s", cadence.value, exc)
            return []

        started: list[str] = []
        for config in configs:
            if self.locks.is_running(config.name):
                logger.info(
                    "Skipping '%s' this %s tick: previous pass still running",
                    config.name,
                    cadence.value,
                )
                continue
            task = asyncio.create_task(
                self._run(config), name=f"plansync-pass-{config.name}"
            )
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            started.append(config.name)
        return started

    async def _run(self, config: SyncPairConfig) -> PassReport | None:
        try:
            async with self.locks.hold(config.name):
                if self._semaphore is None:
                    return await self.runner(config)
                async with self._semaphore:
                    return await self.runner(config)
        except PassAlreadyRunning:
            logger.info("Skipping '%s': pass already running", config.name)
        except Exception:
            logger.exception("Scheduled pass for '%s' crashed", config.name)
        return None
