"""Lifespan management for MCP server startup and shutdown."""

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv

from ..config import Settings, load_settings
from ..config_loader import (
    discover_config_files,
    load_hierarchical_config,
)
from ..config_schema import UnifiedConfig, build_config, to_fallbacks
from ..core.async_utils import CallLimiter
from ..sync.clients import ClientPair, load_client_factory
from ..sync.models import SyncCadence, SyncPairConfig
from ..sync.scheduler import PassLocks, SyncScheduler
from ..sync.service import SyncService
from ..sync.store import SyncStateStore

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback (safe in MCP mode)."""
    print(msg, file=sys.stderr, flush=True)


def _missing_factory(config: SyncPairConfig) -> ClientPair:
    raise RuntimeError(
        "No client factory configured. Set PLANSYNC_CLIENT_FACTORY or "
        "clients.factory in .plansync/config.yml."
    )


def _scheduler_intervals(settings: Settings) -> dict[SyncCadence, float]:
    return {
        SyncCadence.HOURLY: settings.hourly_interval,
        SyncCadence.DAILY: settings.daily_interval,
        SyncCadence.WEEKLY: settings.weekly_interval,
    }


def apply_log_level(unified: UnifiedConfig, debug: bool = False) -> None:
    """Apply the YAML ``logging.level`` unless LOG_LEVEL or debug override it."""
    level = unified.logging.level
    if debug or not level or os.getenv("LOG_LEVEL"):
        return
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        raise ValueError(f"Invalid logging.level '{level}'")
    logging.getLogger().setLevel(numeric)


async def seed_configs(store: SyncStateStore, unified: UnifiedConfig) -> int:
    """Write the YAML ``sync`` section into the store.

    YAML is the source of truth for every configuration it names; entries
    only present in the store (added by an embedding application) are left
    alone.

    Returns:
        Number of configurations written.
    """
    configs = unified.sync_configs()
    for config in configs:
        await store.upsert_config(config)
    return len(configs)


@asynccontextmanager
async def server_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Manage server startup and shutdown lifecycle.

    On startup:
    - Load .env file (so values are available for env var lookups and YAML interpolation)
    - Load YAML config file if present (runtime fallbacks and sync configurations)
    - Merge all sources via load_settings(): CLI > env vars > .env > YAML > defaults
    - Open the state store and seed sync configurations
    - Import the client factory and build the service
    - Start the scheduler unless disabled

    On shutdown:
    - Stop the scheduler, waiting for in-flight passes
    - Close the state store

    Args:
        config_overrides: Optional dict with config values from CLI
            (db_path, client_factory, no_scheduler, debug)

    Yields:
        Dict with 'service', 'scheduler', 'store' and 'settings' keys

    Raises:
        RuntimeError: If configuration is invalid or the store cannot be opened.
    """
    logger.info("MCP server starting...")
    _stderr_print("plansync MCP server starting...")

    try:
        # 1. Load .env early (before YAML, so ${VAR} interpolation can use .env values)
        load_dotenv()

        # 2. Load YAML config if present
        unified = UnifiedConfig()
        yaml_fallbacks: dict[str, Any] | None = None
        config_files = discover_config_files()
        sources = []

        if config_files:
            raw = load_hierarchical_config()
            unified = build_config(raw)
            yaml_fallbacks = to_fallbacks(unified)
            sources.append(f"config file: {config_files[0]}")

        overrides = config_overrides or {}
        apply_log_level(unified, debug=overrides.get("debug", False))

        # 3. Single call to load_settings with all sources merged
        settings = load_settings(
            db_path=overrides.get("db_path"),
            client_factory=overrides.get("client_factory"),
            no_scheduler=overrides.get("no_scheduler", False),
            debug=overrides.get("debug", False),
            yaml_fallbacks=yaml_fallbacks,
        )

        if overrides:
            sources.append("CLI arguments")
        sources.append("environment variables")
        source_desc = ", ".join(sources)
        logger.info("Configuration loaded from: %s", source_desc)
        _stderr_print(f"  Configuration loaded from: {source_desc}")

        factory = (
            load_client_factory(settings.client_factory)
            if settings.client_factory
            else _missing_factory
        )
    except (ValueError, FileNotFoundError) as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        raise RuntimeError(f"Configuration error: {e}") from e

    store = SyncStateStore(settings.db_path)
    try:
        await store.open()
        seeded = await seed_configs(store, unified)
    except Exception as e:
        await store.close()
        logger.error("Cannot open state store %s: %s", settings.db_path, e)
        _stderr_print(f"ERROR: Cannot open state store {settings.db_path}: {e}")
        raise RuntimeError(
            f"Cannot open state store {settings.db_path}: {e}"
        ) from e

    logger.info("State store: %s (%d configurations seeded)", settings.db_path, seeded)
    _stderr_print(f"  State store: {settings.db_path}")
    _stderr_print(f"  Sync configurations from YAML: {seeded}")

    locks = PassLocks()
    limiter = CallLimiter(
        max_parallel=settings.max_parallel_calls,
        timeout=settings.call_timeout,
    )
    service = SyncService(store, factory, locks=locks, limiter=limiter)
    scheduler = SyncScheduler(
        store,
        service.run_pass,
        locks=locks,
        intervals=_scheduler_intervals(settings),
        max_concurrent_passes=settings.max_concurrent_passes,
    )
    if settings.scheduler_enabled:
        await scheduler.start()
        _stderr_print("  Scheduler: running")
    else:
        _stderr_print("  Scheduler: disabled")
    _stderr_print("Server ready. Waiting for MCP client connection...")

    try:
        yield {
            "service": service,
            "scheduler": scheduler,
            "store": store,
            "settings": settings,
        }
    finally:
        logger.info("MCP server shutting down")
        await scheduler.stop()
        await store.close()
        _stderr_print("plansync MCP server shutting down.")
