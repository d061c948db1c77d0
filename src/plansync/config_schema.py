"""Unified configuration schema for plansync.

Defines Pydantic models for the unified config structure with dedicated
sections for the state store, external clients, the scheduler, logging and
the named sync configurations.

Usage:
    from plansync.config_schema import UnifiedConfig, build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
    for pair_config in unified.sync_configs():
        ...
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from .sync.models import (
    ResolutionStrategy,
    SyncCadence,
    SyncDirection,
    SyncPairConfig,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class StoreConfig(BaseModel):
    """State store settings."""

    path: str | None = Field(
        default=None, description="SQLite database path for sync state"
    )

    model_config = {"frozen": True}


class ClientsConfig(BaseModel):
    """External client settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    factory: str | None = Field(
        default=None,
        description="Client factory import path ('module:attribute')",
    )
    max_parallel_calls: int | None = Field(
        default=None,
        ge=1,
        le=100,
        description="Maximum concurrent calls to external systems (1-100)",
    )
    call_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Per-call deadline in seconds",
    )

    model_config = {"frozen": True}


class SchedulerConfig(BaseModel):
    """Scheduler settings."""

    enabled: bool | None = Field(
        default=None, description="Start the cadence scheduler"
    )
    max_concurrent_passes: int | None = Field(
        default=None,
        ge=1,
        description="Global cap on concurrent scheduled passes",
    )
    hourly_interval: float | None = Field(
        default=None, gt=0, description="Seconds between hourly ticks"
    )
    daily_interval: float | None = Field(
        default=None, gt=0, description="Seconds between daily ticks"
    )
    weekly_interval: float | None = Field(
        default=None, gt=0, description="Seconds between weekly ticks"
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            ``LOG_LEVEL`` and ``--debug`` take precedence.
    """

    level: str | None = Field(default=None, description="Log level")

    model_config = {"frozen": True}


class SyncEntryConfig(BaseModel):
    """One named sync configuration as written in YAML.

    The entry's key in the ``sync`` mapping is its name.
    """

    document_ref: str = Field(description="Document identifier or URL")
    team_id: str = Field(description="Work-tracking team identifier")
    direction: SyncDirection = Field(
        default=SyncDirection.BIDIRECTIONAL,
        description="Which origins are propagated",
    )
    cadence: SyncCadence = Field(
        default=SyncCadence.HOURLY, description="Scheduler bucket"
    )
    enabled: bool = Field(default=True, description="Run on schedule")
    auto_resolve: bool = Field(
        default=False, description="Resolve conflicts automatically"
    )
    strategy: ResolutionStrategy = Field(
        default=ResolutionStrategy.WORK_TRACKING_WINS,
        description="Strategy used when auto_resolve is set",
    )

    model_config = {"frozen": True, "extra": "forbid"}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    store: StoreConfig = Field(default_factory=StoreConfig)
    clients: ClientsConfig = Field(default_factory=ClientsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    sync: dict[str, SyncEntryConfig] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def sync_configs(self) -> list[SyncPairConfig]:
        """Return the ``sync`` section as ``SyncPairConfig`` values."""
        return [
            SyncPairConfig(name=name, **entry.model_dump())
            for name, entry in sorted(self.sync.items())
        ]


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully: anything absent gets defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()
    # An empty ``sync:`` key parses as None
    data = {k: v for k, v in raw_data.items() if v is not None}
    return UnifiedConfig(**data)


def to_fallbacks(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten the runtime sections into the fallback dict used by
    ``load_settings()``.

    Only values actually set in YAML are included, so built-in defaults
    stay owned by ``load_settings()``.
    """
    fallbacks: dict[str, Any] = {
        "db_path": unified.store.path,
        "client_factory": unified.clients.factory,
        "max_parallel_calls": unified.clients.max_parallel_calls,
        "call_timeout": unified.clients.call_timeout,
        "scheduler_enabled": unified.scheduler.enabled,
        "max_concurrent_passes": unified.scheduler.max_concurrent_passes,
        "hourly_interval": unified.scheduler.hourly_interval,
        "daily_interval": unified.scheduler.daily_interval,
        "weekly_interval": unified.scheduler.weekly_interval,
    }
    return {k: v for k, v in fallbacks.items() if v is not None}
