"""Runtime settings for the plansync server.

Reads engine settings from CLI args, environment variables, .env files,
and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    PLANSYNC_DB_PATH: SQLite state database (optional, default: .plansync/state.db)
    PLANSYNC_CLIENT_FACTORY: Client factory 'module:attribute' (optional)
    PLANSYNC_MAX_PARALLEL_CALLS: Max concurrent external calls (optional, default: 4)
    PLANSYNC_CALL_TIMEOUT: Per-call deadline in seconds, 0 disables (optional, default: 30)
    PLANSYNC_SCHEDULER: Start the cadence scheduler (optional, default: true)
    PLANSYNC_MAX_CONCURRENT_PASSES: Cap on concurrent scheduled passes (optional)
    PLANSYNC_DEBUG: Enable debug logging (optional, default: false)
"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = ".plansync/state.db"


@dataclass
class Settings:
    db_path: str = DEFAULT_DB_PATH
    client_factory: str | None = None
    max_parallel_calls: int = 4
    call_timeout: float | None = 30.0
    scheduler_enabled: bool = True
    max_concurrent_passes: int | None = None
    hourly_interval: float = 60 * 60
    daily_interval: float = 24 * 60 * 60
    weekly_interval: float = 7 * 24 * 60 * 60
    debug: bool = False


def validate_settings(settings: Settings) -> None:
    """Validate settings values and raise ValueError if invalid.

    Args:
        settings: Settings instance to validate.

    Raises:
        ValueError: If a path is empty, the factory path is malformed, or a
            numeric value is out of range.
    """
    settings.db_path = settings.db_path.strip()
    if not settings.db_path:
        raise ValueError(
            "State database path cannot be empty. Set PLANSYNC_DB_PATH."
        )

    if settings.client_factory is not None:
        settings.client_factory = settings.client_factory.strip()
        module, sep, attr = settings.client_factory.partition(":")
        if not (module and sep and attr):
            raise ValueError(
                f"Invalid client factory '{settings.client_factory}': "
                "expected 'module:attribute'"
            )

    if not (1 <= settings.max_parallel_calls <= 100):
        raise ValueError(
            f"Invalid max_parallel_calls {settings.max_parallel_calls}: "
            "must be between 1 and 100"
        )

    if settings.call_timeout is not None and settings.call_timeout <= 0:
        raise ValueError(
            f"Invalid call_timeout {settings.call_timeout}: must be positive"
        )

    if settings.max_concurrent_passes is not None and settings.max_concurrent_passes < 1:
        raise ValueError(
            f"Invalid max_concurrent_passes {settings.max_concurrent_passes}: "
            "must be at least 1"
        )

    for name in ("hourly_interval", "daily_interval", "weekly_interval"):
        if getattr(settings, name) <= 0:
            raise ValueError(f"Invalid {name}: must be positive")

    if settings.client_factory is None:
        logger.warning(
            "No client factory configured: manual and scheduled passes "
            "will report upstream_unavailable"
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _get_number_env(key: str, cast: type, minimum: float) -> float | int | None:
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number >= {minimum}"
        ) from None
    if value < minimum:
        raise ValueError(f"Invalid {key} '{raw}': must be a number >= {minimum}")
    return value


def load_settings(
    db_path: str | None = None,
    client_factory: str | None = None,
    no_scheduler: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Settings:
    """Load runtime settings with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        db_path: Override state database path.
        client_factory: Override client factory import path.
        no_scheduler: Disable the scheduler (CLI flag).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flattened YAML values (see
            ``config_schema.to_fallbacks``).

    Returns:
        Validated Settings instance.

    Raises:
        ValueError: If any value is invalid after checking all sources.
    """
    fb = yaml_fallbacks or {}
    defaults = Settings()

    # --- String fields: CLI > env > YAML > default ---

    final_db_path = (
        db_path or os.getenv("PLANSYNC_DB_PATH") or fb.get("db_path") or DEFAULT_DB_PATH
    )
    final_factory = (
        client_factory
        or os.getenv("PLANSYNC_CLIENT_FACTORY")
        or fb.get("client_factory")
    )

    # --- Boolean fields: CLI > env > YAML > default ---

    if no_scheduler:
        final_scheduler = False
    else:
        env_scheduler = _get_bool_env("PLANSYNC_SCHEDULER")
        if env_scheduler is not None:
            final_scheduler = env_scheduler
        else:
            final_scheduler = bool(fb.get("scheduler_enabled", True))

    if debug:
        final_debug = True
    else:
        env_debug = _get_bool_env("PLANSYNC_DEBUG")
        final_debug = env_debug if env_debug is not None else False

    # --- Numeric fields: env > YAML > default ---

    max_parallel = _get_number_env("PLANSYNC_MAX_PARALLEL_CALLS", int, 1)
    if max_parallel is None:
        max_parallel = int(fb.get("max_parallel_calls", defaults.max_parallel_calls))

    timeout = _get_number_env("PLANSYNC_CALL_TIMEOUT", float, 0)
    if timeout is None:
        timeout = float(fb.get("call_timeout", defaults.call_timeout))
    final_timeout = timeout if timeout > 0 else None

    max_passes = _get_number_env("PLANSYNC_MAX_CONCURRENT_PASSES", int, 1)
    if max_passes is None and "max_concurrent_passes" in fb:
        max_passes = int(fb["max_concurrent_passes"])

    settings = Settings(
        db_path=str(final_db_path),
        client_factory=final_factory,
        max_parallel_calls=int(max_parallel),
        call_timeout=final_timeout,
        scheduler_enabled=final_scheduler,
        max_concurrent_passes=max_passes,
        hourly_interval=float(fb.get("hourly_interval", defaults.hourly_interval)),
        daily_interval=float(fb.get("daily_interval", defaults.daily_interval)),
        weekly_interval=float(fb.get("weekly_interval", defaults.weekly_interval)),
        debug=final_debug,
    )

    validate_settings(settings)

    return settings
