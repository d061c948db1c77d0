"""
YAML configuration files for plansync.

Files are looked up in three places, highest precedence first:

1. the path in ``PLANSYNC_CONFIG``;
2. ``.plansync/config.yml`` in the working directory;
3. ``~/.config/plansync/config.yml``.

Top-level sections of a higher file replace the same sections of a lower
one. ``!include other.yml`` pulls a file in place (handy for a long
``sync`` section) and ``${VAR:-default}`` is expanded after the merge.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "PLANSYNC_CONFIG"
PROJECT_CONFIG = Path(".plansync") / "config.yml"
GLOBAL_CONFIG = Path(".config") / "plansync" / "config.yml"

# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` in *value*.

    An unset or empty variable expands to the default, or to ``""``.
    """
    return _ENV_VAR_PATTERN.sub(
        lambda m: os.environ.get(m.group(1)) or m.group(2) or "", value
    )


def _interpolate_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader with ``!include``, leaving ``yaml.SafeLoader`` untouched."""

    include_stack: list[Path]


def _include_constructor(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    parent = loader.include_stack[-1]
    path = Path(loader.construct_scalar(node)).expanduser()
    if not path.is_absolute():
        path = parent.parent / path
    path = path.resolve()

    if path in loader.include_stack:
        chain = " -> ".join(str(p) for p in [*loader.include_stack, path])
        raise ValueError(f"Circular include detected: {chain}")
    if not path.exists():
        raise FileNotFoundError(
            f"Include file not found: {path} (referenced from {parent})"
        )
    return _load_yaml_with_includes(path, [*loader.include_stack, path])


ConfigLoader.add_constructor("!include", _include_constructor)


def _load_yaml_with_includes(
    path: Path, include_stack: list[Path] | None = None
) -> Any:
    path = path.resolve()
    with open(path, encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader.include_stack = include_stack or [path]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


def discover_config_files() -> list[Path]:
    """Return the config files that exist, highest precedence first."""
    candidates: list[Path] = []
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())
    candidates.append(Path.cwd() / PROJECT_CONFIG)
    candidates.append(Path.home() / GLOBAL_CONFIG)
    return [p for p in candidates if p.exists()]


_STARTER_CONFIG = """\
# plansync configuration
#
# Environment variables take precedence over this file:
#   PLANSYNC_DB_PATH, PLANSYNC_CLIENT_FACTORY, PLANSYNC_MAX_PARALLEL_CALLS,
#   PLANSYNC_CALL_TIMEOUT, PLANSYNC_SCHEDULER, LOG_LEVEL, LOG_FILE
#
# store:
#   path: .plansync/state.db
#
# clients:
#   factory: mypackage.clients:build_clients
#   max_parallel_calls: 4
#   call_timeout: 30
#
# scheduler:
#   enabled: true
#   max_concurrent_passes: 2
#
# One entry per document/team pair:
#
# sync:
#   roadmap:
#     document_ref: ${ROADMAP_DOC:-roadmap-2026}
#     team_id: ENG
#     direction: bidirectional
#     cadence: hourly
#     auto_resolve: true
#     strategy: newer-wins
#
# logging:
#   level: INFO
"""


def ensure_config() -> Path:
    """Return the active config file, writing a commented starter if none exists."""
    existing = discover_config_files()
    if existing:
        return existing[0]
    path = Path.cwd() / PROJECT_CONFIG
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", path)
    return path


def load_hierarchical_config() -> dict[str, Any]:
    """Load, merge and interpolate every discovered config file.

    Returns an empty dict when no file exists.
    """
    merged: dict[str, Any] = {}
    for path in reversed(discover_config_files()):
        logger.debug("Loading config: %s", path)
        data = _load_yaml_with_includes(path)
        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has a %s root, skipping",
                path,
                type(data).__name__,
            )
    return _interpolate_recursive(merged)
