"""MCP tool handlers for the sync engine.

Defines six tools:

- ``sync_trigger`` -- run a pass for a named configuration now.
- ``sync_status`` -- cursor, last pass and pending conflicts of one
  configuration, or a summary of all of them.
- ``sync_conflicts`` -- list unresolved conflicts with a diff per conflict.
- ``sync_resolve_conflict`` -- resolve one conflict with a strategy.
- ``sync_history`` -- recent pass records of a configuration.
- ``sync_set_enabled`` -- enable or disable scheduled passes.
"""

from __future__ import annotations

import logging
from typing import Any

import mcp.types as types

from ...sync.models import ResolutionStrategy
from ...sync.reporter import (
    conflict_to_json,
    format_conflict,
    format_history,
    format_pass_report,
    format_status,
    history_to_json,
    report_to_json,
    status_to_json,
)
from ...sync.service import SyncService
from .errors import build_error_response, translate_result
from .registry import ToolSpec

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 200

_NAME_PROPERTY = {
    "type": "string",
    "description": "Name of the sync configuration",
}


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


SYNC_TOOLS: list[types.Tool] = [
    types.Tool(
        name="sync_trigger",
        description=(
            "Run a synchronization pass now for a named configuration. "
            "Propagates non-conflicting changes between the planning "
            "document and the work-tracking team and reports conflicts."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=True,
        ),
        inputSchema={
            "type": "object",
            "properties": {"name": _NAME_PROPERTY},
            "required": ["name"],
        },
    ),
    types.Tool(
        name="sync_status",
        description=(
            "Show the cursor, last pass and unresolved conflict count of a "
            "configuration. Without a name, summarize every configuration."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {"name": _NAME_PROPERTY},
            "required": [],
        },
    ),
    types.Tool(
        name="sync_conflicts",
        description=(
            "List unresolved conflicts with a diff of both sides. "
            "Optionally restricted to one configuration."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {"name": _NAME_PROPERTY},
            "required": [],
        },
    ),
    types.Tool(
        name="sync_resolve_conflict",
        description=(
            "Resolve one conflict and apply the winning change. 'manual' "
            "keeps the conflict open for a later decision."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=True,
            idempotentHint=True,
            openWorldHint=True,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "conflict_id": {
                    "type": "string",
                    "description": "Conflict id as listed by sync_conflicts",
                },
                "strategy": {
                    "type": "string",
                    "enum": [s.value for s in ResolutionStrategy],
                    "description": "Resolution strategy",
                },
            },
            "required": ["conflict_id", "strategy"],
        },
    ),
    types.Tool(
        name="sync_history",
        description="Show recent synchronization passes, most recent first.",
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "name": _NAME_PROPERTY,
                "limit": {
                    "type": "integer",
                    "default": 20,
                    "minimum": 1,
                    "maximum": MAX_HISTORY_LIMIT,
                    "description": "Maximum records to return",
                },
            },
            "required": ["name"],
        },
    ),
    types.Tool(
        name="sync_set_enabled",
        description=(
            "Enable or disable scheduled passes for a configuration. "
            "Manual sync_trigger calls still work while disabled."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "name": _NAME_PROPERTY,
                "enabled": {
                    "type": "boolean",
                    "description": "True to enable, false to disable",
                },
            },
            "required": ["name", "enabled"],
        },
    ),
]


# ---------------------------------------------------------------------------
# Tool handler
# ---------------------------------------------------------------------------


async def handle_sync_tool(
    name: str,
    arguments: dict[str, Any] | None,
    service: SyncService,
) -> types.CallToolResult:
    """Dispatch and execute a sync tool.

    Args:
        name: Tool name (one of ``SYNC_TOOLS``).
        arguments: Tool arguments dict.
        service: The running ``SyncService``.

    Returns:
        ``CallToolResult`` with tool output or error details.
    """
    args = arguments or {}

    try:
        match name:
            case "sync_trigger":
                return await _handle_trigger(service, args)
            case "sync_status":
                return await _handle_status(service, args)
            case "sync_conflicts":
                return await _handle_conflicts(service, args)
            case "sync_resolve_conflict":
                return await _handle_resolve(service, args)
            case "sync_history":
                return await _handle_history(service, args)
            case "sync_set_enabled":
                return await _handle_set_enabled(service, args)
            case _:
                raise ValueError(f"Unknown sync tool: {name}")

    except ValueError as exc:
        return build_error_response(
            "validation_error",
            str(exc),
            "Check parameter values and retry.",
        )
    except Exception as exc:
        logger.exception("Sync tool error: %s", exc)
        return build_error_response(
            "server_error",
            str(exc),
            "Check the sync configuration and the state database.",
        )


# ---------------------------------------------------------------------------
# Individual handlers
# ---------------------------------------------------------------------------


def _text_result(text: str, structured: Any = None) -> types.CallToolResult:
    if isinstance(structured, list):
        structured = {"items": structured}
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent=structured,
    )


def _require_str(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} is required")
    return value.strip()


def _optional_str(args: dict[str, Any], key: str) -> str | None:
    value = args.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} must be a non-empty string")
    return value.strip()


async def _handle_trigger(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``sync_trigger`` tool."""
    name = _require_str(args, "name")
    result = await service.trigger_sync(name)
    if not result.ok:
        if result.data is not None:
            # Failed pass: keep the report so the agent sees the failed state
            error = translate_result(result)
            error.content.append(
                types.TextContent(type="text", text=format_pass_report(result.data))
            )
            return error
        return translate_result(result)
    return _text_result(format_pass_report(result.data), report_to_json(result.data))


async def _handle_status(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``sync_status`` tool."""
    name = _optional_str(args, "name")
    if name is not None:
        result = await service.get_status(name)
        if not result.ok:
            return translate_result(result)
        return _text_result(format_status(result.data), status_to_json(result.data))

    configs = await service.store.list_configs()
    if not configs:
        return _text_result(
            "No sync configurations. Add entries to the 'sync' section of "
            ".plansync/config.yml.",
            [],
        )
    blocks: list[str] = []
    structured: list[dict] = []
    for config in configs:
        result = await service.get_status(config.name)
        if not result.ok:
            return translate_result(result)
        blocks.append(format_status(result.data))
        structured.append(status_to_json(result.data))
    return _text_result("\n\n".join(blocks), structured)


async def _handle_conflicts(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``sync_conflicts`` tool."""
    name = _optional_str(args, "name")
    result = await service.list_unresolved_conflicts(name)
    if not result.ok:
        return translate_result(result)
    conflicts = result.data
    if not conflicts:
        return _text_result("No unresolved conflicts.", [])
    text = "\n\n".join(format_conflict(c) for c in conflicts)
    return _text_result(
        f"{len(conflicts)} unresolved conflict(s):\n\n{text}",
        [conflict_to_json(c) for c in conflicts],
    )


async def _handle_resolve(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``sync_resolve_conflict`` tool."""
    conflict_id = _require_str(args, "conflict_id")
    strategy = _require_str(args, "strategy")
    result = await service.resolve_conflict(conflict_id, strategy)
    if not result.ok:
        return translate_result(result)
    resolved = result.data
    lines = [result.message]
    if resolved.outcome is not None:
        lines.append(
            f"  {resolved.outcome.action.value} {resolved.outcome.entity_id} "
            f"-> {resolved.outcome.target.value}: {resolved.outcome.status.value}"
        )
    structured = {
        "conflict": conflict_to_json(resolved.conflict),
        "outcome": (
            resolved.outcome.model_dump(mode="json")
            if resolved.outcome is not None
            else None
        ),
    }
    return _text_result("\n".join(lines), structured)


async def _handle_history(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``sync_history`` tool."""
    name = _require_str(args, "name")
    limit = args.get("limit", 20)
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValueError("limit must be an integer")
    if not (1 <= limit <= MAX_HISTORY_LIMIT):
        raise ValueError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")
    result = await service.list_history(name, limit)
    if not result.ok:
        return translate_result(result)
    return _text_result(format_history(result.data), history_to_json(result.data))


async def _handle_set_enabled(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``sync_set_enabled`` tool."""
    name = _require_str(args, "name")
    enabled = args.get("enabled")
    if not isinstance(enabled, bool):
        raise ValueError("enabled must be a boolean")
    result = await service.set_enabled(name, enabled)
    if not result.ok:
        return translate_result(result)
    return _text_result(result.message, result.data.model_dump(mode="json"))


_HANDLERS = {
    "sync_trigger": _handle_trigger,
    "sync_status": _handle_status,
    "sync_conflicts": _handle_conflicts,
    "sync_resolve_conflict": _handle_resolve,
    "sync_history": _handle_history,
    "sync_set_enabled": _handle_set_enabled,
}

SYNC_SPECS: list[ToolSpec] = [
    ToolSpec(tool=tool, handler=_HANDLERS[tool.name]) for tool in SYNC_TOOLS
]
