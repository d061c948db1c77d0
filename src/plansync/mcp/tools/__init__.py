"""MCP tool handlers for the sync engine.

This package contains MCP tool implementations that wrap ``SyncService``
operations with async handlers, report formatting, and structured error
responses.
"""

from .errors import build_error_response, translate_result
from .registry import ToolRegistry, ToolSpec
from .sync import SYNC_SPECS, SYNC_TOOLS, handle_sync_tool

ALL_SPECS: list[ToolSpec] = list(SYNC_SPECS)

__all__ = [
    "build_error_response",
    "translate_result",
    # Registry
    "ToolSpec",
    "ToolRegistry",
    # Spec lists
    "ALL_SPECS",
    "SYNC_SPECS",
    # Tool definitions and dispatch
    "SYNC_TOOLS",
    "handle_sync_tool",
]
