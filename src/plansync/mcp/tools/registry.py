"""ToolSpec and ToolRegistry for MCP tool dispatch.

Key concepts:
- ToolSpec: Immutable dataclass linking a Tool definition and an async
  handler with standardized signature (service, args) -> CallToolResult.
- ToolRegistry: Optionally drops mutating tools at construction time
  (read-only mode), then provides list_tools() and call_tool() dispatch
  with error translation.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import mcp.types as types

from ...sync.errors import SyncError
from ...sync.service import SyncService

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Immutable specification for a single MCP tool.

    Attributes:
        tool: The MCP Tool definition (name, description, inputSchema).
        handler: Async handler with signature (service, args) -> CallToolResult.
    """

    tool: types.Tool
    handler: Callable[[SyncService, dict], Awaitable[types.CallToolResult]]

    @property
    def read_only(self) -> bool:
        annotations = self.tool.annotations
        return bool(annotations and annotations.readOnlyHint)


class ToolRegistry:
    """Registry of ToolSpecs.

    With ``read_only=True`` only tools annotated ``readOnlyHint`` are
    registered, so an operator can expose status and conflict listings
    without letting agents trigger passes or resolve conflicts.
    """

    def __init__(self, specs: list[ToolSpec], read_only: bool = False):
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs:
            if read_only and not spec.read_only:
                continue
            self._specs[spec.tool.name] = spec

    def list_tools(self) -> list[types.Tool]:
        """Return list of types.Tool for all registered specs."""
        return [spec.tool for spec in self._specs.values()]

    def tool_count(self) -> int:
        """Return number of registered tools."""
        return len(self._specs)

    async def call_tool(
        self,
        name: str,
        arguments: dict | None,
        service: SyncService,
    ) -> types.CallToolResult:
        """Dispatch tool call to registered handler.

        Translates validation errors, engine errors and unexpected
        exceptions into structured CallToolResult responses.

        Raises:
            ValueError: If tool name is not registered (unknown or filtered out).
        """
        from .errors import build_error_response

        spec = self._specs.get(name)
        if spec is None:
            raise ValueError(f"Unknown tool: {name}")
        args = arguments or {}
        try:
            return await spec.handler(service, args)
        except ValueError as e:
            return build_error_response(
                "validation_error",
                str(e),
                "Check parameter values and retry.",
            )
        except SyncError as e:
            logger.warning("Sync error in %s: %s", name, e)
            return build_error_response(
                "upstream_unavailable",
                str(e),
                "Check the state database and external systems, then retry.",
            )
        except Exception as e:
            logger.exception("Unexpected error in tool %s", name)
            return build_error_response(
                "server_error",
                str(e),
                "Check the server log and retry later.",
            )
