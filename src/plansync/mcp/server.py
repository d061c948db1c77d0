"""MCP server for the plansync engine using stdio transport.

This module implements the Model Context Protocol server that lets AI
agents trigger synchronization passes, inspect their state and resolve
conflicts through standardized tools.

Transport: stdio (for Claude Desktop/Code integration)
Protocol: JSON-RPC 2.0 over MCP
"""

import argparse
import asyncio
import logging
import os
import sys

import mcp.server.stdio
import mcp.types as types
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from .. import __version__
from ..config_loader import ensure_config
from ..logger import setup_logging
from ..sync.service import SyncService
from .lifespan import server_lifespan
from .tools import ALL_SPECS, ToolRegistry, build_error_response

logger = logging.getLogger(__name__)

# Initialize server instance
server = Server("plansync")

# Global service instance (initialized in lifespan)
_service: SyncService | None = None

# Global registry instance (initialized in main)
_registry: ToolRegistry | None = None


# ---------------------------------------------------------------------------
# Global accessors
# ---------------------------------------------------------------------------


def get_service() -> SyncService:
    """Get the global SyncService instance.

    Raises:
        RuntimeError: If the service is not initialized
    """
    if _service is None:
        raise RuntimeError(
            "SyncService not initialized. Server lifespan not started."
        )
    return _service


def set_service(service: SyncService | None) -> None:
    """Set the global SyncService instance, or None to clear."""
    global _service
    _service = service


def get_registry() -> ToolRegistry:
    """Get the global ToolRegistry instance.

    Raises:
        RuntimeError: If registry is not initialized
    """
    if _registry is None:
        raise RuntimeError("ToolRegistry not initialized.")
    return _registry


def set_registry(registry: ToolRegistry | None) -> None:
    """Set the global ToolRegistry instance, or None to clear."""
    global _registry
    _registry = registry


# ---------------------------------------------------------------------------
# MCP protocol handlers
# ---------------------------------------------------------------------------


@server.list_tools()
async def handle_list_tools() -> list[types.Tool]:
    """List available sync tools."""
    return get_registry().list_tools()


@server.call_tool()
async def handle_call_tool(
    name: str, arguments: dict | None
) -> types.CallToolResult:
    """Handle tool execution via ToolRegistry dispatch.

    Args:
        name: The name of the tool to execute.
        arguments: Tool arguments (optional).

    Returns:
        CallToolResult with tool output content and optional isError flag.
    """
    service = get_service()
    try:
        return await get_registry().call_tool(name, arguments, service)
    except ValueError as e:
        # Unknown or filtered-out tool name
        return build_error_response(
            "unknown_tool",
            str(e),
            "Use list_tools to see available tools.",
        )


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------


async def main(config_overrides: dict | None = None):
    """Run the MCP server with stdio transport.

    Sets up logging for MCP mode (file only, never stdout), opens the
    state store and starts the scheduler via the lifespan manager, then
    serves JSON-RPC over stdio.

    Args:
        config_overrides: Optional dict with config values to override
            (db_path, client_factory, no_scheduler, debug, log_file, read_only)
    """
    overrides = dict(config_overrides or {})
    log_file = overrides.pop("log_file", None)
    read_only = overrides.pop("read_only", False)

    # Must run before stdio_server so nothing reaches stdout during negotiation
    setup_logging(
        mode="mcp", debug=overrides.get("debug", False), log_file=log_file
    )

    registry = ToolRegistry(ALL_SPECS, read_only=read_only)
    logger.info(
        "Registered %d tools (of %d total)",
        registry.tool_count(),
        len(ALL_SPECS),
    )
    if read_only:
        print(
            f"Read-only mode: {registry.tool_count()} of {len(ALL_SPECS)} tools enabled",
            file=sys.stderr,
        )
    set_registry(registry)

    # set_service() is called here rather than in the lifespan so that
    # running via `python -m plansync.mcp.server` updates this module's
    # global and not a second import of it.
    async with server_lifespan(config_overrides=overrides or None) as ctx:
        set_service(ctx["service"])
        try:
            async with mcp.server.stdio.stdio_server() as (
                read_stream,
                write_stream,
            ):
                init_options = InitializationOptions(
                    server_name="plansync",
                    server_version=__version__,
                    capabilities=server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                )
                await server.run(read_stream, write_stream, init_options)
        finally:
            set_service(None)
            set_registry(None)


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        description="plansync - keep a planning document and a work-tracking team in step",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with default config (from .env or .plansync/config.yml)
  plansync

  # Use a specific state database and client factory
  plansync --db /var/lib/plansync/state.db --client-factory mypkg.clients:build

  # Serve tools only, passes run on demand
  plansync --no-scheduler

  # Expose status and conflict listings only
  plansync --read-only

Note: This server uses stdio transport for JSON-RPC communication with MCP clients.
All user-facing messages are written to stderr. Do not pipe stdin/stdout manually.
        """,
    )
    parser.add_argument(
        "--config",
        help="Path to a YAML config file (sets PLANSYNC_CONFIG)",
    )
    parser.add_argument(
        "--db",
        dest="db_path",
        help="SQLite state database path (takes precedence over PLANSYNC_DB_PATH and config files)",
    )
    parser.add_argument(
        "--client-factory",
        help="Client factory as 'module:attribute' (takes precedence over PLANSYNC_CLIENT_FACTORY)",
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Do not start the hourly/daily/weekly scheduler",
    )
    parser.add_argument(
        "--read-only",
        action="store_true",
        help="Only register tools that do not modify state",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        default="/tmp/plansync.log",
        help="Log file path (default: /tmp/plansync.log)",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a starter .plansync/config.yml if no config file exists, then exit",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"plansync version {__version__}",
    )
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict:
    """Build the config overrides dict from parsed CLI args."""
    config_overrides: dict = {}
    if args.db_path:
        config_overrides["db_path"] = args.db_path
    if args.client_factory:
        config_overrides["client_factory"] = args.client_factory
    if args.no_scheduler:
        config_overrides["no_scheduler"] = True
    if args.read_only:
        config_overrides["read_only"] = True
    if args.debug:
        config_overrides["debug"] = True
    if args.log_file:
        config_overrides["log_file"] = args.log_file
    return config_overrides


def run(argv: list[str] | None = None) -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    args = build_parser().parse_args(argv)
    if args.config:
        os.environ["PLANSYNC_CONFIG"] = args.config

    if args.init_config:
        print(f"Config file: {ensure_config()}", file=sys.stderr)
        return

    config_overrides = overrides_from_args(args)
    if config_overrides:
        print(
            f"Config overrides from CLI: {', '.join(config_overrides)}",
            file=sys.stderr,
        )

    try:
        asyncio.run(main(config_overrides=config_overrides or None))
    except RuntimeError:
        # Error already printed to stderr by lifespan manager
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    run()
