"""Tests for the MCP server module: routing, accessors and CLI parsing.

Handler behavior is tested in tests/test_mcp/tools/ -- this file only
covers the server layer on top of the registry.
"""

from unittest.mock import MagicMock, patch

import mcp.types as types
import pytest

from plansync.mcp import server
from plansync.mcp.server import (
    build_parser,
    get_registry,
    get_service,
    handle_call_tool,
    handle_list_tools,
    overrides_from_args,
    run,
    set_registry,
    set_service,
)
from plansync.mcp.tools import ALL_SPECS
from plansync.mcp.tools.registry import ToolRegistry
from plansync.sync.service import SyncService


@pytest.fixture
async def wired(store, client_factory, clock, pair_config):
    """Install a registry and a real service as the server globals."""
    await store.upsert_config(pair_config)
    set_registry(ToolRegistry(ALL_SPECS))
    set_service(SyncService(store, client_factory, clock=clock))
    yield
    set_service(None)
    set_registry(None)


# ---------------------------------------------------------------------------
# Accessors
# ---------------------------------------------------------------------------


class TestAccessors:
    def test_service_not_initialized(self):
        with pytest.raises(RuntimeError, match="not initialized"):
            get_service()

    def test_registry_not_initialized(self):
        with pytest.raises(RuntimeError, match="not initialized"):
            get_registry()


# ---------------------------------------------------------------------------
# Protocol handlers
# ---------------------------------------------------------------------------


class TestProtocolHandlers:
    async def test_list_tools(self, wired):
        tools = await handle_list_tools()
        assert len(tools) == len(ALL_SPECS)
        assert all(isinstance(t, types.Tool) for t in tools)

    async def test_call_routes_to_service(self, wired):
        result = await handle_call_tool("sync_status", {"name": "roadmap"})
        assert not result.isError
        assert "Sync configuration 'roadmap'" in result.content[0].text

    async def test_unknown_tool(self, wired):
        result = await handle_call_tool("sync_explode", {})
        assert result.isError
        assert "Error (unknown_tool)" in result.content[0].text


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestCli:
    def test_defaults_only_carry_log_file(self):
        args = build_parser().parse_args([])
        assert overrides_from_args(args) == {"log_file": "/tmp/plansync.log"}

    def test_all_flags(self):
        args = build_parser().parse_args(
            [
                "--db",
                "state.db",
                "--client-factory",
                "acme.clients:build",
                "--no-scheduler",
                "--read-only",
                "--debug",
                "--log-file",
                "p.log",
            ]
        )
        assert overrides_from_args(args) == {
            "db_path": "state.db",
            "client_factory": "acme.clients:build",
            "no_scheduler": True,
            "read_only": True,
            "debug": True,
            "log_file": "p.log",
        }

    def test_init_config(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        monkeypatch.delenv("PLANSYNC_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        with patch.object(server.asyncio, "run") as mock_run:
            run(["--init-config"])
        mock_run.assert_not_called()
        assert (tmp_path / ".plansync" / "config.yml").exists()
        assert "Config file:" in capsys.readouterr().err

    def test_config_flag_sets_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PLANSYNC_CONFIG", "unused")
        target = tmp_path / "explicit.yml"
        with (
            patch.object(server, "main", MagicMock()),
            patch.object(server.asyncio, "run"),
        ):
            run(["--config", str(target)])
        assert server.os.environ["PLANSYNC_CONFIG"] == str(target)

    def test_startup_failure_exits_1(self):
        with (
            patch.object(server, "main", MagicMock()),
            patch.object(server.asyncio, "run", side_effect=RuntimeError("x")),
        ):
            with pytest.raises(SystemExit) as exc_info:
                run(["--no-scheduler"])
        assert exc_info.value.code == 1
