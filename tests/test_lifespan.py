"""Tests for plansync.mcp.lifespan: server startup/shutdown lifecycle.

Tests the server_lifespan() async context manager which:
- Merges CLI overrides, env vars and YAML config into settings
- Opens the state store and seeds the YAML sync configurations
- Builds the service and starts the scheduler unless disabled
- Fails fast with RuntimeError on config errors or store failures
- Stops the scheduler and closes the store on exit
"""

import logging
import textwrap
from unittest.mock import patch

import pytest

from plansync.config_schema import UnifiedConfig, build_config
from plansync.mcp.lifespan import apply_log_level, seed_configs, server_lifespan
from plansync.sync.errors import PersistenceFailure
from plansync.sync.models import SyncPairConfig
from plansync.sync.service import ResultCode

_CONFIG_YAML = """\
sync:
  roadmap:
    document_ref: doc-1
    team_id: ENG
    cadence: daily
  ops:
    document_ref: doc-2
    team_id: OPS
    enabled: false
"""

# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """No stray config files, env vars or stderr noise."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    for key in (
        "PLANSYNC_CONFIG",
        "PLANSYNC_DB_PATH",
        "PLANSYNC_CLIENT_FACTORY",
        "PLANSYNC_SCHEDULER",
        "PLANSYNC_MAX_PARALLEL_CALLS",
        "PLANSYNC_CALL_TIMEOUT",
        "PLANSYNC_MAX_CONCURRENT_PASSES",
        "PLANSYNC_DEBUG",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(key, raising=False)
    with (
        patch("plansync.mcp.lifespan.load_dotenv"),
        patch("plansync.mcp.lifespan._stderr_print"),
    ):
        yield


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / "plansync.yml"
    path.write_text(_CONFIG_YAML)
    monkeypatch.setenv("PLANSYNC_CONFIG", str(path))
    return path


@pytest.fixture
def factory_path(tmp_path, monkeypatch):
    """Import path of a client factory returning two dummy clients."""
    (tmp_path / "lifespan_clients.py").write_text(
        textwrap.dedent(
            """
            def build(config):
                return object(), object()
            """
        )
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    return "lifespan_clients:build"


# -------------------------------------------------------------------------
# server_lifespan() - successful startup
# -------------------------------------------------------------------------


class TestServerLifespanSuccess:
    """Tests for the happy path through server_lifespan()."""

    async def test_seeds_configs_from_yaml(self, tmp_path, config_file, factory_path):
        db_path = tmp_path / "state.db"
        overrides = {
            "db_path": str(db_path),
            "client_factory": factory_path,
            "no_scheduler": True,
        }
        async with server_lifespan(overrides) as ctx:
            store = ctx["store"]
            roadmap = await store.get_config("roadmap")
            assert roadmap.team_id == "ENG"
            assert roadmap.cadence.value == "daily"
            assert (await store.get_config("ops")).enabled is False
            assert ctx["settings"].db_path == str(db_path)
            assert ctx["settings"].client_factory == factory_path
            assert not ctx["scheduler"].is_running
        assert db_path.exists()

    async def test_store_closed_on_exit(self, tmp_path):
        async with server_lifespan(
            {"db_path": str(tmp_path / "s.db"), "no_scheduler": True}
        ) as ctx:
            store = ctx["store"]
        with pytest.raises(PersistenceFailure):
            await store.get_config("roadmap")

    async def test_scheduler_started_and_stopped(self, tmp_path):
        async with server_lifespan({"db_path": str(tmp_path / "s.db")}) as ctx:
            scheduler = ctx["scheduler"]
            assert scheduler.is_running
        assert not scheduler.is_running

    async def test_env_disables_scheduler(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PLANSYNC_SCHEDULER", "false")
        async with server_lifespan({"db_path": str(tmp_path / "s.db")}) as ctx:
            assert not ctx["scheduler"].is_running

    async def test_missing_factory_reports_upstream_unavailable(
        self, tmp_path, config_file
    ):
        async with server_lifespan(
            {"db_path": str(tmp_path / "s.db"), "no_scheduler": True}
        ) as ctx:
            result = await ctx["service"].trigger_sync("roadmap")
        assert result.code is ResultCode.UPSTREAM_UNAVAILABLE
        assert "No client factory configured" in result.message

    async def test_zero_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PLANSYNC_DB_PATH", str(tmp_path / "env.db"))
        async with server_lifespan({"no_scheduler": True}) as ctx:
            assert await ctx["store"].list_configs() == []
        assert (tmp_path / "env.db").exists()


# -------------------------------------------------------------------------
# server_lifespan() - failures
# -------------------------------------------------------------------------


class TestServerLifespanErrors:
    """Startup failures become RuntimeError."""

    async def test_invalid_factory_path(self, tmp_path):
        with pytest.raises(RuntimeError, match="Configuration error"):
            async with server_lifespan(
                {"db_path": str(tmp_path / "s.db"), "client_factory": "nocolon"}
            ):
                pass

    async def test_unimportable_factory(self, tmp_path):
        with pytest.raises(RuntimeError, match="Cannot import client factory"):
            async with server_lifespan(
                {
                    "db_path": str(tmp_path / "s.db"),
                    "client_factory": "plansync_missing_mod:build",
                }
            ):
                pass

    async def test_invalid_yaml_entry(self, tmp_path, monkeypatch):
        path = tmp_path / "bad.yml"
        path.write_text("sync:\n  roadmap:\n    team_id: ENG\n")
        monkeypatch.setenv("PLANSYNC_CONFIG", str(path))
        with pytest.raises(RuntimeError, match="Configuration error"):
            async with server_lifespan({"db_path": str(tmp_path / "s.db")}):
                pass

    async def test_unopenable_store(self, tmp_path):
        directory = tmp_path / "a-directory"
        directory.mkdir()
        with pytest.raises(RuntimeError, match="Cannot open state store"):
            async with server_lifespan(
                {"db_path": str(directory), "no_scheduler": True}
            ):
                pass


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------


class TestSeedConfigs:
    async def test_yaml_overwrites_named_configs_only(self, store):
        await store.upsert_config(
            SyncPairConfig(name="roadmap", document_ref="old", team_id="ENG")
        )
        await store.upsert_config(
            SyncPairConfig(name="embedded", document_ref="e", team_id="X")
        )
        unified = build_config(
            {"sync": {"roadmap": {"document_ref": "doc-1", "team_id": "ENG"}}}
        )

        assert await seed_configs(store, unified) == 1
        assert (await store.get_config("roadmap")).document_ref == "doc-1"
        assert (await store.get_config("embedded")) is not None


class TestApplyLogLevel:
    @pytest.fixture(autouse=True)
    def restore_root_level(self):
        root = logging.getLogger()
        level = root.level
        yield
        root.setLevel(level)

    def test_sets_root_level(self):
        apply_log_level(build_config({"logging": {"level": "error"}}))
        assert logging.getLogger().level == logging.ERROR

    def test_env_wins(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        logging.getLogger().setLevel(logging.WARNING)
        apply_log_level(build_config({"logging": {"level": "ERROR"}}))
        assert logging.getLogger().level == logging.WARNING

    def test_debug_wins(self):
        logging.getLogger().setLevel(logging.DEBUG)
        apply_log_level(build_config({"logging": {"level": "ERROR"}}), debug=True)
        assert logging.getLogger().level == logging.DEBUG

    def test_unset_is_noop(self):
        logging.getLogger().setLevel(logging.INFO)
        apply_log_level(UnifiedConfig())
        assert logging.getLogger().level == logging.INFO

    def test_invalid_level(self):
        with pytest.raises(ValueError, match="Invalid logging.level"):
            apply_log_level(build_config({"logging": {"level": "CHATTY"}}))
