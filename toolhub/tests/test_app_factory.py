"""AppFactory wiring and mcp.json seeding."""

import json

import pytest

from toolhub.infrastructure.app_factory import AppFactory
from toolhub.modules.config import ConfigManager
from toolhub.modules.registry import InMemoryServerRegistry, SqlServerRegistry, reset_engine
from toolhub.tests.conftest import FakeClientFactory


@pytest.fixture
def seeded_config(tmp_path, monkeypatch):
    (tmp_path / "mcp.json").write_text(json.dumps({
        "files": {"command": ["mcp-files", "--root", "/data"], "description": "File access"},
        "web": {"url": "https://web.test/mcp", "is_public": True, "timeout_ms": 10000},
        "broken": {"description": "neither command nor url"},
    }))
    monkeypatch.setenv("APP_CONFIG_DIR", str(tmp_path))
    monkeypatch.setenv("MCP_SEED_OWNER", "admin@example.com")
    monkeypatch.setenv("REGISTRY_BACKEND", "memory")
    monkeypatch.setenv("MCP_IDLE_TIMEOUT", "0")
    return ConfigManager()


class TestAppFactory:
    @pytest.mark.asyncio
    async def test_seed_servers_from_config(self, seeded_config):
        factory = AppFactory(config_manager=seeded_config, client_factory=FakeClientFactory())
        try:
            await factory.initialize()

            servers = {s.name: s for s in await factory.registry.list("admin@example.com")}
            assert set(servers) == {"files", "web"}
            assert servers["files"].transport.args == ["--root", "/data"]
            assert servers["web"].is_public is True
            assert servers["web"].policy.timeout_ms == 10000

            # seeding again skips names that already exist
            assert await factory.seed_servers() == 0
        finally:
            await factory.shutdown()

    @pytest.mark.asyncio
    async def test_memory_backend_selected(self, seeded_config):
        factory = AppFactory(config_manager=seeded_config, client_factory=FakeClientFactory())
        try:
            assert isinstance(factory.registry, InMemoryServerRegistry)
            assert factory.get_server_service().registry is factory.registry
        finally:
            await factory.shutdown()

    @pytest.mark.asyncio
    async def test_sql_backend_initializes_tables(self, tmp_path, monkeypatch):
        monkeypatch.setenv("REGISTRY_BACKEND", "sql")
        monkeypatch.setenv("TOOLHUB_DB_URL", f"sqlite:///{tmp_path / 'factory.db'}")
        monkeypatch.delenv("MCP_SEED_OWNER", raising=False)
        reset_engine()
        factory = AppFactory(config_manager=ConfigManager(), client_factory=FakeClientFactory())
        try:
            await factory.initialize()

            assert isinstance(factory.registry, SqlServerRegistry)
            assert await factory.registry.list() == []
        finally:
            await factory.shutdown()
            reset_engine()
