"""Per-user tool aggregation across servers."""

import pytest

from toolhub.domain.servers.models import (
    ConnectionPolicy,
    ConnectionStatus,
    ServerDefinition,
    StreamTransport,
    UserServerConfig,
)
from toolhub.tests.conftest import tools

URL_A = "http://tools-a.test/mcp"
URL_B = "http://tools-b.test/mcp"


async def add_server(registry, name, url, owner="alice", **fields) -> ServerDefinition:
    server = ServerDefinition(
        owner_id=owner,
        name=name,
        transport=StreamTransport(url=url),
        policy=ConnectionPolicy(max_retries=0, retry_delay_ms=100, timeout_ms=5000),
        **fields,
    )
    return await registry.create(server)


async def add_config(registry, user_id, server, **fields) -> UserServerConfig:
    return await registry.upsert_user_config(UserServerConfig(user_id=user_id, server_id=server.id, **fields))


class TestGetToolsForUser:
    """Tools offered to a user from every usable server."""

    @pytest.mark.asyncio
    async def test_tools_from_two_servers(self, aggregator, registry, client_factory):
        client_factory.add(URL_A, tools=tools("a1", "a2"))
        client_factory.add(URL_B, tools=tools("b1"))
        server_a = await add_server(registry, "A", URL_A)
        server_b = await add_server(registry, "B", URL_B)
        await add_config(registry, "alice", server_a)
        await add_config(registry, "alice", server_b)

        result = await aggregator.get_tools_for_user("alice")

        assert [(t.server_name, t.name) for t in result] == [("A", "a1"), ("A", "a2"), ("B", "b1")]
        assert result[0].server_id == server_a.id

    @pytest.mark.asyncio
    async def test_user_override_hides_tool(self, aggregator, registry, client_factory):
        client_factory.add(URL_A, tools=tools("a1", "a2"))
        client_factory.add(URL_B, tools=tools("b1"))
        server_a = await add_server(registry, "A", URL_A)
        server_b = await add_server(registry, "B", URL_B)
        await add_config(registry, "alice", server_a, tool_overrides={"a2": False})
        await add_config(registry, "alice", server_b)

        result = await aggregator.get_tools_for_user("alice")

        assert [t.name for t in result] == ["a1", "b1"]

    @pytest.mark.asyncio
    async def test_mirror_disabled_tool_hidden(self, aggregator, registry, client_factory):
        client_factory.add(URL_A, tools=tools("a1", "a2"))
        server_a = await add_server(registry, "A", URL_A)
        await add_config(registry, "alice", server_a, tool_overrides={"a1": True})
        await registry.replace_tools(server_a.id, tools("a1", "a2"))
        await registry.set_tool_enabled(server_a.id, "a1", False)

        result = await aggregator.get_tools_for_user("alice")

        # a disabled mirror entry wins over the user's explicit enable
        assert [t.name for t in result] == ["a2"]

    @pytest.mark.asyncio
    async def test_name_collision_keeps_first(self, aggregator, registry, client_factory):
        client_factory.add(URL_A, tools=tools("search"))
        client_factory.add(URL_B, tools=tools("search", "fetch"))
        server_a = await add_server(registry, "A", URL_A)
        server_b = await add_server(registry, "B", URL_B)
        await add_config(registry, "alice", server_a)
        await add_config(registry, "alice", server_b)

        result = await aggregator.get_tools_for_user("alice")

        assert [(t.server_name, t.name) for t in result] == [("A", "search"), ("B", "fetch")]

    @pytest.mark.asyncio
    async def test_disabled_server_and_config_skipped(self, aggregator, registry, client_factory):
        client_factory.add(URL_A, tools=tools("a1"))
        client_factory.add(URL_B, tools=tools("b1"))
        server_a = await add_server(registry, "A", URL_A, is_enabled=False)
        server_b = await add_server(registry, "B", URL_B)
        await add_config(registry, "alice", server_a)
        await add_config(registry, "alice", server_b, is_enabled=False)

        result = await aggregator.get_tools_for_user("alice")

        assert result == []
        assert client_factory.clients == []

    @pytest.mark.asyncio
    async def test_failing_server_does_not_block_others(self, aggregator, registry, client_factory):
        client_factory.add(URL_A, connect_error=ConnectionRefusedError("Connection refused"))
        client_factory.add(URL_B, tools=tools("b1"))
        server_a = await add_server(registry, "A", URL_A)
        server_b = await add_server(registry, "B", URL_B)
        await add_config(registry, "alice", server_a)
        await add_config(registry, "alice", server_b)

        result = await aggregator.get_tools_for_user("alice")

        assert [t.name for t in result] == ["b1"]

    @pytest.mark.asyncio
    async def test_undecryptable_credentials_skip_server(self, aggregator, registry, client_factory):
        client_factory.add(URL_A, tools=tools("a1"))
        client_factory.add(URL_B, tools=tools("b1"))
        server_a = await add_server(registry, "A", URL_A)
        server_b = await add_server(registry, "B", URL_B)
        await add_config(registry, "alice", server_a, encrypted_credentials="not-a-token")
        await add_config(registry, "alice", server_b)

        result = await aggregator.get_tools_for_user("alice")

        assert [t.name for t in result] == ["b1"]
        assert client_factory.clients_for(URL_A) == []

    @pytest.mark.asyncio
    async def test_credentials_reach_client(self, aggregator, registry, resolver, client_factory):
        client_factory.add(URL_A, tools=tools("a1"))
        server_a = await add_server(registry, "A", URL_A)
        blob = resolver.encrypt({"token": "secret"}, "alice")
        await add_config(registry, "alice", server_a, encrypted_credentials=blob)

        await aggregator.get_tools_for_user("alice")

        assert client_factory.clients[0].credentials == {"token": "secret"}

    @pytest.mark.asyncio
    async def test_private_server_of_other_user_skipped(self, aggregator, registry, client_factory):
        client_factory.add(URL_A, tools=tools("private"))
        client_factory.add(URL_B, tools=tools("public"))
        private = await add_server(registry, "private", URL_A, owner="bob")
        public = await add_server(registry, "public", URL_B, owner="bob", is_public=True)
        await add_config(registry, "alice", private)
        await add_config(registry, "alice", public)

        result = await aggregator.get_tools_for_user("alice")

        assert [t.name for t in result] == ["public"]

    @pytest.mark.asyncio
    async def test_no_configs_no_tools(self, aggregator):
        assert await aggregator.get_tools_for_user("nobody") == []


class TestStatusForUser:
    @pytest.mark.asyncio
    async def test_statuses_by_server(self, aggregator, registry, client_factory):
        client_factory.add(URL_A, tools=tools("a1"))
        server_a = await add_server(registry, "A", URL_A)
        server_b = await add_server(registry, "B", URL_B)
        await add_config(registry, "alice", server_a)
        await add_config(registry, "alice", server_b, encrypted_credentials="not-a-token")

        statuses = await aggregator.get_status_for_user("alice")

        assert statuses[server_a.id].status == ConnectionStatus.CONNECTED
        assert statuses[server_b.id].status == ConnectionStatus.ERROR
        assert "decrypted" in statuses[server_b.id].last_error

    @pytest.mark.asyncio
    async def test_lost_client_not_reported_connected(self, aggregator, manager, registry, client_factory):
        endpoint = client_factory.add(URL_A, tools=tools("a1"))
        server_a = await add_server(registry, "A", URL_A)
        await add_config(registry, "alice", server_a)
        await aggregator.get_tools_for_user("alice")

        client_factory.clients[0].drop()
        endpoint.connect_error = ConnectionRefusedError("Connection refused")

        assert manager.get_status("alice", server_a.id).status == ConnectionStatus.ERROR
        statuses = await aggregator.get_status_for_user("alice")
        assert statuses[server_a.id].status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_lost_client_reconnected_on_demand(self, aggregator, registry, client_factory):
        client_factory.add(URL_A, tools=tools("a1"))
        server_a = await add_server(registry, "A", URL_A)
        await add_config(registry, "alice", server_a)
        await aggregator.get_tools_for_user("alice")
        client_factory.clients[0].drop()

        statuses = await aggregator.get_status_for_user("alice")

        assert statuses[server_a.id].status == ConnectionStatus.CONNECTED
        assert len(client_factory.clients) == 2
        assert client_factory.clients[-1].is_connected()

    @pytest.mark.asyncio
    async def test_registered_entry_connected_on_demand(self, aggregator, manager, registry, client_factory):
        client_factory.add(URL_A, tools=tools("a1"))
        server_a = await add_server(registry, "A", URL_A)
        await add_config(registry, "alice", server_a)
        await manager.register("alice", server_a.id, server_a.transport, server_a.policy)

        statuses = await aggregator.get_status_for_user("alice")

        assert statuses[server_a.id].status == ConnectionStatus.CONNECTED
        assert len(client_factory.clients) == 1


class TestFunctionSchemas:
    @pytest.mark.asyncio
    async def test_function_schema_shape(self, aggregator, registry, client_factory):
        client_factory.add(URL_A, tools=tools("lookup"))
        server_a = await add_server(registry, "A", URL_A)
        await add_config(registry, "alice", server_a)

        schemas = aggregator.to_function_schemas(await aggregator.get_tools_for_user("alice"))

        assert schemas == [
            {
                "type": "function",
                "function": {
                    "name": "lookup",
                    "description": "lookup tool",
                    "parameters": {"type": "object", "properties": {}},
                },
            }
        ]
