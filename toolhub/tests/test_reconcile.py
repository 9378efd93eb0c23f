"""Reconciliation of persisted status against live connections."""

import pytest

from toolhub.domain.servers.models import (
    ConnectionPolicy,
    ConnectionStatus,
    ServerDefinition,
    StreamTransport,
)
from toolhub.tests.conftest import tools

URL = "http://reconcile.test/mcp"


def make_server(status=ConnectionStatus.DISCONNECTED, last_error=None, owner="alice") -> ServerDefinition:
    return ServerDefinition(
        owner_id=owner,
        name="reconcile",
        transport=StreamTransport(url=URL),
        policy=ConnectionPolicy(max_retries=0, retry_delay_ms=100, timeout_ms=5000),
        connection_status=status,
        last_error=last_error,
    )


class TestManagerReconcile:
    """Rules applied by MCPConnectionManager.reconcile."""

    @pytest.mark.asyncio
    async def test_persisted_connected_without_entry_becomes_disconnected(self, manager):
        server = make_server(ConnectionStatus.CONNECTED)

        correction = await manager.reconcile(server)

        assert correction.status == ConnectionStatus.DISCONNECTED
        assert correction.changed is True
        assert correction.last_error is None

    @pytest.mark.asyncio
    async def test_persisted_connecting_without_entry_becomes_disconnected(self, manager):
        correction = await manager.reconcile(make_server(ConnectionStatus.CONNECTING))

        assert correction.status == ConnectionStatus.DISCONNECTED
        assert correction.changed is True

    @pytest.mark.asyncio
    async def test_persisted_error_without_entry_is_kept(self, manager):
        server = make_server(ConnectionStatus.ERROR, last_error="boom")

        correction = await manager.reconcile(server)

        assert correction.status == ConnectionStatus.ERROR
        assert correction.last_error == "boom"
        assert correction.changed is False

    @pytest.mark.asyncio
    async def test_live_connection_wins(self, manager, client_factory):
        client_factory.add(URL, tools=tools("t"))
        server = make_server(ConnectionStatus.DISCONNECTED)
        await manager.connect("alice", server.id, server.transport, server.policy)

        correction = await manager.reconcile(server)

        assert correction.status == ConnectionStatus.CONNECTED
        assert correction.last_connected is not None
        assert correction.changed is True

    @pytest.mark.asyncio
    async def test_lost_connection_becomes_error(self, manager, client_factory):
        client_factory.add(URL)
        server = make_server(ConnectionStatus.CONNECTED)
        await manager.connect("alice", server.id, server.transport, server.policy)
        client_factory.clients[0].drop()

        correction = await manager.reconcile(server)

        assert correction.status == ConnectionStatus.ERROR
        assert correction.last_error == "Connection lost"
        assert manager.get_status("alice", server.id).status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_reconcile_for_other_user(self, manager, client_factory):
        client_factory.add(URL)
        server = make_server(ConnectionStatus.DISCONNECTED)
        await manager.connect("bob", server.id, server.transport, server.policy)

        owner_view = await manager.reconcile(server)
        bob_view = await manager.reconcile(server, user_id="bob")

        assert owner_view.status == ConnectionStatus.DISCONNECTED
        assert bob_view.status == ConnectionStatus.CONNECTED


class TestStatusSynchronizer:
    """Status transitions and drift corrections reach the registry."""

    @pytest.mark.asyncio
    async def test_owner_connect_persists_status_and_tools(self, manager, registry, synchronizer, client_factory):
        client_factory.add(URL, tools=tools("alpha", "beta"))
        server = await registry.create(make_server())

        await manager.connect("alice", server.id, server.transport, server.policy)

        stored = await registry.get(server.id)
        assert stored.connection_status == ConnectionStatus.CONNECTED
        assert stored.last_connected is not None
        assert stored.last_error is None
        assert [t.name for t in await registry.list_tools(server.id)] == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_status_writes_do_not_bump_updated_at(self, manager, registry, synchronizer, client_factory):
        client_factory.add(URL)
        server = await registry.create(make_server())

        await manager.connect("alice", server.id, server.transport, server.policy)

        stored = await registry.get(server.id)
        assert stored.updated_at == server.updated_at

    @pytest.mark.asyncio
    async def test_non_owner_connect_mirrors_tools_only(self, manager, registry, synchronizer, client_factory):
        client_factory.add(URL, tools=tools("shared"))
        server = await registry.create(make_server())

        await manager.connect("bob", server.id, server.transport, server.policy)

        stored = await registry.get(server.id)
        assert stored.connection_status == ConnectionStatus.DISCONNECTED
        assert [t.name for t in await registry.list_tools(server.id)] == ["shared"]

    @pytest.mark.asyncio
    async def test_failed_listing_keeps_previous_mirror(self, manager, registry, synchronizer, client_factory):
        fake = client_factory.add(URL, tools=tools("kept"))
        server = await registry.create(make_server())
        await manager.connect("alice", server.id, server.transport, server.policy)
        await manager.disconnect("alice", server.id)

        fake.list_error = RuntimeError("listing down")
        await manager.connect("alice", server.id)

        assert [t.name for t in await registry.list_tools(server.id)] == ["kept"]

    @pytest.mark.asyncio
    async def test_connect_error_persisted(self, manager, registry, synchronizer, client_factory):
        client_factory.add(URL, connect_error=ConnectionRefusedError("Connection refused"))
        server = await registry.create(make_server())

        await manager.connect("alice", server.id, server.transport, server.policy)

        stored = await registry.get(server.id)
        assert stored.connection_status == ConnectionStatus.ERROR
        assert "refused" in stored.last_error.lower()

    @pytest.mark.asyncio
    async def test_drift_is_returned_and_written_back(self, registry, synchronizer):
        server = await registry.create(make_server(ConnectionStatus.CONNECTED))

        reconciled = await synchronizer.reconcile(server)
        assert reconciled.connection_status == ConnectionStatus.DISCONNECTED

        await synchronizer.drain()
        stored = await registry.get(server.id)
        assert stored.connection_status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_unchanged_server_returned_as_is(self, registry, synchronizer):
        server = await registry.create(make_server(ConnectionStatus.DISCONNECTED))

        reconciled = await synchronizer.reconcile(server)

        assert reconciled is server

    @pytest.mark.asyncio
    async def test_lost_connection_persisted_as_error(self, manager, registry, synchronizer, client_factory):
        client_factory.add(URL)
        server = await registry.create(make_server())
        await manager.connect("alice", server.id, server.transport, server.policy)
        client_factory.clients[0].drop()

        reconciled = await synchronizer.reconcile(await registry.get(server.id))
        await synchronizer.drain()

        assert reconciled.connection_status == ConnectionStatus.ERROR
        stored = await registry.get(server.id)
        assert stored.connection_status == ConnectionStatus.ERROR
        assert stored.last_error == "Connection lost"

    @pytest.mark.asyncio
    async def test_unknown_server_snapshot_ignored(self, manager, registry, synchronizer, client_factory):
        client_factory.add(URL)

        snapshot = await manager.connect("alice", "not-in-registry", StreamTransport(url=URL))

        assert snapshot.status == ConnectionStatus.CONNECTED
        assert await registry.list_tools("not-in-registry") == []
