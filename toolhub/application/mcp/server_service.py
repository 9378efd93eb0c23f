"""MCP server service - business logic behind the server management API.

Every operation is scoped to the calling user. Read paths reconcile the
persisted status against the connection manager before returning, so a
response never carries a status the manager disagrees with.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Union

from toolhub.core.log_sanitizer import sanitize_for_logging
from toolhub.core.metrics_logger import log_metric
from toolhub.domain.errors import (
    DomainError,
    ServerNotFoundError,
    ToolNotFoundError,
    ValidationError,
)
from toolhub.domain.servers.models import (
    ConnectionPolicy,
    ConnectionSnapshot,
    ConnectionStatus,
    ConnectionTestResult,
    ServerDefinition,
    TransportDescriptor,
    UserServerConfig,
    transport_fields_changed,
)
from toolhub.interfaces.registry import ServerRegistryProtocol
from toolhub.modules.config import config_manager
from toolhub.modules.mcp_tools.connection_manager import MCPConnectionManager
from toolhub.modules.mcp_tools.credentials import FernetCredentialResolver
from toolhub.modules.mcp_tools.status_sync import StatusSynchronizer
from toolhub.modules.registry.bounded import bounded

logger = logging.getLogger(__name__)

ACTIONS = ("connect", "disconnect", "reconnect", "test")

HEALTH_BY_STATUS = {
    ConnectionStatus.CONNECTED: "active",
    ConnectionStatus.CONNECTING: "connecting",
    ConnectionStatus.ERROR: "error",
}


class MCPServerService:
    """Server CRUD, connection actions, user configs and the dashboard."""

    def __init__(
        self,
        manager: MCPConnectionManager,
        registry: ServerRegistryProtocol,
        synchronizer: StatusSynchronizer,
        credential_resolver: FernetCredentialResolver,
        store_timeout: Optional[float] = None,
    ):
        self.manager = manager
        self.registry = registry
        self.synchronizer = synchronizer
        self.credential_resolver = credential_resolver
        self._store_timeout = (
            config_manager.app_settings.mcp_store_timeout if store_timeout is None else store_timeout
        )
        self._background_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _store(self, call, operation: str):
        return await bounded(call, self._store_timeout, operation)

    async def _visible(self, user_id: str, server_id: str) -> ServerDefinition:
        """Server owned by user_id or public; ServerNotFoundError otherwise."""
        server = await self._store(self.registry.get(server_id), "get")
        if server is None or (server.owner_id != user_id and not server.is_public):
            raise ServerNotFoundError(f"Server {server_id} not found", code="SERVER_NOT_FOUND")
        return server

    async def _owned(self, user_id: str, server_id: str) -> ServerDefinition:
        server = await self._store(self.registry.get(server_id), "get")
        if server is None or server.owner_id != user_id:
            raise ServerNotFoundError(f"Server {server_id} not found", code="SERVER_NOT_FOUND")
        return server

    async def _credentials_for(self, user_id: str, server_id: str) -> Optional[Dict[str, Any]]:
        config = await self._store(self.registry.get_user_config(user_id, server_id), "get_user_config")
        if config is None or not config.encrypted_credentials:
            return None
        return self.credential_resolver.decrypt(config.encrypted_credentials, user_id)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background server task failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for background reconnects and pending status writes."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        await self.synchronizer.drain()

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_server(
        self,
        user_id: str,
        name: str,
        transport: TransportDescriptor,
        policy: Optional[ConnectionPolicy] = None,
        description: Optional[str] = None,
        is_public: bool = False,
        is_enabled: bool = True,
    ) -> ServerDefinition:
        """Register a new server owned by user_id and enable it for them.

        Raises:
            ValidationError: empty name or out-of-range policy
            ConfigurationError: malformed transport
        """
        if not name or not name.strip():
            raise ValidationError("Server name must not be empty", code="INVALID_NAME")
        policy = policy or ConnectionPolicy()
        policy.validate()
        transport.validate()

        server = ServerDefinition(
            owner_id=user_id,
            name=name.strip(),
            description=description,
            transport=transport,
            policy=policy,
            is_public=is_public,
            is_enabled=is_enabled,
        )
        server = await self._store(self.registry.create(server), "create")
        await self._store(
            self.registry.upsert_user_config(UserServerConfig(user_id=user_id, server_id=server.id)),
            "upsert_user_config",
        )
        log_metric("mcp_server_created", user_id, server_id=server.id, transport=transport.kind)
        return server

    async def list_servers(self, user_id: str) -> List[ServerDefinition]:
        """Servers owned by or shared with user_id, with reconciled status."""
        servers = await self._store(self.registry.list(user_id), "list")
        return [await self.synchronizer.reconcile(server) for server in servers]

    async def get_server(self, user_id: str, server_id: str) -> ServerDefinition:
        server = await self._visible(user_id, server_id)
        return await self.synchronizer.reconcile(server)

    async def update_server(self, user_id: str, server_id: str, patch: Dict[str, Any]) -> ServerDefinition:
        """Apply a definition change and bring live connections in line with it.

        Disabling tears down every user's connection. A transport or policy
        change rebuilds each live connection in the background. Name and
        description changes leave connections alone.
        """
        old = await self._owned(user_id, server_id)
        updated = await self._store(self.registry.update(server_id, patch), "update")
        if updated is None:
            raise ServerNotFoundError(f"Server {server_id} not found", code="SERVER_NOT_FOUND")

        if old.is_enabled and not updated.is_enabled:
            await self._teardown(server_id)
        elif updated.is_enabled and transport_fields_changed(old, updated):
            for holder in self.manager.users_for_server(server_id):
                self._spawn(self._rebuild(holder, updated))
            logger.info(
                "Transport of server %s changed, rebuilding live connections",
                sanitize_for_logging(server_id),
            )

        return await self.synchronizer.reconcile(updated)

    async def _teardown(self, server_id: str) -> None:
        await self.manager.remove_server(server_id)
        await self._store(
            self.registry.update(
                server_id,
                {"connection_status": ConnectionStatus.DISCONNECTED, "last_error": None},
            ),
            "update",
        )
        logger.info("Server %s disabled, all connections closed", sanitize_for_logging(server_id))

    async def _rebuild(self, user_id: str, server: ServerDefinition) -> ConnectionSnapshot:
        """Replace a user's connection with one built from the current definition.

        A connection opened with the old transport while credentials were being
        read is replaced as well. Failures end as an ``error`` entry.
        """
        await self.manager.remove(user_id, server.id)
        credentials = None
        failure: Optional[str] = None
        try:
            credentials = await self._credentials_for(user_id, server.id)
        except DomainError as e:
            failure = e.message
        try:
            await self.manager.register(
                user_id, server.id, server.transport, server.policy, credentials, replace=True
            )
            if failure is None:
                return await self.manager.ensure_connected(
                    user_id, server.id, server.transport, server.policy, credentials
                )
        except DomainError as e:
            failure = e.message
        logger.warning(
            "Rebuild of %s for %s failed: %s",
            sanitize_for_logging(server.id),
            sanitize_for_logging(user_id),
            sanitize_for_logging(failure),
        )
        return await self.manager.record_failure(user_id, server.id, failure)

    async def delete_server(self, user_id: str, server_id: str) -> ServerDefinition:
        await self._owned(user_id, server_id)
        await self.manager.remove_server(server_id)
        deleted = await self._store(self.registry.delete(server_id), "delete")
        if deleted is None:
            raise ServerNotFoundError(f"Server {server_id} not found", code="SERVER_NOT_FOUND")
        log_metric("mcp_server_deleted", user_id, server_id=server_id)
        return deleted

    # ------------------------------------------------------------------
    # Connection actions
    # ------------------------------------------------------------------

    async def perform_action(
        self, user_id: str, server_id: str, action: str
    ) -> Union[ConnectionSnapshot, ConnectionTestResult]:
        """Run connect, disconnect, reconnect or test for the caller's connection.

        Raises:
            ValidationError: unknown action, or a non-test action on a disabled server
            ConnectionInProgressError / AlreadyConnectedError: from the manager
        """
        if action not in ACTIONS:
            raise ValidationError(f"Unknown action '{action}'", code="INVALID_ACTION")
        server = await self._visible(user_id, server_id)
        if not server.is_enabled and action != "test":
            raise ValidationError(f"Server {server.name} is disabled", code="SERVER_DISABLED")

        credentials = await self._credentials_for(user_id, server_id)
        if action == "test":
            return await self.manager.test_connection(server.transport, credentials, server.policy.timeout_ms)
        if action == "disconnect":
            return await self.manager.disconnect(user_id, server_id)
        if action == "reconnect":
            return await self.manager.reconnect(
                user_id, server_id, server.transport, server.policy, credentials
            )
        return await self.manager.connect(user_id, server_id, server.transport, server.policy, credentials)

    async def toggle(self, user_id: str, server_id: str, enabled: bool) -> ServerDefinition:
        """Enable or disable a server; enabling reconnects if it was connected."""
        old = await self._owned(user_id, server_id)
        updated = await self.update_server(user_id, server_id, {"is_enabled": enabled})
        if enabled and not old.is_enabled and old.connection_status == ConnectionStatus.CONNECTED:
            self._spawn(self._rebuild(user_id, updated))
        return updated

    async def test_transport(
        self,
        transport: TransportDescriptor,
        credentials: Optional[Dict[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> ConnectionTestResult:
        """Test an unsaved transport descriptor."""
        return await self.manager.test_connection(transport, credentials, timeout_ms)

    # ------------------------------------------------------------------
    # User configs and tools
    # ------------------------------------------------------------------

    async def _config(self, user_id: str, server_id: str) -> UserServerConfig:
        config = await self._store(self.registry.get_user_config(user_id, server_id), "get_user_config")
        return config or UserServerConfig(user_id=user_id, server_id=server_id)

    async def set_credentials(self, user_id: str, server_id: str, credentials: Dict[str, Any]) -> UserServerConfig:
        """Encrypt and store the caller's credentials for a server.

        A live connection is rebuilt so the new credentials take effect.
        """
        server = await self._visible(user_id, server_id)
        config = await self._config(user_id, server_id)
        config.encrypted_credentials = self.credential_resolver.encrypt(credentials, user_id) if credentials else None
        config = await self._store(self.registry.upsert_user_config(config), "upsert_user_config")
        logger.info(
            "Updated credentials of %s for server %s",
            sanitize_for_logging(user_id),
            sanitize_for_logging(server_id),
        )
        if server.is_enabled and self.manager.get_status(user_id, server_id).is_connected:
            self._spawn(self._rebuild(user_id, server))
        return config

    async def set_server_enabled_for_user(self, user_id: str, server_id: str, enabled: bool) -> UserServerConfig:
        """Add a server to, or drop it from, the caller's tool set."""
        await self._visible(user_id, server_id)
        config = await self._config(user_id, server_id)
        config.is_enabled = enabled
        config = await self._store(self.registry.upsert_user_config(config), "upsert_user_config")
        if not enabled:
            await self.manager.remove(user_id, server_id)
        return config

    async def set_tool_override(
        self, user_id: str, server_id: str, tool_name: str, enabled: bool
    ) -> UserServerConfig:
        await self._visible(user_id, server_id)
        return await self._store(
            self.registry.set_user_tool_override(user_id, server_id, tool_name, enabled),
            "set_user_tool_override",
        )

    async def set_tool_enabled(self, user_id: str, server_id: str, tool_name: str, enabled: bool) -> Dict[str, Any]:
        """Owner-level switch on a mirrored tool; applies to every user."""
        await self._owned(user_id, server_id)
        record = await self._store(
            self.registry.set_tool_enabled(server_id, tool_name, enabled), "set_tool_enabled"
        )
        if record is None:
            raise ToolNotFoundError(f"Tool {tool_name} not found on server {server_id}", code="TOOL_NOT_FOUND")
        return record.to_dict()

    async def list_tools(self, user_id: str, server_id: str) -> List[Dict[str, Any]]:
        """Mirrored tools of a server with the caller's effective enablement."""
        await self._visible(user_id, server_id)
        records = await self._store(self.registry.list_tools(server_id), "list_tools")
        config = await self._config(user_id, server_id)
        tools = []
        for record in records:
            data = record.to_dict()
            data["user_enabled"] = record.is_enabled and config.is_tool_enabled(record.name)
            tools.append(data)
        return tools

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    async def dashboard(self, user_id: str) -> Dict[str, Any]:
        """Summary of the caller's own servers with live status."""
        servers = [s for s in await self.list_servers(user_id) if s.owner_id == user_id]

        entries = []
        total_tools = 0
        enabled_tools = 0
        for server in servers:
            records = await self._store(self.registry.list_tools(server.id), "list_tools")
            total_tools += len(records)
            enabled_tools += sum(1 for record in records if record.is_enabled)
            entries.append({
                "id": server.id,
                "name": server.name,
                "status": server.connection_status.value,
                "health": HEALTH_BY_STATUS.get(server.connection_status, "inactive"),
                "is_enabled": server.is_enabled,
                "tool_count": len(records),
                "last_connected": server.last_connected.isoformat() if server.last_connected else None,
                "last_error": server.last_error,
            })

        latencies = self.manager.observed_latencies()
        return {
            "total_servers": len(servers),
            "connected_servers": sum(1 for s in servers if s.connection_status == ConnectionStatus.CONNECTED),
            "total_tools": total_tools,
            "enabled_tools": enabled_tools,
            "average_latency_ms": round(sum(latencies) / len(latencies), 1) if latencies else None,
            "servers": entries,
        }
