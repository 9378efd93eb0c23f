"""Keeps persisted server status and the tool mirror in line with live connections."""

import asyncio
import logging
from dataclasses import replace
from typing import Optional, Set

from toolhub.core.log_sanitizer import sanitize_for_logging
from toolhub.domain.errors import DomainError
from toolhub.domain.servers.models import ConnectionSnapshot, ConnectionStatus, ServerDefinition
from toolhub.interfaces.registry import ServerRegistryProtocol
from toolhub.modules.config import config_manager
from toolhub.modules.mcp_tools.connection_manager import MCPConnectionManager
from toolhub.modules.registry.bounded import bounded

logger = logging.getLogger(__name__)


class StatusSynchronizer:
    """Writes manager-observed status back to the registry.

    The persisted status of a server mirrors its owner's connection. Status
    transitions are written as they happen; drift found by a read path is
    corrected by a background write that re-reads the live status when it runs.
    """

    def __init__(
        self,
        manager: MCPConnectionManager,
        registry: ServerRegistryProtocol,
        store_timeout: Optional[float] = None,
    ):
        self._manager = manager
        self._registry = registry
        self._store_timeout = (
            config_manager.app_settings.mcp_store_timeout if store_timeout is None else store_timeout
        )
        self._pending: Set[asyncio.Task] = set()

    def attach(self) -> None:
        self._manager.add_status_listener(self.on_status_change)

    def detach(self) -> None:
        self._manager.remove_status_listener(self.on_status_change)

    async def on_status_change(self, snapshot: ConnectionSnapshot) -> None:
        """Persist a transition and refresh the tool mirror after a successful listing."""
        try:
            server = await bounded(self._registry.get(snapshot.server_id), self._store_timeout, "get")
            if server is None:
                return

            if snapshot.status == ConnectionStatus.CONNECTED and snapshot.tools_listed:
                await bounded(
                    self._registry.replace_tools(server.id, snapshot.tools),
                    self._store_timeout,
                    "replace_tools",
                )

            if server.owner_id != snapshot.user_id:
                return

            patch = {
                "connection_status": snapshot.status,
                "last_error": snapshot.last_error,
            }
            if snapshot.last_connected is not None:
                patch["last_connected"] = snapshot.last_connected
            await bounded(self._registry.update(server.id, patch), self._store_timeout, "update")
        except DomainError as e:
            logger.error(
                "Failed to persist status for %s: %s",
                sanitize_for_logging(snapshot.key),
                e.message,
            )

    async def reconcile(self, server: ServerDefinition) -> ServerDefinition:
        """Return the server with its live status; schedule a write-back if they differed."""
        correction = await self._manager.reconcile(server)
        if not correction.changed:
            return server

        self._schedule(self._write_live_status(server.id))
        return replace(
            server,
            connection_status=correction.status,
            last_error=correction.last_error,
            last_connected=correction.last_connected,
        )

    async def _write_live_status(self, server_id: str) -> None:
        server = await bounded(self._registry.get(server_id), self._store_timeout, "get")
        if server is None:
            return
        # Recompute at write time so a newer transition is never overwritten
        correction = await self._manager.reconcile(server)
        if correction.changed:
            await bounded(
                self._registry.update(server_id, correction.as_patch()),
                self._store_timeout,
                "update",
            )
            logger.info(
                "Corrected persisted status of %s to %s",
                sanitize_for_logging(server_id),
                correction.status.value,
            )

    def _schedule(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Status correction failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for all scheduled corrections."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
