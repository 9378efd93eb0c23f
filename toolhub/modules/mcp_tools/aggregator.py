"""Per-user aggregation of tools across all enabled MCP servers."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from toolhub.core.log_sanitizer import sanitize_for_logging
from toolhub.core.metrics_logger import log_metric
from toolhub.domain.errors import CredentialError, ToolListingError
from toolhub.domain.servers.models import (
    AggregatedTool,
    ConnectionSnapshot,
    ConnectionStatus,
    ServerDefinition,
    UserServerConfig,
)
from toolhub.interfaces.credentials import CredentialResolverProtocol
from toolhub.interfaces.registry import ServerRegistryProtocol
from toolhub.modules.config import config_manager
from toolhub.modules.mcp_tools.connection_manager import MCPConnectionManager
from toolhub.modules.registry.bounded import bounded

logger = logging.getLogger(__name__)

Target = Tuple[UserServerConfig, ServerDefinition]


class ToolAggregator:
    """Collects the invokable tools of a user from every enabled server.

    A server that cannot be connected, whose credentials cannot be decrypted,
    or whose tool listing fails contributes nothing; the other servers still
    contribute. Name collisions keep the first tool seen, in config order.
    """

    def __init__(
        self,
        manager: MCPConnectionManager,
        registry: ServerRegistryProtocol,
        credential_resolver: Optional[CredentialResolverProtocol] = None,
        store_timeout: Optional[float] = None,
    ):
        self._manager = manager
        self._registry = registry
        self._credentials = credential_resolver
        self._store_timeout = (
            config_manager.app_settings.mcp_store_timeout if store_timeout is None else store_timeout
        )

    async def _load_targets(self, user_id: str) -> List[Target]:
        """Enabled user configs paired with their enabled, visible server definitions."""
        configs = await bounded(
            self._registry.list_user_configs(user_id), self._store_timeout, "list_user_configs"
        )
        targets: List[Target] = []
        for config in configs:
            if not config.is_enabled:
                continue
            server = await bounded(self._registry.get(config.server_id), self._store_timeout, "get")
            if server is None or not server.is_enabled:
                continue
            if server.owner_id != user_id and not server.is_public:
                logger.warning(
                    "User %s has a config for server %s they cannot access",
                    sanitize_for_logging(user_id),
                    sanitize_for_logging(server.id),
                )
                continue
            targets.append((config, server))
        return targets

    def _resolve_credentials(self, user_id: str, config: UserServerConfig) -> Optional[Dict[str, Any]]:
        if not config.encrypted_credentials:
            return None
        if self._credentials is None:
            raise CredentialError("No credential resolver configured", code="NO_RESOLVER")
        return self._credentials.decrypt(config.encrypted_credentials, user_id)

    async def _connect_target(self, user_id: str, config: UserServerConfig, server: ServerDefinition) -> ConnectionSnapshot:
        credentials = self._resolve_credentials(user_id, config)
        return await self._manager.ensure_connected(
            user_id, server.id, server.transport, server.policy, credentials
        )

    async def _tools_from_server(
        self, user_id: str, config: UserServerConfig, server: ServerDefinition
    ) -> List[AggregatedTool]:
        snapshot = await self._connect_target(user_id, config, server)
        if not snapshot.is_connected:
            logger.info(
                "Skipping tools from %s: status=%s error=%s",
                sanitize_for_logging(server.name),
                snapshot.status.value,
                sanitize_for_logging(snapshot.last_error),
            )
            return []

        try:
            tools = await self._manager.list_tools(user_id, server.id)
        except ToolListingError as e:
            logger.warning("Tool listing failed for %s: %s", sanitize_for_logging(server.name), e.message)
            return []

        records = await bounded(self._registry.list_tools(server.id), self._store_timeout, "list_tools")
        disabled = {record.name for record in records if not record.is_enabled}

        return [
            AggregatedTool(
                server_id=server.id,
                server_name=server.name,
                name=tool.name,
                description=tool.description,
                input_schema=tool.input_schema,
            )
            for tool in tools
            if tool.name not in disabled and config.is_tool_enabled(tool.name)
        ]

    async def get_tools_for_user(self, user_id: str) -> List[AggregatedTool]:
        """Flattened, deduplicated tools from every usable server of a user."""
        targets = await self._load_targets(user_id)
        results = await asyncio.gather(
            *(self._tools_from_server(user_id, config, server) for config, server in targets),
            return_exceptions=True,
        )

        seen = set()
        aggregated: List[AggregatedTool] = []
        for (_config, server), result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to get tools for MCP server %s: %s",
                    sanitize_for_logging(server.name),
                    result,
                )
                continue
            for tool in result:
                if tool.name in seen:
                    logger.debug(
                        "Tool name collision for '%s' from %s, keeping first",
                        sanitize_for_logging(tool.name),
                        sanitize_for_logging(server.name),
                    )
                    continue
                seen.add(tool.name)
                aggregated.append(tool)

        log_metric("mcp_tools_aggregated", user_id, server_count=len(targets), tool_count=len(aggregated))
        return aggregated

    async def _status_for_target(
        self, user_id: str, config: UserServerConfig, server: ServerDefinition
    ) -> ConnectionSnapshot:
        try:
            return await self._connect_target(user_id, config, server)
        except CredentialError as e:
            return ConnectionSnapshot(
                user_id=user_id,
                server_id=server.id,
                status=ConnectionStatus.ERROR,
                last_error=e.message,
            )

    async def get_status_for_user(self, user_id: str) -> Dict[str, ConnectionSnapshot]:
        """Map of server id to live status.

        Every enabled server is connected on demand, as for get_tools_for_user;
        a server that cannot be reached reports ``error``.
        """
        targets = await self._load_targets(user_id)
        results = await asyncio.gather(
            *(self._status_for_target(user_id, config, server) for config, server in targets),
            return_exceptions=True,
        )

        statuses: Dict[str, ConnectionSnapshot] = {}
        for (_config, server), result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error("Failed to get status for %s: %s", sanitize_for_logging(server.name), result)
                result = ConnectionSnapshot(
                    user_id=user_id,
                    server_id=server.id,
                    status=ConnectionStatus.ERROR,
                    last_error=str(result),
                )
            statuses[server.id] = result
        return statuses

    @staticmethod
    def to_function_schemas(tools: List[AggregatedTool]) -> List[Dict[str, Any]]:
        """Render tools in the function-calling shape used by completion APIs."""
        return [tool.to_function_schema() for tool in tools]
