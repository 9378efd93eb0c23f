"""Application factory for dependency injection and wiring."""

import asyncio
import logging
from typing import Optional

from toolhub.application.mcp import MCPServerService
from toolhub.domain.errors import DomainError
from toolhub.domain.servers.models import ConnectionPolicy
from toolhub.interfaces.registry import ServerRegistryProtocol
from toolhub.interfaces.transport import TransportClientFactory
from toolhub.modules.config import ConfigManager, config_manager as default_config_manager
from toolhub.modules.mcp_tools import (
    FernetCredentialResolver,
    MCPConnectionManager,
    StatusSynchronizer,
    ToolAggregator,
    descriptor_from_server_config,
)
from toolhub.modules.registry import (
    InMemoryServerRegistry,
    SqlServerRegistry,
    get_engine,
    get_session_factory,
    init_database,
)

logger = logging.getLogger(__name__)


class AppFactory:
    """Application factory that wires dependencies (simple in-memory DI).

    One instance per process; the FastAPI app keeps it on ``app.state``.
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        client_factory: Optional[TransportClientFactory] = None,
        registry: Optional[ServerRegistryProtocol] = None,
    ) -> None:
        # Configuration
        self.config_manager = config_manager or default_config_manager
        settings = self.config_manager.app_settings

        # Registry
        self._uses_sql = False
        if registry is not None:
            self.registry = registry
        elif settings.registry_backend == "memory":
            logger.info("Using in-memory server registry (REGISTRY_BACKEND=memory)")
            self.registry = InMemoryServerRegistry()
        else:
            self._uses_sql = True
            engine = get_engine(settings.toolhub_db_url)
            self.registry = SqlServerRegistry(get_session_factory(engine))

        self.credential_resolver = FernetCredentialResolver(settings.mcp_credentials_encryption_key)

        # Connection manager, one per process
        self.connection_manager = MCPConnectionManager(
            client_factory=client_factory,
            idle_timeout=settings.mcp_idle_timeout,
            discovery_timeout=settings.mcp_discovery_timeout,
            close_timeout=settings.mcp_close_timeout,
            test_timeout=settings.mcp_test_timeout,
            backoff_multiplier=settings.mcp_retry_backoff_multiplier,
            max_retry_delay=settings.mcp_retry_max_delay,
        )

        self.status_synchronizer = StatusSynchronizer(
            self.connection_manager, self.registry, store_timeout=settings.mcp_store_timeout
        )
        self.status_synchronizer.attach()

        self.tool_aggregator = ToolAggregator(
            self.connection_manager,
            self.registry,
            self.credential_resolver,
            store_timeout=settings.mcp_store_timeout,
        )

        self.server_service = MCPServerService(
            self.connection_manager,
            self.registry,
            self.status_synchronizer,
            self.credential_resolver,
            store_timeout=settings.mcp_store_timeout,
        )

        logger.info("AppFactory initialized")

    async def initialize(self) -> None:
        """Create registry tables and seed servers from mcp.json."""
        if self._uses_sql:
            await asyncio.to_thread(init_database, self.config_manager.app_settings.toolhub_db_url)
        await self.seed_servers()
        logger.info("AppFactory async initialization complete")

    async def seed_servers(self) -> int:
        """Register mcp.json servers for MCP_SEED_OWNER, skipping names that exist.

        Returns the number of servers created.
        """
        owner = self.config_manager.app_settings.mcp_seed_owner
        if not owner:
            return 0

        servers = self.config_manager.mcp_config.servers
        if not servers:
            return 0

        existing = {server.name for server in await self.registry.list(owner) if server.owner_id == owner}
        created = 0
        for name, server_config in servers.items():
            if name in existing:
                continue
            try:
                descriptor = descriptor_from_server_config(server_config)
                policy = ConnectionPolicy(
                    max_retries=server_config.max_retries,
                    retry_delay_ms=server_config.retry_delay_ms,
                    timeout_ms=server_config.timeout_ms,
                )
                await self.server_service.create_server(
                    owner,
                    name,
                    descriptor,
                    policy=policy,
                    description=server_config.description,
                    is_public=server_config.is_public,
                    is_enabled=server_config.enabled,
                )
                created += 1
            except DomainError as e:
                logger.warning("Skipping seeded server %s: %s", name, e.message)

        if created:
            logger.info("Seeded %d MCP servers from %s", created, self.config_manager.app_settings.mcp_config_file)
        return created

    async def shutdown(self) -> None:
        """Close every managed connection and flush pending status writes."""
        await self.server_service.drain()
        await self.connection_manager.shutdown()
        await self.status_synchronizer.drain()
        self.status_synchronizer.detach()
        logger.info("AppFactory shutdown complete")

    # Accessors
    def get_config_manager(self) -> ConfigManager:  # noqa: D401
        return self.config_manager

    def get_connection_manager(self) -> MCPConnectionManager:  # noqa: D401
        return self.connection_manager

    def get_tool_aggregator(self) -> ToolAggregator:  # noqa: D401
        return self.tool_aggregator

    def get_server_service(self) -> MCPServerService:  # noqa: D401
        return self.server_service
