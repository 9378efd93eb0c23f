"""Server registry protocol."""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from toolhub.domain.servers.models import (
    ServerDefinition,
    ToolDefinition,
    ToolRecord,
    UserServerConfig,
)


@runtime_checkable
class ServerRegistryProtocol(Protocol):
    """Durable store for server definitions, the tool mirror and user configs."""

    async def get(self, server_id: str) -> Optional[ServerDefinition]:
        """Get a server definition by id."""
        ...

    async def list(self, owner_id: Optional[str] = None) -> List[ServerDefinition]:
        """List server definitions visible to owner_id (all when None)."""
        ...

    async def create(self, server: ServerDefinition) -> ServerDefinition:
        """Store a new server definition."""
        ...

    async def update(self, server_id: str, patch: Dict[str, Any]) -> Optional[ServerDefinition]:
        """Apply a partial update. Returns None if the server does not exist."""
        ...

    async def delete(self, server_id: str) -> Optional[ServerDefinition]:
        """Delete a server with its tools and user configs. Returns the deleted definition."""
        ...

    async def replace_tools(self, server_id: str, tools: List[ToolDefinition]) -> List[ToolRecord]:
        """Replace the full tool mirror for a server."""
        ...

    async def list_tools(self, server_id: str) -> List[ToolRecord]:
        """List mirrored tools for a server."""
        ...

    async def set_tool_enabled(self, server_id: str, tool_name: str, enabled: bool) -> Optional[ToolRecord]:
        """Toggle the server-level enabled flag of a mirrored tool."""
        ...

    async def list_user_configs(self, user_id: str) -> List[UserServerConfig]:
        """List all per-server configs of a user."""
        ...

    async def get_user_config(self, user_id: str, server_id: str) -> Optional[UserServerConfig]:
        """Get one per-server config of a user."""
        ...

    async def upsert_user_config(self, config: UserServerConfig) -> UserServerConfig:
        """Insert or replace a user's config for a server."""
        ...

    async def set_user_tool_override(
        self, user_id: str, server_id: str, tool_name: str, enabled: bool
    ) -> UserServerConfig:
        """Set a per-tool override for a user, creating the config if needed."""
        ...
