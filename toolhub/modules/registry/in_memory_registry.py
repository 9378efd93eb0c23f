"""In-memory server registry for development and tests."""

import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from toolhub.domain.errors import ValidationError
from toolhub.domain.servers.models import ServerDefinition, ToolDefinition, ToolRecord, UserServerConfig

from .patch import apply_server_patch

logger = logging.getLogger(__name__)


class InMemoryServerRegistry:
    """Registry kept in process memory; lost on restart.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._servers: Dict[str, ServerDefinition] = {}
        self._tools: Dict[str, List[ToolRecord]] = {}
        self._configs: Dict[Tuple[str, str], UserServerConfig] = {}

    async def get(self, server_id: str) -> Optional[ServerDefinition]:
        server = self._servers.get(server_id)
        return copy.deepcopy(server) if server else None

    async def list(self, owner_id: Optional[str] = None) -> List[ServerDefinition]:
        servers = sorted(self._servers.values(), key=lambda s: s.created_at)
        if owner_id is not None:
            servers = [s for s in servers if s.owner_id == owner_id or s.is_public]
        return copy.deepcopy(servers)

    async def create(self, server: ServerDefinition) -> ServerDefinition:
        server.transport.validate()
        server.policy.validate()
        if server.id in self._servers:
            raise ValidationError(f"Server {server.id} already exists", code="DUPLICATE_SERVER")
        self._servers[server.id] = copy.deepcopy(server)
        return copy.deepcopy(server)

    async def update(self, server_id: str, patch: Dict[str, Any]) -> Optional[ServerDefinition]:
        server = self._servers.get(server_id)
        if server is None:
            return None
        updated = apply_server_patch(server, copy.deepcopy(patch))
        self._servers[server_id] = updated
        return copy.deepcopy(updated)

    async def delete(self, server_id: str) -> Optional[ServerDefinition]:
        server = self._servers.pop(server_id, None)
        if server is None:
            return None
        self._tools.pop(server_id, None)
        for key in [key for key in self._configs if key[1] == server_id]:
            del self._configs[key]
        return server

    async def replace_tools(self, server_id: str, tools: List[ToolDefinition]) -> List[ToolRecord]:
        disabled = {record.name for record in self._tools.get(server_id, []) if not record.is_enabled}
        records: List[ToolRecord] = []
        seen = set()
        for tool in tools:
            if tool.name in seen:
                continue
            seen.add(tool.name)
            records.append(
                ToolRecord(
                    server_id=server_id,
                    name=tool.name,
                    description=tool.description,
                    input_schema=copy.deepcopy(tool.input_schema),
                    is_enabled=tool.name not in disabled,
                )
            )
        self._tools[server_id] = records
        return copy.deepcopy(records)

    async def list_tools(self, server_id: str) -> List[ToolRecord]:
        return copy.deepcopy(sorted(self._tools.get(server_id, []), key=lambda r: r.name))

    async def set_tool_enabled(self, server_id: str, tool_name: str, enabled: bool) -> Optional[ToolRecord]:
        for record in self._tools.get(server_id, []):
            if record.name == tool_name:
                record.is_enabled = enabled
                return copy.deepcopy(record)
        return None

    async def list_user_configs(self, user_id: str) -> List[UserServerConfig]:
        return [copy.deepcopy(config) for (uid, _sid), config in self._configs.items() if uid == user_id]

    async def get_user_config(self, user_id: str, server_id: str) -> Optional[UserServerConfig]:
        config = self._configs.get((user_id, server_id))
        return copy.deepcopy(config) if config else None

    async def upsert_user_config(self, config: UserServerConfig) -> UserServerConfig:
        self._configs[(config.user_id, config.server_id)] = copy.deepcopy(config)
        return copy.deepcopy(config)

    async def set_user_tool_override(
        self, user_id: str, server_id: str, tool_name: str, enabled: bool
    ) -> UserServerConfig:
        config = self._configs.setdefault((user_id, server_id), UserServerConfig(user_id=user_id, server_id=server_id))
        config.tool_overrides[tool_name] = enabled
        return copy.deepcopy(config)
