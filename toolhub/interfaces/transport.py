"""Transport interface protocols."""

from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from toolhub.domain.servers.models import ToolDefinition, TransportDescriptor


@runtime_checkable
class TransportClientProtocol(Protocol):
    """Protocol for one logical connection to one MCP server."""

    async def connect(self) -> None:
        """Open the connection. Raises on failure."""
        ...

    async def disconnect(self) -> None:
        """Close the connection (best effort)."""
        ...

    def is_connected(self) -> bool:
        """Whether the underlying session is currently open."""
        ...

    async def list_tools(self) -> List[ToolDefinition]:
        """List the tools the server advertises. Fails when not connected."""
        ...


# Builds a fresh client for a descriptor, optionally with decrypted credentials
TransportClientFactory = Callable[
    [TransportDescriptor, Optional[Dict[str, Any]]],
    TransportClientProtocol,
]
