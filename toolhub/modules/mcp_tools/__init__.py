"""MCP tools module: connection lifecycle, tool aggregation and status sync."""

from .aggregator import ToolAggregator
from .connection_manager import MCPConnectionManager, make_key
from .credentials import FernetCredentialResolver
from .status_sync import StatusSynchronizer
from .transport import (
    FastMCPTransportClient,
    classify_connection_error,
    create_transport_client,
    descriptor_from_server_config,
)

__all__ = [
    "MCPConnectionManager",
    "ToolAggregator",
    "StatusSynchronizer",
    "FernetCredentialResolver",
    "FastMCPTransportClient",
    "classify_connection_error",
    "create_transport_client",
    "descriptor_from_server_config",
    "make_key",
]
