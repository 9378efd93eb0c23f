"""
toolhub - connection manager and tool aggregation for MCP tool servers.

This package keeps live connections to registered Model Context Protocol
servers, mirrors their status and tools into a registry, and exposes the
combined tool set of a user to a chat completion loop.

Example usage:
    from toolhub import MCPConnectionManager

    manager = MCPConnectionManager()
    snapshot = await manager.connect("user@example.com", server_id, transport=transport)
    print(snapshot.status)

CLI tools (after pip install):
    toolhub-server --port 8000
"""

from toolhub.version import VERSION

__version__ = VERSION
__all__ = [
    "MCPConnectionManager",
    "ToolAggregator",
    "VERSION",
    "__version__",
]


def __getattr__(name: str):
    """Lazy import to avoid loading heavy dependencies at module import time."""
    if name == "MCPConnectionManager":
        from toolhub.modules.mcp_tools.connection_manager import MCPConnectionManager
        globals()["MCPConnectionManager"] = MCPConnectionManager  # Cache for subsequent accesses
        return MCPConnectionManager
    if name == "ToolAggregator":
        from toolhub.modules.mcp_tools.aggregator import ToolAggregator
        globals()["ToolAggregator"] = ToolAggregator  # Cache for subsequent accesses
        return ToolAggregator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
