"""MCP server management application service."""

from .server_service import MCPServerService

__all__ = ["MCPServerService"]
