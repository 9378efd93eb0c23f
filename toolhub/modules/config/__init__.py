"""Configuration module."""

from .config_manager import (
    AppSettings,
    ConfigManager,
    MCPConfig,
    MCPServerConfig,
    MCPServerTemplate,
    MCPTemplateCatalog,
    config_manager,
    get_app_settings,
    get_mcp_config,
    get_mcp_templates,
    resolve_env_var,
)

__all__ = [
    "AppSettings",
    "ConfigManager",
    "MCPConfig",
    "MCPServerConfig",
    "MCPServerTemplate",
    "MCPTemplateCatalog",
    "config_manager",
    "get_app_settings",
    "get_mcp_config",
    "get_mcp_templates",
    "resolve_env_var",
]
