"""
Settings and seed-server configuration for toolhub.

Runtime knobs (timeouts, registry backend, auth header) come from the
environment or a .env file through pydantic-settings. Servers listed in
mcp.json (or mcp.yaml) are seeded into the registry at startup.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from toolhub.domain.errors import ConfigurationError
from toolhub.domain.servers.models import transport_from_dict

logger = logging.getLogger(__name__)


def resolve_env_var(value: Optional[str], required: bool = True) -> Optional[str]:
    """
    Expand a whole-value "${NAME}" reference from the environment.

    Anything else (including "prefix-${NAME}" and None) is returned unchanged.

    Raises:
        ValueError: when the referenced variable is unset and required is True
    """
    if value is None:
        return None

    pattern = r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}'
    match = re.fullmatch(pattern, value)

    if match:
        env_var_name = match.group(1)
        env_value = os.environ.get(env_var_name)

        if env_value is None:
            if required:
                raise ValueError(
                    f"Config references '{env_var_name}' but it is not set in the environment"
                )
            return None

        return env_value

    return value


class MCPServerConfig(BaseModel):
    """Configuration for a single seed MCP server."""
    description: Optional[str] = None
    enabled: bool = True
    is_public: bool = False
    command: Optional[List[str]] = None   # argv of a subprocess server
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None  # subprocess environment, values may be ${VAR}
    url: Optional[str] = None            # URL for HTTP/SSE servers
    headers: Optional[Dict[str, str]] = None  # Extra HTTP headers (supports ${ENV_VAR})
    transport: Optional[str] = None      # Explicit transport: "stdio", "http", "sse"
    auth_token: Optional[str] = None     # Bearer token (supports ${ENV_VAR})
    max_retries: int = 3
    retry_delay_ms: int = 1000
    timeout_ms: int = 30000


class MCPConfig(BaseModel):
    """Configuration for all seed MCP servers."""
    servers: Dict[str, MCPServerConfig] = Field(default_factory=dict)

    @field_validator('servers', mode='before')
    @classmethod
    def validate_servers(cls, v):
        if isinstance(v, dict):
            return {name: MCPServerConfig(**config) if isinstance(config, dict) else config
                   for name, config in v.items()}
        return v


class MCPTemplateAuthField(BaseModel):
    """A credential the user supplies before a templated server can connect."""
    name: str
    label: str
    type: Literal["text", "password", "url"] = "text"
    required: bool = True
    placeholder: Optional[str] = None


class MCPServerTemplate(BaseModel):
    """Catalog entry used to pre-fill a new server definition."""
    id: str
    name: str
    description: str = ""
    icon: Optional[str] = None
    category: Literal["development", "productivity", "integration", "utility"] = "utility"
    transport: Dict[str, Any]  # same shape as the transport of a server definition
    setup_instructions: Optional[str] = None
    requires_auth: bool = False
    auth_fields: List[MCPTemplateAuthField] = Field(default_factory=list)


class MCPTemplateCatalog(BaseModel):
    """Server templates offered by GET /api/mcp/templates."""
    templates: List[MCPServerTemplate] = Field(default_factory=list)

    def by_category(self) -> Dict[str, List[MCPServerTemplate]]:
        grouped: Dict[str, List[MCPServerTemplate]] = {}
        for template in self.templates:
            grouped.setdefault(template.category, []).append(template)
        return grouped


class AppSettings(BaseSettings):
    """Process-wide settings, read once from the environment."""

    # Application settings
    app_name: str = "toolhub"
    port: int = 8000
    debug_mode: bool = False
    # Logging settings
    log_level: str = "INFO"
    feature_metrics_logging_enabled: bool = Field(
        False,
        description="Enable metrics logging for connection activity (connects, disconnects, aggregation)",
        validation_alias=AliasChoices("FEATURE_METRICS_LOGGING_ENABLED"),
    )

    # MCP connection lifecycle
    mcp_idle_timeout: float = Field(
        default=1800.0,
        description="Seconds a managed connection may stay untouched before it is closed and removed",
        validation_alias="MCP_IDLE_TIMEOUT"
    )
    mcp_retry_backoff_multiplier: float = Field(
        default=2.0,
        description="Multiplier for exponential backoff between connect retries",
        validation_alias="MCP_RETRY_BACKOFF_MULTIPLIER"
    )
    mcp_retry_max_delay: float = Field(
        default=30.0,
        description="Maximum delay in seconds between connect retries (caps exponential backoff)",
        validation_alias="MCP_RETRY_MAX_DELAY"
    )
    mcp_discovery_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for MCP discovery calls (list_tools)",
        validation_alias="MCP_DISCOVERY_TIMEOUT"
    )
    mcp_close_timeout: float = Field(
        default=5.0,
        description="Timeout in seconds for closing an MCP client",
        validation_alias="MCP_CLOSE_TIMEOUT"
    )
    mcp_store_timeout: float = Field(
        default=10.0,
        description="Timeout in seconds for server registry reads and writes",
        validation_alias="MCP_STORE_TIMEOUT"
    )
    mcp_test_timeout: float = Field(
        default=10.0,
        description="Upper bound in seconds for the connect phase of a connection test",
        validation_alias="MCP_TEST_TIMEOUT"
    )
    mcp_credentials_encryption_key: Optional[str] = Field(
        default=None,
        description="Key for encrypting per-user server credentials. If not set, credentials won't survive restarts",
        validation_alias="MCP_CREDENTIALS_ENCRYPTION_KEY"
    )

    # Server registry
    registry_backend: str = Field(
        default="sql",
        description="Server registry backend: 'sql' or 'memory'",
        validation_alias="REGISTRY_BACKEND"
    )
    toolhub_db_url: str = Field(
        default="duckdb:///data/toolhub.db",
        description="SQLAlchemy URL of the server registry database",
        validation_alias="TOOLHUB_DB_URL"
    )

    # Seed configuration
    app_config_dir: str = Field(default="config", validation_alias="APP_CONFIG_DIR")
    mcp_config_file: str = Field(default="mcp.json", validation_alias="MCP_CONFIG_FILE")
    mcp_templates_file: str = Field(default="mcp_templates.json", validation_alias="MCP_TEMPLATES_FILE")
    mcp_seed_owner: Optional[str] = Field(
        default=None,
        description="Owner assigned to servers seeded from mcp.json. Seeding is skipped when unset",
        validation_alias="MCP_SEED_OWNER"
    )

    # Authentication
    test_user: str = Field(default="test@test.com", validation_alias="TEST_USER")
    auth_user_header: str = Field(
        default="X-User-Email",
        description="Header set by the reverse proxy that carries the caller identity",
        validation_alias="AUTH_USER_HEADER"
    )

    model_config = {
        "env_file": "../.env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_prefix": "",
    }


class ConfigManager:
    """Caches settings and the seed server file; call reload_configs() to re-read."""

    def __init__(self, package_root: Optional[Path] = None):
        self._package_root = package_root or Path(__file__).parent.parent.parent
        self._app_settings: Optional[AppSettings] = None
        self._mcp_config: Optional[MCPConfig] = None
        self._mcp_templates: Optional[MCPTemplateCatalog] = None

    def _search_paths(self, file_name: str) -> List[Path]:
        """Candidate locations for a config file, most specific first.

        APP_CONFIG_DIR (as given, then relative to the project root) wins over
        the defaults shipped in toolhub/config/.
        """
        project_root = self._package_root.parent

        config_dir = Path(self.app_settings.app_config_dir)
        if not config_dir.is_absolute():
            config_dir_project = project_root / config_dir
        else:
            config_dir_project = config_dir

        candidates: List[Path] = [
            config_dir / file_name,
            config_dir_project / file_name,
            self._package_root / "config" / file_name,
        ]

        seen = set()
        search_paths: List[Path] = []
        for p in candidates:
            if p not in seen:
                seen.add(p)
                search_paths.append(p)
        return search_paths

    def _load_file_with_error_handling(self, file_paths: List[Path], file_type: str) -> Optional[Dict[str, Any]]:
        """Return the first readable mapping among file_paths, or None."""
        for path in file_paths:
            try:
                if not path.exists():
                    continue

                logger.info(f"Reading {file_type} config from {path.absolute()}")

                with open(path, "r", encoding="utf-8") as f:
                    if file_type.lower() == "yaml":
                        data = yaml.safe_load(f)
                    elif file_type.lower() == "json":
                        data = json.load(f)
                    else:
                        raise ValueError(f"Unsupported file type: {file_type}")

                if not isinstance(data, dict):
                    logger.error(f"Invalid {file_type} format in {path}: expected dict, got {type(data)}")
                    continue

                return data

            except (yaml.YAMLError, json.JSONDecodeError) as e:
                logger.error(f"Could not parse {file_type} file {path}: {e}", exc_info=True)
                continue
            except OSError as e:
                logger.error(f"Could not read {path}: {e}", exc_info=True)
                continue

        logger.info(f"{file_type} config not found in any of these locations: {[str(p) for p in file_paths]}")
        return None

    @property
    def app_settings(self) -> AppSettings:
        """Settings, built on first access."""
        if self._app_settings is None:
            self._app_settings = AppSettings()
            logger.debug("Loaded settings for %s", self._app_settings.app_name)
        return self._app_settings

    @property
    def mcp_config(self) -> MCPConfig:
        """Get seed MCP configuration (cached)."""
        if self._mcp_config is None:
            file_name = self.app_settings.mcp_config_file
            file_type = "YAML" if file_name.endswith((".yml", ".yaml")) else "JSON"
            data = self._load_file_with_error_handling(self._search_paths(file_name), file_type)
            try:
                if data:
                    # Flat {name: config} structure on disk
                    self._mcp_config = MCPConfig(servers=data)
                    logger.info(
                        f"Loaded MCP config with {len(self._mcp_config.servers)} servers: "
                        f"{list(self._mcp_config.servers.keys())}"
                    )
                else:
                    self._mcp_config = MCPConfig()
            except ValueError as e:
                logger.error(f"Ignoring invalid seed server file: {e}", exc_info=True)
                self._mcp_config = MCPConfig()
        return self._mcp_config

    @property
    def mcp_templates(self) -> MCPTemplateCatalog:
        """Server template catalog (cached). Templates with a bad transport are skipped."""
        if self._mcp_templates is None:
            file_name = self.app_settings.mcp_templates_file
            file_type = "YAML" if file_name.endswith((".yml", ".yaml")) else "JSON"
            data = self._load_file_with_error_handling(self._search_paths(file_name), file_type) or {}
            templates: List[MCPServerTemplate] = []
            for raw in data.get("templates") or []:
                if not isinstance(raw, dict):
                    logger.error(f"Skipping server template: expected an object, got {type(raw).__name__}")
                    continue
                try:
                    template = MCPServerTemplate(**raw)
                    transport_from_dict(template.transport)
                except (ValueError, ConfigurationError) as e:
                    logger.error(f"Skipping invalid server template '{raw.get('id')}': {e}")
                    continue
                templates.append(template)
            self._mcp_templates = MCPTemplateCatalog(templates=templates)
            logger.info(f"Loaded {len(templates)} MCP server templates")
        return self._mcp_templates

    def reload_configs(self) -> None:
        """Drop cached settings, seed config and templates."""
        self._app_settings = None
        self._mcp_config = None
        self._mcp_templates = None
        logger.info("Configuration cache cleared")


config_manager = ConfigManager()


def get_app_settings() -> AppSettings:
    """Shortcut for config_manager.app_settings."""
    return config_manager.app_settings


def get_mcp_config() -> MCPConfig:
    """Shortcut for config_manager.mcp_config."""
    return config_manager.mcp_config


def get_mcp_templates() -> MCPTemplateCatalog:
    """Shortcut for config_manager.mcp_templates."""
    return config_manager.mcp_templates
