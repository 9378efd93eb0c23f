"""Domain models for tool servers, their transports and connection status."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from ..errors import ConfigurationError, ValidationError

MAX_RETRIES_RANGE = (0, 10)
RETRY_DELAY_MS_RANGE = (100, 10000)
TIMEOUT_MS_RANGE = (5000, 60000)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ConnectionStatus(str, Enum):
    """Connection state of a managed server."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class StreamTransport:
    """Persistent network stream endpoint (streamable HTTP or SSE)."""
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    # "http" or "sse"; auto-detected from the URL when not set
    protocol: Optional[str] = None

    kind = "stream"

    def resolved_protocol(self) -> str:
        if self.protocol:
            return self.protocol
        return "sse" if self.url.rstrip("/").endswith("/sse") else "http"

    def validate(self) -> None:
        if not self.url or not self.url.strip():
            raise ConfigurationError("Stream transport requires an endpoint URL", code="MISSING_URL")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"Stream transport URL must use http or https: {self.url}",
                code="INVALID_URL",
            )
        if self.protocol is not None and self.protocol not in ("http", "sse"):
            raise ConfigurationError(
                f"Unsupported stream protocol '{self.protocol}'",
                code="INVALID_PROTOCOL",
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "url": self.url,
            "headers": dict(self.headers),
            "protocol": self.protocol,
        }


@dataclass
class SubprocessTransport:
    """Locally spawned server speaking MCP over stdio."""
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    kind = "subprocess"

    def validate(self) -> None:
        if not self.command or not self.command.strip():
            raise ConfigurationError("Subprocess transport requires a command", code="MISSING_COMMAND")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
            "cwd": self.cwd,
        }


TransportDescriptor = Union[StreamTransport, SubprocessTransport]


def transport_from_dict(data: Dict[str, Any]) -> TransportDescriptor:
    """Build a transport descriptor from its dict form.

    Raises:
        ConfigurationError: unknown kind, or fields belonging to the other variant
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Transport descriptor must be an object", code="INVALID_TRANSPORT")

    kind = data.get("kind")
    if kind == StreamTransport.kind:
        if data.get("command"):
            raise ConfigurationError("Stream transport must not carry a command", code="INVALID_TRANSPORT")
        transport: TransportDescriptor = StreamTransport(
            url=data.get("url") or "",
            headers=dict(data.get("headers") or {}),
            protocol=data.get("protocol"),
        )
    elif kind == SubprocessTransport.kind:
        if data.get("url"):
            raise ConfigurationError("Subprocess transport must not carry a URL", code="INVALID_TRANSPORT")
        transport = SubprocessTransport(
            command=data.get("command") or "",
            args=list(data.get("args") or []),
            env=dict(data.get("env") or {}),
            cwd=data.get("cwd"),
        )
    else:
        raise ConfigurationError(f"Unknown transport kind '{kind}'", code="INVALID_TRANSPORT")

    transport.validate()
    return transport


@dataclass
class ConnectionPolicy:
    """Retry and timeout policy for one server. Delays and timeouts are in milliseconds."""
    max_retries: int = 3
    retry_delay_ms: int = 1000
    timeout_ms: int = 30000

    def validate(self) -> None:
        """Raise ValidationError when a value falls outside its allowed range."""
        for name, value, (low, high) in (
            ("max_retries", self.max_retries, MAX_RETRIES_RANGE),
            ("retry_delay_ms", self.retry_delay_ms, RETRY_DELAY_MS_RANGE),
            ("timeout_ms", self.timeout_ms, TIMEOUT_MS_RANGE),
        ):
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValidationError(f"{name} must be an integer", code="INVALID_POLICY")
            if value < low or value > high:
                raise ValidationError(
                    f"{name} must be between {low} and {high}, got {value}",
                    code="INVALID_POLICY",
                )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ConnectionPolicy":
        data = data or {}
        policy = cls(
            max_retries=data.get("max_retries", 3),
            retry_delay_ms=data.get("retry_delay_ms", 1000),
            timeout_ms=data.get("timeout_ms", 30000),
        )
        policy.validate()
        return policy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "retry_delay_ms": self.retry_delay_ms,
            "timeout_ms": self.timeout_ms,
        }


@dataclass
class ServerDefinition:
    """A registered tool server."""
    owner_id: str
    name: str
    transport: TransportDescriptor
    policy: ConnectionPolicy = field(default_factory=ConnectionPolicy)
    id: str = field(default_factory=lambda: str(uuid4()))
    description: Optional[str] = None
    is_enabled: bool = True
    is_public: bool = False
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_error: Optional[str] = None
    last_connected: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: datetime = field(default_factory=_now_utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "transport": self.transport.to_dict(),
            "policy": self.policy.to_dict(),
            "is_enabled": self.is_enabled,
            "is_public": self.is_public,
            "connection_status": self.connection_status.value,
            "last_error": self.last_error,
            "last_connected": _isoformat(self.last_connected),
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


def transport_fields_changed(old: ServerDefinition, new: ServerDefinition) -> bool:
    """True when a change between two definitions requires a fresh client."""
    return (
        old.transport.to_dict() != new.transport.to_dict()
        or old.policy.to_dict() != new.policy.to_dict()
    )


@dataclass
class ToolDefinition:
    """A tool as advertised by a connected server."""
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass
class ToolRecord:
    """Registry mirror of a tool advertised by a server."""
    server_id: str
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)
    is_enabled: bool = True
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=_now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "server_id": self.server_id,
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
            "is_enabled": self.is_enabled,
            "created_at": _isoformat(self.created_at),
        }


@dataclass
class UserServerConfig:
    """A user's enablement, credentials and per-tool overrides for one server."""
    user_id: str
    server_id: str
    is_enabled: bool = True
    encrypted_credentials: Optional[str] = None
    tool_overrides: Dict[str, bool] = field(default_factory=dict)

    def is_tool_enabled(self, tool_name: str) -> bool:
        # Tools without an explicit override are offered
        return self.tool_overrides.get(tool_name, True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "server_id": self.server_id,
            "is_enabled": self.is_enabled,
            "has_credentials": bool(self.encrypted_credentials),
            "tool_overrides": dict(self.tool_overrides),
        }


@dataclass
class ConnectionSnapshot:
    """Point-in-time view of one managed connection."""
    user_id: str
    server_id: str
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    retry_count: int = 0
    last_error: Optional[str] = None
    last_connected: Optional[datetime] = None
    tools: List[ToolDefinition] = field(default_factory=list)
    latency_ms: Optional[float] = None
    # True only when the latest connect listed tools without error
    tools_listed: bool = False

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.server_id}"

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_id": self.server_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "last_connected": _isoformat(self.last_connected),
            "tools": [tool.to_dict() for tool in self.tools],
            "latency_ms": self.latency_ms,
        }


@dataclass
class StatusCorrection:
    """Result of reconciling a persisted status against the live connection."""
    status: ConnectionStatus
    last_error: Optional[str] = None
    last_connected: Optional[datetime] = None
    changed: bool = False

    def as_patch(self) -> Dict[str, Any]:
        return {
            "connection_status": self.status,
            "last_error": self.last_error,
            "last_connected": self.last_connected,
        }


@dataclass
class ConnectionTestResult:
    """Outcome of a throwaway connect + list tools + close cycle."""
    success: bool
    tools: List[ToolDefinition] = field(default_factory=list)
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "tools": [tool.to_dict() for tool in self.tools],
            "tool_count": len(self.tools),
            "latency_ms": self.latency_ms,
            "error": self.error,
            "error_code": self.error_code,
            "suggestion": self.suggestion,
        }


@dataclass
class AggregatedTool:
    """A tool offered to the completion loop, tagged with its origin server."""
    server_id: str
    server_name: str
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)

    def to_function_schema(self) -> Dict[str, Any]:
        parameters = self.input_schema or {"type": "object", "properties": {}}
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or f"Tool: {self.name}",
                "parameters": parameters,
            },
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_id": self.server_id,
            "server_name": self.server_name,
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }
