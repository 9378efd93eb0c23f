"""FastMCP-backed transport clients for MCP servers.

One FastMCPTransportClient wraps one fastmcp ``Client`` and keeps its session
open between ``connect()`` and ``disconnect()`` so the connection manager can
hold a long-lived link per server.
"""

import asyncio
import logging
import socket
import ssl
import sys
from typing import Any, Dict, List, Optional

from fastmcp import Client
from fastmcp.client.transports import SSETransport, StdioTransport, StreamableHttpTransport

from toolhub.core.log_sanitizer import redact_headers, sanitize_for_logging
from toolhub.domain.errors import (
    ConfigurationError,
    ConnectionTimeoutError,
    DnsResolutionError,
    MCPAuthenticationError,
    MCPConnectionError,
    MCPProtocolError,
    ServerConnectionRefusedError,
    TlsError,
    ToolListingError,
)
from toolhub.domain.servers.models import (
    StreamTransport,
    SubprocessTransport,
    ToolDefinition,
    TransportDescriptor,
)
from toolhub.modules.config.config_manager import MCPServerConfig, resolve_env_var

logger = logging.getLogger(__name__)

# Mapping from MCP log levels to Python logging levels
MCP_TO_PYTHON_LOG_LEVEL = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "alert": logging.CRITICAL,
    "critical": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}

# User-facing hints keyed by error code
ERROR_SUGGESTIONS = {
    "CONNECTION_TIMEOUT": "Server is not responding within the timeout period. Check that it is running and reachable.",
    "CONNECTION_REFUSED": "Connection refused. Check that the server is running on the specified host and port.",
    "DNS_ERROR": "Host name cannot be resolved. Check the URL and network connectivity.",
    "TLS_ERROR": "TLS handshake failed. Check that the server presents a valid certificate.",
    "AUTHENTICATION_FAILED": "The server rejected the credentials. Update the stored credentials for this server.",
    "PROTOCOL_ERROR": "The server answered but does not look like an MCP server. Check the endpoint path.",
    "CONNECTION_FAILED": "Check the server logs for more details.",
}


def create_log_handler(server_label: str):
    """Create a handler that forwards MCP server log notifications to the backend logger.

    Tool servers can be chatty at INFO, so INFO and below are logged at DEBUG;
    warnings and errors keep their level.
    """
    async def log_handler(message) -> None:
        if hasattr(message, 'level'):
            log_level_str = str(message.level).lower()
            log_data = message.data if hasattr(message, 'data') else {}
        else:
            log_level_str = message.get('level', 'info').lower()
            log_data = message.get('data', {})

        msg = log_data.get('msg', '') if isinstance(log_data, dict) else str(log_data)
        python_log_level = MCP_TO_PYTHON_LOG_LEVEL.get(log_level_str, logging.INFO)
        backend_log_level = python_log_level if python_log_level >= logging.WARNING else logging.DEBUG
        logger.log(
            backend_log_level,
            f"[MCP:{sanitize_for_logging(server_label)}] {sanitize_for_logging(msg)}",
        )

    return log_handler


def build_auth_headers(credentials: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Translate decrypted credentials into HTTP headers.

    - ``api_key`` / ``token`` -> ``Authorization: Bearer <value>``
    - ``authorization`` -> ``Authorization`` as given
    - ``header_<Name>`` -> ``<Name>``
    """
    headers: Dict[str, str] = {}
    if not credentials:
        return headers

    bearer = credentials.get("api_key") or credentials.get("token")
    if bearer:
        headers["Authorization"] = f"Bearer {bearer}"
    if credentials.get("authorization"):
        headers["Authorization"] = str(credentials["authorization"])

    for key, value in credentials.items():
        if key.startswith("header_") and value is not None and len(key) > len("header_"):
            headers[key[len("header_"):]] = str(value)
    return headers


def build_subprocess_env(credentials: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Translate ``env_<NAME>`` credentials into environment variables for stdio servers."""
    env: Dict[str, str] = {}
    if not credentials:
        return env
    for key, value in credentials.items():
        if key.startswith("env_") and value is not None and len(key) > len("env_"):
            env[key[len("env_"):]] = str(value)
    return env


def _error_text(exc: BaseException) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else f"{type(exc).__name__}: connection closed"


def _iter_causes(exc: BaseException):
    """Yield exc, its causes/contexts, and members of exception groups."""
    seen = set()
    stack = [exc]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        stack.append(current.__cause__)
        stack.append(current.__context__)
        stack.extend(getattr(current, "exceptions", ()) or ())


def classify_connection_error(exc: BaseException) -> MCPConnectionError:
    """Map a transport failure onto the connection error taxonomy.

    Exception types are checked first (including chained causes), then the
    message text.
    """
    if isinstance(exc, MCPConnectionError):
        return exc

    message = _error_text(exc)

    for cause in _iter_causes(exc):
        if isinstance(cause, MCPConnectionError):
            return cause
        if isinstance(cause, (asyncio.TimeoutError, TimeoutError)):
            return ConnectionTimeoutError(message, code="CONNECTION_TIMEOUT")
        if isinstance(cause, ConnectionRefusedError):
            return ServerConnectionRefusedError(message, code="CONNECTION_REFUSED")
        if isinstance(cause, socket.gaierror):
            return DnsResolutionError(message, code="DNS_ERROR")
        if isinstance(cause, ssl.SSLError):
            return TlsError(message, code="TLS_ERROR")

    lowered = " ".join(_error_text(cause) for cause in _iter_causes(exc)).lower()
    if "timeout" in lowered or "timed out" in lowered:
        return ConnectionTimeoutError(message, code="CONNECTION_TIMEOUT")
    if "refused" in lowered or "econnrefused" in lowered:
        return ServerConnectionRefusedError(message, code="CONNECTION_REFUSED")
    if (
        "enotfound" in lowered
        or "name or service not known" in lowered
        or "nodename nor servname" in lowered
        or "name resolution" in lowered
        or "getaddrinfo" in lowered
    ):
        return DnsResolutionError(message, code="DNS_ERROR")
    if "certificate" in lowered or "ssl" in lowered or "tls" in lowered:
        return TlsError(message, code="TLS_ERROR")
    if "401" in lowered or "403" in lowered or "unauthorized" in lowered or "forbidden" in lowered:
        return MCPAuthenticationError(message, code="AUTHENTICATION_FAILED")
    if "json" in lowered or "decode" in lowered or "protocol" in lowered or "404" in lowered:
        return MCPProtocolError(message, code="PROTOCOL_ERROR")
    return MCPConnectionError(message, code="CONNECTION_FAILED")


def suggestion_for(error: MCPConnectionError) -> str:
    return ERROR_SUGGESTIONS.get(error.code or "CONNECTION_FAILED", ERROR_SUGGESTIONS["CONNECTION_FAILED"])


class FastMCPTransportClient:
    """Long-lived fastmcp client for a single server connection."""

    def __init__(
        self,
        descriptor: TransportDescriptor,
        credentials: Optional[Dict[str, Any]] = None,
        label: Optional[str] = None,
    ):
        self.descriptor = descriptor
        self.label = label or _describe(descriptor)
        self._client = self._build_client(descriptor, credentials or {})
        self._entered = False

    def _build_client(self, descriptor: TransportDescriptor, credentials: Dict[str, Any]) -> Client:
        log_handler = create_log_handler(self.label)

        if isinstance(descriptor, StreamTransport):
            headers = {**descriptor.headers, **build_auth_headers(credentials)}
            protocol = descriptor.resolved_protocol()
            logger.debug(
                "Creating %s client for %s at %s headers=%s",
                protocol.upper(),
                sanitize_for_logging(self.label),
                sanitize_for_logging(descriptor.url),
                redact_headers(headers),
            )
            if protocol == "sse":
                transport = SSETransport(descriptor.url, headers=headers)
            else:
                transport = StreamableHttpTransport(descriptor.url, headers=headers)
            return Client(transport, log_handler=log_handler)

        if isinstance(descriptor, SubprocessTransport):
            command = descriptor.command
            # Run python stdio servers under the same interpreter as the backend
            if command in {"python", "python3"}:
                command = sys.executable
            env = {**descriptor.env, **build_subprocess_env(credentials)}
            logger.debug(
                "Creating STDIO client for %s with command=%s args=%s env_keys=%s",
                sanitize_for_logging(self.label),
                sanitize_for_logging(command),
                sanitize_for_logging(descriptor.args),
                list(env.keys()),
            )
            transport = StdioTransport(
                command=command,
                args=list(descriptor.args),
                env=env or None,
                cwd=descriptor.cwd,
            )
            return Client(transport, log_handler=log_handler)

        raise ConfigurationError(
            f"Unsupported transport descriptor: {type(descriptor).__name__}",
            code="INVALID_TRANSPORT",
        )

    async def connect(self) -> None:
        if self._entered and self._client.is_connected():
            return
        try:
            await self._client.__aenter__()
        except Exception as e:
            raise classify_connection_error(e) from e
        self._entered = True
        logger.info("Connected MCP client for %s", sanitize_for_logging(self.label))

    async def disconnect(self) -> None:
        if not self._entered:
            return
        self._entered = False
        try:
            await self._client.__aexit__(None, None, None)
        except RuntimeError as e:
            # Raised when the session was opened from another task
            if "cancel scope" not in str(e):
                raise
            logger.debug("Ignoring cancel scope error closing %s: %s", sanitize_for_logging(self.label), e)

    def is_connected(self) -> bool:
        return self._entered and self._client.is_connected()

    async def list_tools(self) -> List[ToolDefinition]:
        if not self.is_connected():
            raise ToolListingError(f"Client for {self.label} is not connected", code="NOT_CONNECTED")
        try:
            tools = await self._client.list_tools()
        except Exception as e:
            raise ToolListingError(f"Failed to list tools for {self.label}: {_error_text(e)}") from e
        return [
            ToolDefinition(
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {}),
            )
            for tool in tools
        ]


def _describe(descriptor: TransportDescriptor) -> str:
    if isinstance(descriptor, StreamTransport):
        return descriptor.url
    return descriptor.command


def create_transport_client(
    descriptor: TransportDescriptor,
    credentials: Optional[Dict[str, Any]] = None,
) -> FastMCPTransportClient:
    """Default transport client factory used by the connection manager."""
    descriptor.validate()
    return FastMCPTransportClient(descriptor, credentials)


def descriptor_from_server_config(config: MCPServerConfig) -> TransportDescriptor:
    """Build a transport descriptor from an mcp.json entry.

    Priority order for the transport type:
    1. Explicit 'transport' field
    2. 'command' present -> stdio
    3. 'url' present -> sse when it ends with /sse, else http

    Raises:
        ConfigurationError: when neither command nor url is usable, or an
            ${ENV_VAR} reference cannot be resolved
    """
    transport_type = config.transport
    if not transport_type:
        if config.command:
            transport_type = "stdio"
        elif config.url:
            transport_type = "sse" if config.url.rstrip("/").endswith("/sse") else "http"
        else:
            raise ConfigurationError("Server config needs either 'command' or 'url'", code="INVALID_TRANSPORT")

    try:
        if transport_type == "stdio":
            if not config.command:
                raise ConfigurationError("stdio server config requires 'command'", code="MISSING_COMMAND")
            env = {key: resolve_env_var(value) for key, value in (config.env or {}).items()}
            descriptor: TransportDescriptor = SubprocessTransport(
                command=config.command[0],
                args=list(config.command[1:]),
                env=env,
                cwd=config.cwd,
            )
        elif transport_type in ("http", "sse"):
            url = config.url or ""
            if url and not url.startswith(("http://", "https://")):
                url = f"http://{url}"
            headers = {key: resolve_env_var(value) for key, value in (config.headers or {}).items()}
            token = resolve_env_var(config.auth_token)
            if token:
                headers["Authorization"] = f"Bearer {token}"
            descriptor = StreamTransport(url=url, headers=headers, protocol=transport_type)
        else:
            raise ConfigurationError(f"Unsupported transport type '{transport_type}'", code="INVALID_TRANSPORT")
    except ValueError as e:
        raise ConfigurationError(str(e), code="UNRESOLVED_ENV_VAR") from e

    descriptor.validate()
    return descriptor

