"""Domain layer - pure business models and logic."""

from .errors import (
    AlreadyConnectedError,
    AlreadyManagedError,
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    ConnectionInProgressError,
    ConnectionStateError,
    ConnectionTimeoutError,
    CredentialError,
    DnsResolutionError,
    DomainError,
    MCPAuthenticationError,
    MCPConnectionError,
    MCPProtocolError,
    ServerConnectionRefusedError,
    ServerNotFoundError,
    ServerNotManagedError,
    StoreTimeoutError,
    TlsError,
    ToolError,
    ToolListingError,
    ToolNotFoundError,
    ValidationError,
)
from .servers.models import (
    AggregatedTool,
    ConnectionPolicy,
    ConnectionSnapshot,
    ConnectionStatus,
    ConnectionTestResult,
    ServerDefinition,
    StatusCorrection,
    StreamTransport,
    SubprocessTransport,
    ToolDefinition,
    ToolRecord,
    TransportDescriptor,
    UserServerConfig,
)

__all__ = [
    # Errors
    "DomainError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "ConfigurationError",
    "ServerNotFoundError",
    "CredentialError",
    "StoreTimeoutError",
    "ToolError",
    "ToolListingError",
    "ToolNotFoundError",
    "MCPConnectionError",
    "ConnectionTimeoutError",
    "ServerConnectionRefusedError",
    "DnsResolutionError",
    "TlsError",
    "MCPAuthenticationError",
    "MCPProtocolError",
    "ConnectionStateError",
    "ConnectionInProgressError",
    "AlreadyConnectedError",
    "AlreadyManagedError",
    "ServerNotManagedError",
    # Servers
    "AggregatedTool",
    "ConnectionPolicy",
    "ConnectionSnapshot",
    "ConnectionStatus",
    "ConnectionTestResult",
    "ServerDefinition",
    "StatusCorrection",
    "StreamTransport",
    "SubprocessTransport",
    "ToolDefinition",
    "ToolRecord",
    "TransportDescriptor",
    "UserServerConfig",
]
