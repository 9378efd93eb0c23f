"""Domain-level errors and exceptions."""

from typing import Optional


class DomainError(Exception):
    """Base domain error."""
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationError(DomainError):
    """Validation error."""
    pass


class AuthenticationError(DomainError):
    """Authentication error."""
    pass


class AuthorizationError(DomainError):
    """Authorization error."""
    pass


class ConfigurationError(DomainError):
    """Configuration error (malformed transport descriptor or settings)."""
    pass


class ServerNotFoundError(DomainError):
    """Raised when a server definition does not exist or is not visible to the caller."""
    pass


class CredentialError(DomainError):
    """Raised when stored credentials cannot be decrypted or encrypted."""
    pass


class StoreTimeoutError(DomainError):
    """Raised when a registry call exceeds its time budget."""
    pass


class ToolError(DomainError):
    """Tool-related error."""
    pass


class ToolListingError(ToolError):
    """Connected, but the server failed to list its tools."""
    pass


class ToolNotFoundError(ToolError):
    """No mirrored tool with the given name exists for the server."""
    pass


class MCPConnectionError(DomainError):
    """Base class for failures establishing a connection to an MCP server."""
    pass


class ConnectionTimeoutError(MCPConnectionError):
    """Connect attempt exceeded the configured timeout."""
    pass


class ServerConnectionRefusedError(MCPConnectionError):
    """The remote endpoint actively refused the connection."""
    pass


class DnsResolutionError(MCPConnectionError):
    """The server host name could not be resolved."""
    pass


class TlsError(MCPConnectionError):
    """TLS handshake or certificate validation failed."""
    pass


class MCPAuthenticationError(MCPConnectionError):
    """The server rejected the supplied credentials."""
    pass


class MCPProtocolError(MCPConnectionError):
    """The server answered but did not speak MCP as expected."""
    pass


class ConnectionStateError(DomainError):
    """Base class for operations that collide with the current connection state."""
    pass


class ConnectionInProgressError(ConnectionStateError):
    """Another connect or disconnect is already running for the same key."""
    pass


class AlreadyConnectedError(ConnectionStateError):
    """Connect was called on an entry that is already connected."""
    pass


class AlreadyManagedError(ConnectionStateError):
    """Register was called for a key that already has an entry."""
    pass


class ServerNotManagedError(ConnectionStateError):
    """An operation needed a managed entry but none exists and no transport was given."""
    pass
