"""Interface protocols for external collaborators of the connection manager."""

from .credentials import CredentialResolverProtocol
from .registry import ServerRegistryProtocol
from .transport import TransportClientFactory, TransportClientProtocol

__all__ = [
    "CredentialResolverProtocol",
    "ServerRegistryProtocol",
    "TransportClientFactory",
    "TransportClientProtocol",
]
