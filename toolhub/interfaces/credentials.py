"""Credential resolver protocol."""

from typing import Any, Dict, Protocol, runtime_checkable


@runtime_checkable
class CredentialResolverProtocol(Protocol):
    """Protocol for turning stored credential blobs into usable key-value data."""

    def decrypt(self, blob: str, owner_id: str) -> Dict[str, Any]:
        """Decrypt a credential blob that belongs to owner_id.

        Raises:
            CredentialError: if the blob cannot be decrypted for this owner
        """
        ...
