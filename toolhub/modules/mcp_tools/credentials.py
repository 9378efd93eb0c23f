"""
Encrypted storage format for per-user MCP server credentials.

Credentials are encrypted with Fernet (AES-128-CBC + HMAC). The owner id is
sealed inside the ciphertext, so a blob copied onto another user's config
fails to decrypt. The key is derived from MCP_CREDENTIALS_ENCRYPTION_KEY; if
no key is set a random key is generated and stored credentials will not
survive a restart.
"""

import base64
import json
import logging
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from toolhub.core.log_sanitizer import sanitize_for_logging
from toolhub.domain.errors import CredentialError

logger = logging.getLogger(__name__)


class FernetCredentialResolver:
    """Encrypts and decrypts credential dictionaries bound to an owner id."""

    # Salt for key derivation (constant, not secret)
    _SALT = b"toolhub-mcp-credentials-v1"

    def __init__(self, encryption_key: Optional[str] = None):
        if encryption_key:
            self._fernet = self._derive_fernet(encryption_key)
            logger.info("Credential resolver initialized with configured encryption key")
        else:
            self._fernet = Fernet(Fernet.generate_key())
            logger.warning(
                "No MCP_CREDENTIALS_ENCRYPTION_KEY set. Using ephemeral key - "
                "stored credentials will not survive application restarts."
            )

    def _derive_fernet(self, key_source: str) -> Fernet:
        """Use key_source as a Fernet key, or derive one from it as a passphrase."""
        try:
            return Fernet(key_source.encode())
        except ValueError:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=self._SALT,
                iterations=480000,  # OWASP recommended minimum
            )
            derived_key = base64.urlsafe_b64encode(kdf.derive(key_source.encode()))
            return Fernet(derived_key)

    def encrypt(self, credentials: Dict[str, Any], owner_id: str) -> str:
        if not isinstance(credentials, dict):
            raise CredentialError("Credentials must be an object", code="INVALID_CREDENTIALS")
        payload = json.dumps({"owner": owner_id, "data": credentials}).encode()
        return self._fernet.encrypt(payload).decode()

    def decrypt(self, blob: str, owner_id: str) -> Dict[str, Any]:
        """
        Raises:
            CredentialError: corrupt blob, wrong key, or blob sealed for another owner
        """
        try:
            payload = json.loads(self._fernet.decrypt(blob.encode()))
        except (InvalidToken, ValueError) as e:
            logger.warning("Failed to decrypt credentials for %s", sanitize_for_logging(owner_id))
            raise CredentialError("Stored credentials could not be decrypted", code="DECRYPT_FAILED") from e

        if not isinstance(payload, dict) or payload.get("owner") != owner_id:
            logger.warning("Credential owner mismatch for %s", sanitize_for_logging(owner_id))
            raise CredentialError("Stored credentials belong to another user", code="OWNER_MISMATCH")

        data = payload.get("data")
        return data if isinstance(data, dict) else {}
