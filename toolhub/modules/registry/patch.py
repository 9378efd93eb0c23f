"""Partial updates of server definitions shared by registry backends."""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict

from toolhub.domain.errors import ValidationError
from toolhub.domain.servers.models import (
    ConnectionPolicy,
    ConnectionStatus,
    ServerDefinition,
    StreamTransport,
    SubprocessTransport,
    transport_from_dict,
)

DEFINITION_FIELDS = {"name", "description", "transport", "policy", "is_enabled", "is_public"}
STATUS_FIELDS = {"connection_status", "last_error", "last_connected"}


def apply_server_patch(server: ServerDefinition, patch: Dict[str, Any]) -> ServerDefinition:
    """Return a copy of server with patch applied.

    Transport and policy accept either domain objects or their dict forms.
    Only definition fields bump ``updated_at``; status fields do not.

    Raises:
        ValidationError: unknown field or out-of-range policy
        ConfigurationError: malformed transport
    """
    unknown = set(patch) - DEFINITION_FIELDS - STATUS_FIELDS
    if unknown:
        raise ValidationError(f"Unknown server fields: {', '.join(sorted(unknown))}", code="INVALID_PATCH")

    changes: Dict[str, Any] = dict(patch)
    if "transport" in changes and not isinstance(changes["transport"], (StreamTransport, SubprocessTransport)):
        changes["transport"] = transport_from_dict(changes["transport"])
    if "policy" in changes:
        policy = changes["policy"]
        if isinstance(policy, ConnectionPolicy):
            policy.validate()
        else:
            changes["policy"] = ConnectionPolicy.from_dict(policy)
    if "connection_status" in changes:
        changes["connection_status"] = ConnectionStatus(changes["connection_status"])
    if "name" in changes and not (changes["name"] or "").strip():
        raise ValidationError("Server name must not be empty", code="INVALID_NAME")

    if DEFINITION_FIELDS & set(changes):
        changes["updated_at"] = datetime.now(timezone.utc)
    return replace(server, **changes)
