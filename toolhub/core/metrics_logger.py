"""
Structured [METRIC] log lines for connection activity.

Lines carry the caller identity plus counts, durations and statuses only.
Credentials, headers, environment values and tool arguments never appear.

Usage:
    from toolhub.core.metrics_logger import log_metric

    log_metric("mcp_connect", user_id, server_id=server_id, status="connected", latency_ms=120)
    log_metric("mcp_tools_aggregated", user_id, server_count=3, tool_count=12)
"""

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


def log_metric(
    event_type: str,
    user_email: Optional[str] = None,
    **kwargs: Any
) -> None:
    """
    Emit one [METRIC] line unless FEATURE_METRICS_LOGGING_ENABLED is off.

    Args:
        event_type: Type of event (e.g., "mcp_connect", "mcp_disconnect")
        user_email: User identity (will be sanitized)
        **kwargs: Additional metadata to log (only non-sensitive data)
    """
    # looked up on every call so settings reloads take effect
    from toolhub.core.log_sanitizer import sanitize_for_logging
    from toolhub.modules.config import config_manager

    if not config_manager.app_settings.feature_metrics_logging_enabled:
        return

    sanitized_user = sanitize_for_logging(user_email) if user_email else "unknown"

    parts = [f"[METRIC] [{sanitized_user}] {event_type}"]

    if kwargs:
        metadata_parts = [
            f"{key}={sanitize_for_logging(value)}"
            for key, value in kwargs.items()
        ]
        parts.append(" ".join(metadata_parts))

    logger.info(" ".join(parts))
