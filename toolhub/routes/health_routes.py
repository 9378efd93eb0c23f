"""Health check routes for load balancers and uptime monitoring.

Neither endpoint requires authentication.
"""

import logging
import os
import subprocess
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request

from toolhub.version import VERSION

logger = logging.getLogger(__name__)


def _resolve_git_commit() -> str:
    """Short git commit hash from GIT_COMMIT, then git itself, else 'unknown'."""
    from_env = os.environ.get("GIT_COMMIT", "").strip()
    if from_env:
        return from_env
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass
    return "unknown"


GIT_COMMIT = _resolve_git_commit()

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/heartbeat")
async def heartbeat() -> Dict[str, str]:
    """Minimal liveness probe."""
    return {"status": "ok"}


@router.get("/health")
async def health_check(request: Request) -> Dict[str, Any]:
    """Service status with the number of live MCP connections.

    Returns:
        Dictionary containing status, service, version, git_commit,
        managed_connections and an ISO-8601 UTC timestamp.
    """
    factory = getattr(request.app.state, "app_factory", None)
    managed = len(factory.connection_manager.get_all_statuses()) if factory is not None else 0
    return {
        "status": "healthy",
        "service": "toolhub",
        "version": VERSION,
        "git_commit": GIT_COMMIT,
        "managed_connections": managed,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
