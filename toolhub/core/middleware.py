"""FastAPI middleware for authentication and request logging."""

import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from toolhub.core.log_sanitizer import sanitize_for_logging

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {"/api/health", "/api/heartbeat"}


def get_user_from_header(header_value: Optional[str]) -> Optional[str]:
    """Extract the user identity from the auth header set by the reverse proxy."""
    if not header_value:
        return None
    value = sanitize_for_logging(header_value).strip()
    return value or None


class AuthMiddleware(BaseHTTPMiddleware):
    """Resolve the caller identity and store it on request.state.user_email.

    Production deployments sit behind a reverse proxy that authenticates the
    user and forwards the identity in a header. In debug mode a missing header
    falls back to the configured test user.
    """

    def __init__(
        self,
        app,
        debug_mode: bool = False,
        auth_header_name: str = "X-User-Email",
        test_user: str = "test@test.com",
    ):
        super().__init__(app)
        self.debug_mode = debug_mode
        self.auth_header_name = auth_header_name
        self.test_user = test_user

    async def dispatch(self, request: Request, call_next) -> Response:
        logger.debug("Request: %s %s", request.method, sanitize_for_logging(request.url.path))

        if request.url.path in _PUBLIC_PATHS:
            return await call_next(request)

        user_email = get_user_from_header(request.headers.get(self.auth_header_name))
        if not user_email and self.debug_mode:
            user_email = self.test_user

        if not user_email:
            logger.warning(
                "Missing authentication for endpoint: %s",
                sanitize_for_logging(request.url.path),
            )
            return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

        request.state.user_email = user_email
        return await call_next(request)
