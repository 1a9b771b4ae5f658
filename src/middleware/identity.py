"""Gateway identity middleware for FastAPI.

HealthSync sits behind an authenticating gateway that has already verified
the caller.  The gateway forwards the user's UUID in ``X-User-Id``; this
middleware parses it and sets ``request.state.auth`` for route handlers
that consume it via ``get_current_user``.  A context already placed on
``request.state.auth`` by an outer layer is left untouched.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.dependencies import AuthContext

logger = logging.getLogger("healthsync.auth")

USER_ID_HEADER = "X-User-Id"

# Paths that do not require an identity
PUBLIC_PATHS: set[str] = {
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
}


def _is_public(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith("/docs") or path.startswith("/redoc")


class GatewayIdentityMiddleware(BaseHTTPMiddleware):
    """Populate request.state.auth from the gateway's user header."""

    def __init__(self, app: Any, header: str = USER_ID_HEADER) -> None:
        super().__init__(app)
        self._header = header

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if _is_public(request.url.path):
            return await call_next(request)

        # OPTIONS requests pass through (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        if getattr(request.state, "auth", None) is not None:
            return await call_next(request)

        raw = request.headers.get(self._header)
        if not raw:
            return Response(
                content='{"detail":"Missing user identity"}',
                status_code=401,
                media_type="application/json",
            )

        try:
            user_id = uuid.UUID(raw.strip())
        except ValueError:
            logger.warning("Rejected malformed %s header: %r", self._header, raw)
            return Response(
                content='{"detail":"Invalid user identity"}',
                status_code=401,
                media_type="application/json",
            )

        request.state.auth = AuthContext(
            user_id=user_id,
            session_id=request.headers.get("X-Session-Id"),
        )

        return await call_next(request)
