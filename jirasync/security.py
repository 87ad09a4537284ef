"""Optional bearer-token protection for the HTTP API"""

from __future__ import annotations

import secrets

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


def bearer_token(header_value: str) -> str | None:
    """Token from an ``Authorization: Bearer <token>`` header, if well formed."""
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return token


class ApiTokenMiddleware(BaseHTTPMiddleware):
    """Reject requests without the configured API token.

    Paths in ``allow_paths`` (by default only /health) stay open.
    """

    def __init__(self, app, *, token: str, allow_paths: set[str] | None = None):
        super().__init__(app)
        self._token = token
        self._allow_paths = allow_paths or {"/health"}

    def _unauthorized(self) -> Response:
        return JSONResponse(
            {"detail": "Unauthorized"},
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
        )

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self._allow_paths:
            return await call_next(request)

        token = bearer_token(request.headers.get("Authorization", ""))
        if token is None or not secrets.compare_digest(token, self._token):
            return self._unauthorized()

        return await call_next(request)
