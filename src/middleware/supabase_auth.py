"""Supabase JWT verification middleware for FastAPI.

Validates the Bearer token on every request (except public routes),
extracts claims, and sets ``request.state.auth`` with the authenticated
user context that downstream route handlers consume via ``get_current_user``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import jwt as pyjwt
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import Settings, get_settings
from src.dependencies import AuthContext

logger = logging.getLogger("prime.auth")

# Paths that do not require a user session
PUBLIC_PATHS: set[str] = {
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/v1/cron/sync-whoop",  # checked against CRON_SECRET in the route
    "/api/v1/auth/whoop/callback",  # bound to a user by the signed OAuth state
}

SUPABASE_AUDIENCE = "authenticated"


def _is_public(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith("/docs") or path.startswith("/redoc")


def _unauthorized(detail: str) -> Response:
    return Response(
        content=f'{{"detail":"{detail}"}}',
        status_code=401,
        media_type="application/json",
    )


class SupabaseAuthMiddleware(BaseHTTPMiddleware):
    """Verify Supabase-issued HS256 JWTs and populate request.state.auth."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        self._settings = settings or get_settings()

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if _is_public(request.url.path):
            return await call_next(request)

        # OPTIONS requests pass through (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return _unauthorized("Missing or invalid Authorization header")

        token = auth_header.removeprefix("Bearer ").strip()

        try:
            payload = pyjwt.decode(
                token,
                self._settings.supabase_jwt_secret,
                algorithms=["HS256"],
                audience=SUPABASE_AUDIENCE,
            )
        except pyjwt.ExpiredSignatureError:
            return _unauthorized("Token expired")
        except pyjwt.InvalidTokenError as exc:
            logger.warning("JWT validation failed: %s", exc)
            return _unauthorized("Invalid token")

        try:
            user_id = uuid.UUID(payload.get("sub", ""))
        except ValueError:
            logger.warning("JWT subject is not a UUID")
            return _unauthorized("Invalid token subject")

        # App role lives in app_metadata (set server-side, not user-editable)
        app_metadata = payload.get("app_metadata") or {}

        request.state.auth = AuthContext(
            user_id=user_id,
            role=app_metadata.get("role") or payload.get("user_role"),
            email=payload.get("email"),
            session_id=payload.get("session_id"),
        )

        return await call_next(request)
