"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.services.database import Database
from src.wearables.sync.orchestrator import SyncContext, build_sync_context


@dataclass(frozen=True)
class AuthContext:
    """Authenticated user context extracted from the Supabase JWT."""

    user_id: uuid.UUID  # auth.users id, equal to profiles.id
    role: str | None = None  # app role claim: athlete | doctor | admin
    email: str | None = None
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The Supabase auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


def get_database(request: Request) -> Database:
    return request.app.state.db


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


def get_sync_context(
    db: Annotated[Database, Depends(get_database)],
    http: Annotated[httpx.AsyncClient, Depends(get_http_client)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SyncContext:
    """Build a fresh SyncContext for this request."""
    return build_sync_context(db, http, settings)


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AppSettings = Annotated[Settings, Depends(get_settings)]
AppDatabase = Annotated[Database, Depends(get_database)]
SyncCtx = Annotated[SyncContext, Depends(get_sync_context)]
