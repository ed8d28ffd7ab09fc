"""Whoop OAuth2 authorization-code flow.

``/authorize`` hands the signed-in athlete a Whoop consent URL whose
``state`` binds the callback to them.  ``/callback`` verifies that state,
exchanges the code, stores encrypted tokens and creates or reactivates the
connection, then redirects back to the athlete dashboard.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from fastapi import APIRouter, Query
from fastapi.responses import RedirectResponse

from src.dependencies import AppSettings, CurrentUser, SyncCtx
from src.wearables.adapters.whoop import InvalidStateError
from src.wearables.errors import WhoopAPIError

router = APIRouter(prefix="/auth/whoop", tags=["oauth"])
logger = logging.getLogger("prime.routers.oauth")


def _dashboard(settings, **params: str) -> RedirectResponse:
    query = "&".join(f"{k}={v}" for k, v in params.items())
    return RedirectResponse(f"{settings.frontend_url}/athlete/dashboard?{query}", status_code=302)


@router.get("/authorize")
async def authorize(user: CurrentUser, ctx: SyncCtx) -> dict[str, Any]:
    """Return the Whoop consent URL for the current user."""
    state = ctx.client.generate_state(user.user_id)
    logger.info("Whoop authorization started for user %s", user.user_id)
    return {"authorization_url": ctx.client.authorization_url(state)}


@router.get("/callback")
async def callback(
    ctx: SyncCtx,
    settings: AppSettings,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> RedirectResponse:
    if error:
        logger.warning("Whoop returned an OAuth error: %s", error)
        return _dashboard(settings, error="whoop_oauth_error")

    try:
        user_id = ctx.client.validate_state(state)
    except InvalidStateError as exc:
        logger.warning("Rejected Whoop callback: %s", exc)
        return _dashboard(settings, error="invalid_state")

    if not code:
        return _dashboard(settings, error="missing_code")

    try:
        tokens = await ctx.client.exchange_code(code)
    except (WhoopAPIError, httpx.HTTPError) as exc:
        logger.error("Whoop token exchange failed for user %s: %s", user_id, exc)
        return _dashboard(settings, error="token_exchange_failed")

    await ctx.tokens.store.save(user_id, tokens)
    await ctx.repository.activate_connection(user_id)
    logger.info("Whoop connected for user %s", user_id)
    return _dashboard(settings, success="whoop_connected")
