"""Whoop sync endpoints: scheduled batch, manual trigger, monitoring stats."""

from __future__ import annotations

import hmac
import logging
import uuid
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Query, Request
from pydantic import BaseModel

from src.dependencies import AppSettings, CurrentUser, SyncCtx
from src.wearables.base import utc_now
from src.wearables.errors import SyncInProgressError
from src.wearables.sync.orchestrator import SyncOrchestrator, SyncOutcome
from src.wearables.sync.scheduler import BatchRunner, UserSyncLocks

router = APIRouter(tags=["sync"])
logger = logging.getLogger("prime.routers.sync")

STAFF_ROLES = {"doctor", "admin"}


class ManualSyncRequest(BaseModel):
    athlete_id: uuid.UUID | None = None


def _user_locks(request: Request) -> UserSyncLocks:
    locks = getattr(request.app.state, "sync_locks", None)
    if locks is None:
        locks = request.app.state.sync_locks = UserSyncLocks()
    return locks


# ---------- Scheduled batch ----------

@router.get("/cron/sync-whoop")
async def cron_sync_whoop(
    request: Request,
    ctx: SyncCtx,
    settings: AppSettings,
    authorization: str | None = Header(default=None),
) -> dict[str, Any]:
    """Sync every active Whoop connection.  Called by the scheduler."""
    expected = f"Bearer {settings.cron_secret}"
    if not settings.cron_secret or not authorization or not hmac.compare_digest(
        authorization, expected
    ):
        raise HTTPException(status_code=401, detail="Unauthorized")

    summary = await BatchRunner(ctx, locks=_user_locks(request)).sync_all_active()
    return {
        "success": True,
        "timestamp": utc_now().isoformat(),
        **summary.to_dict(),
    }


# ---------- Manual trigger ----------

@router.post("/sync/whoop/manual")
async def manual_sync_whoop(
    request: Request,
    user: CurrentUser,
    ctx: SyncCtx,
    body: ManualSyncRequest | None = None,
) -> dict[str, Any]:
    """Sync the caller, or an athlete the calling doctor supervises."""
    target = user.user_id
    if body is not None and body.athlete_id is not None and body.athlete_id != user.user_id:
        if not await ctx.repository.doctor_supervises(user.user_id, body.athlete_id):
            raise HTTPException(status_code=403, detail="Not authorized for this athlete")
        target = body.athlete_id

    connection = await ctx.repository.get_connection(target)
    if connection is None or not connection.is_active:
        raise HTTPException(status_code=400, detail="No active Whoop connection")

    try:
        async with _user_locks(request).hold(target):
            logger.info("Manual Whoop sync for %s requested by %s", target, user.user_id)
            result = await SyncOrchestrator(ctx).sync_user(target)
    except SyncInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    payload = result.to_dict()
    payload["reconnect_required"] = result.outcome is SyncOutcome.RECONNECT_REQUIRED
    return payload


# ---------- Monitoring ----------

@router.get("/sync/stats")
async def sync_stats(
    user: CurrentUser,
    ctx: SyncCtx,
    period: int = Query(default=7, ge=1, le=365),
) -> dict[str, Any]:
    """Sync-log statistics over the last ``period`` days.  Staff only."""
    if user.role not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Sync monitoring is restricted to staff")
    since = ctx.now() - timedelta(days=period)
    stats = await ctx.repository.sync_stats(since, period)
    return {
        "success": True,
        "stats": {
            "period_days": stats.period_days,
            "total_syncs": stats.total_syncs,
            "successful": stats.successful,
            "failed": stats.failed,
            "success_rate": stats.success_rate,
            "records_synced": stats.records_synced,
            "last_sync_at": stats.last_sync_at.isoformat() if stats.last_sync_at else None,
            "recent_errors": [
                {
                    "user_id": str(e["user_id"]),
                    "sync_started_at": e["sync_started_at"].isoformat(),
                    "error_message": e["error_message"],
                }
                for e in stats.recent_errors
            ],
        },
    }
