"""Prime Human Performance API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import get_settings
from src.middleware.supabase_auth import SupabaseAuthMiddleware
from src.routers import health, oauth, sync
from src.services.database import Database
from src.wearables.config_loader import get_sync_config
from src.wearables.sync.scheduler import UserSyncLocks

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("prime")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting %s API v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )
    get_sync_config()  # fail fast on a bad sync_config.yaml
    app.state.db = await Database.connect(settings)
    app.state.http = httpx.AsyncClient(timeout=settings.whoop_request_timeout_s)
    app.state.sync_locks = UserSyncLocks()
    try:
        yield
    finally:
        await app.state.http.aclose()
        await app.state.db.close()
        logger.info("%s API shut down", settings.app_name)


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.app_name} API",
        description=(
            "Athlete monitoring platform — Whoop data synchronization, "
            "doctor supervision, and sync monitoring."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Middleware (last added runs first) ----------

    # Supabase JWT authentication
    app.add_middleware(SupabaseAuthMiddleware, settings=settings)

    # CORS answers preflight before auth runs
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sync.router, prefix=v1_prefix)
    app.include_router(oauth.router, prefix=v1_prefix)

    return app


app = create_app()
