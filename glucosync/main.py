"""glucosync — FastAPI application entry point.

The scheduler (Supabase cron, Railway cron, a systemd timer...) calls
``POST /api/v1/sync/tick`` every few minutes with the shared cron secret.

Run locally:
    uvicorn glucosync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from glucosync.cgm.adapters import build_adapters
from glucosync.cgm.config_loader import SyncConfig, get_sync_config
from glucosync.cgm.sync.scheduler import SyncOrchestrator
from glucosync.cgm.sync.session import AuthSessionManager
from glucosync.cgm.sync.store import (
    PostgresConnectionDirectory,
    PostgresProgressStore,
    PostgresReadingGateway,
)
from glucosync.cgm.trend import TrendNormalizer
from glucosync.config import Settings, get_settings
from glucosync.routers import health, sync
from glucosync.services.secrets import VaultCredentialProvider
from glucosync.services.supabase import close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("glucosync")


def build_orchestrator(settings: Settings, config: SyncConfig) -> SyncOrchestrator:
    """Wire the production pipeline: LibreLinkUp, Supabase Vault, Postgres."""
    return SyncOrchestrator(
        adapters=build_adapters(settings),
        sessions=AuthSessionManager(VaultCredentialProvider(), config.auth, config.retry),
        gateway=PostgresReadingGateway(config.persistence.connection_retries),
        progress=PostgresProgressStore(),
        directory=PostgresConnectionDirectory(),
        normalizer=TrendNormalizer.from_config(config),
        config=config,
    )


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logging.getLogger("glucosync").setLevel(settings.log_level.upper())
    logger.info(
        "Starting glucosync v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    await init_pool(settings)
    app.state.orchestrator = build_orchestrator(settings, get_sync_config())
    yield
    await close_pool()
    logger.info("glucosync shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="glucosync",
        description="Continuous glucose sync worker — LibreLinkUp to Postgres.",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    # ---------- Health check ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(sync.router, prefix="/api/v1")

    return app


app = create_app()
