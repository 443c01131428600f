"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from glucosync.cgm.sync.scheduler import SyncOrchestrator
from glucosync.config import Settings, get_settings


async def verify_cron_secret(
    x_cron_secret: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Reject scheduler calls that do not carry the shared cron secret."""
    if not x_cron_secret or not hmac.compare_digest(
        x_cron_secret.encode(), settings.cron_secret.encode()
    ):
        raise HTTPException(status_code=401, detail="Invalid cron secret")


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Return the process-wide orchestrator created at startup."""
    orchestrator: SyncOrchestrator | None = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Sync worker not initialized")
    return orchestrator


# Annotated shortcuts for route signatures
Orchestrator = Annotated[SyncOrchestrator, Depends(get_orchestrator)]
