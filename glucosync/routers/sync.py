"""Scheduler trigger: run one sync tick."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from glucosync.cgm.sync.scheduler import (
    STATUS_ABANDONED,
    STATUS_ERROR,
    STATUS_PARTIAL,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    TickReport,
)
from glucosync.dependencies import Orchestrator, verify_cron_secret
from glucosync.models.sync import TickReportRead, UserSyncResultRead

router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(verify_cron_secret)])
logger = logging.getLogger("glucosync.routers.sync")


def _to_read(report: TickReport) -> TickReportRead:
    return TickReportRead(
        started_at=report.started_at,
        finished_at=report.finished_at,
        succeeded=report.count(STATUS_SUCCESS),
        partial=report.count(STATUS_PARTIAL),
        failed=report.count(STATUS_ERROR),
        skipped=report.count(STATUS_SKIPPED),
        abandoned=report.count(STATUS_ABANDONED),
        inserted=report.inserted,
        results=[UserSyncResultRead.model_validate(r) for r in report.results],
    )


@router.post("/tick", response_model=TickReportRead)
async def run_tick(orchestrator: Orchestrator) -> Any:
    """Run one tick.  Safe to call early, late, twice, or concurrently."""
    report = await orchestrator.run_tick()
    return _to_read(report)
