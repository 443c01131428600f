"""Pydantic response models for the sync trigger endpoint."""

from __future__ import annotations

import uuid
from datetime import datetime

from glucosync.models.base import GlucosyncBase


class UserSyncResultRead(GlucosyncBase):
    user_id: uuid.UUID
    source: str
    status: str
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    malformed: int = 0
    high_water_mark_before: datetime | None = None
    high_water_mark_after: datetime | None = None
    error: str | None = None
    error_type: str | None = None
    synced_at: datetime


class TickReportRead(GlucosyncBase):
    started_at: datetime
    finished_at: datetime | None = None
    succeeded: int
    partial: int
    failed: int
    skipped: int
    abandoned: int
    inserted: int
    results: list[UserSyncResultRead]
