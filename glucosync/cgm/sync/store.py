"""Persistence gateway, sync progress and connection directory.

Three small capabilities the orchestrator depends on, each with a Postgres
implementation (Supabase, via the asyncpg pool) and an in-memory one for
local runs and tests:

    ReadingGateway      — idempotent reading upsert (INSERTED / DUPLICATE)
    ProgressStore       — per (user, source) high-water mark, never regresses
    ConnectionDirectory — active (user, source) pairs + last sync status
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from uuid import UUID

import asyncpg

from glucosync.cgm.base import GlucoseReading, SyncConnection, UpsertOutcome
from glucosync.cgm.errors import PersistenceError
from glucosync.cgm.sync.dedup import INSERT_READING_SQL, reading_key
from glucosync.services.supabase import execute, fetch, fetchval

logger = logging.getLogger("glucosync.cgm.sync.store")

# Errors worth one more try: the connection, not the statement, failed.
_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class ReadingGateway(ABC):
    @abstractmethod
    async def upsert(self, reading: GlucoseReading) -> UpsertOutcome:
        """Store a reading once.

        A collision on (user_id, recorded_at, source) is ``DUPLICATE``, never
        an error.

        Raises:
            PersistenceError: The store could not be reached or refused the row.
        """


class ProgressStore(ABC):
    @abstractmethod
    async def get(self, user_id: UUID, source: str) -> datetime | None:
        """Return the high-water mark, or None if never synced."""

    @abstractmethod
    async def advance(self, user_id: UUID, source: str, mark: datetime) -> None:
        """Move the mark forward to ``mark``.  A smaller value is ignored."""


class ConnectionDirectory(ABC):
    @abstractmethod
    async def list_active(self) -> list[SyncConnection]:
        """Return every (user, source) pair that should be synced."""

    @abstractmethod
    async def record_result(
        self,
        user_id: UUID,
        source: str,
        status: str,
        error: str | None,
        synced_at: datetime,
    ) -> None:
        """Persist the outcome of one user's pipeline for the app to display."""


# ---------------------------------------------------------------------------
# Postgres implementations
# ---------------------------------------------------------------------------


class PostgresReadingGateway(ReadingGateway):
    """Writes to glucose_readings with INSERT ... ON CONFLICT DO NOTHING."""

    def __init__(self, connection_retries: int = 1) -> None:
        self._connection_retries = connection_retries

    async def upsert(self, reading: GlucoseReading) -> UpsertOutcome:
        args = (
            reading.user_id,
            reading.recorded_at,
            reading.value_mgdl,
            reading.trend.value,
            reading.source,
            json.dumps(reading.raw, default=str),
        )
        attempts = self._connection_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                inserted_id = await fetchval(INSERT_READING_SQL, *args)
            except asyncpg.UniqueViolationError:
                # Lost a race with a concurrent insert of the same key.
                return UpsertOutcome.DUPLICATE
            except _CONNECTION_ERRORS as exc:
                if attempt < attempts:
                    logger.warning(
                        "Store connection error for %s (attempt %d/%d): %s",
                        reading_key(*reading.idempotency_key), attempt, attempts, exc,
                    )
                    continue
                raise PersistenceError(f"Store unreachable: {exc}") from exc
            except asyncpg.PostgresError as exc:
                raise PersistenceError(f"Store rejected reading: {exc}") from exc
            return UpsertOutcome.INSERTED if inserted_id is not None else UpsertOutcome.DUPLICATE
        raise PersistenceError("Store retries exhausted")


class PostgresProgressStore(ProgressStore):
    """High-water marks in cgm_sync_progress; GREATEST keeps them monotonic."""

    async def get(self, user_id: UUID, source: str) -> datetime | None:
        try:
            return await fetchval(
                "SELECT high_water_mark FROM cgm_sync_progress WHERE user_id = $1 AND source = $2",
                user_id, source,
            )
        except (asyncpg.PostgresError, *_CONNECTION_ERRORS) as exc:
            raise PersistenceError(f"Could not read sync progress: {exc}") from exc

    async def advance(self, user_id: UUID, source: str, mark: datetime) -> None:
        try:
            await execute(
                """
                INSERT INTO cgm_sync_progress (user_id, source, high_water_mark, updated_at)
                VALUES ($1, $2, $3, NOW())
                ON CONFLICT (user_id, source) DO UPDATE
                SET high_water_mark = GREATEST(cgm_sync_progress.high_water_mark, EXCLUDED.high_water_mark),
                    updated_at = NOW()
                """,
                user_id, source, mark,
            )
        except (asyncpg.PostgresError, *_CONNECTION_ERRORS) as exc:
            raise PersistenceError(f"Could not advance sync progress: {exc}") from exc


class PostgresConnectionDirectory(ConnectionDirectory):
    async def list_active(self) -> list[SyncConnection]:
        rows = await fetch(
            "SELECT user_id, source FROM cgm_connections WHERE is_active ORDER BY user_id, source"
        )
        return [SyncConnection(user_id=r["user_id"], source=r["source"]) for r in rows]

    async def record_result(
        self,
        user_id: UUID,
        source: str,
        status: str,
        error: str | None,
        synced_at: datetime,
    ) -> None:
        await execute(
            """
            UPDATE cgm_connections
            SET last_sync_at = $3,
                last_sync_status = $4,
                last_sync_error = $5,
                updated_at = NOW()
            WHERE user_id = $1 AND source = $2
            """,
            user_id, source, synced_at, status, error,
        )


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryReadingGateway(ReadingGateway):
    """Dict-backed gateway keyed by the idempotency key.

    Usage::

        gateway = InMemoryReadingGateway()
        await gateway.upsert(reading)   # INSERTED
        await gateway.upsert(reading)   # DUPLICATE
    """

    def __init__(self) -> None:
        self.rows: dict[str, GlucoseReading] = {}

    async def upsert(self, reading: GlucoseReading) -> UpsertOutcome:
        key = reading_key(*reading.idempotency_key)
        if key in self.rows:
            return UpsertOutcome.DUPLICATE
        self.rows[key] = reading
        return UpsertOutcome.INSERTED

    def readings_for(self, user_id: UUID) -> list[GlucoseReading]:
        """Return a user's rows newest first, like the (user_id, recorded_at DESC) index."""
        return sorted(
            (r for r in self.rows.values() if r.user_id == user_id),
            key=lambda r: r.recorded_at,
            reverse=True,
        )

    def __len__(self) -> int:
        return len(self.rows)


class InMemoryProgressStore(ProgressStore):
    def __init__(self) -> None:
        self.marks: dict[tuple[UUID, str], datetime] = {}

    async def get(self, user_id: UUID, source: str) -> datetime | None:
        return self.marks.get((user_id, source))

    async def advance(self, user_id: UUID, source: str, mark: datetime) -> None:
        current = self.marks.get((user_id, source))
        if current is None or mark > current:
            self.marks[(user_id, source)] = mark


class InMemoryConnectionDirectory(ConnectionDirectory):
    def __init__(self, connections: list[SyncConnection] | None = None) -> None:
        self.connections = list(connections or [])
        self.results: dict[tuple[UUID, str], tuple[str, str | None, datetime]] = {}

    async def list_active(self) -> list[SyncConnection]:
        return list(self.connections)

    async def record_result(
        self,
        user_id: UUID,
        source: str,
        status: str,
        error: str | None,
        synced_at: datetime,
    ) -> None:
        self.results[(user_id, source)] = (status, error, synced_at)
