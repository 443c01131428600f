"""Sync orchestrator: one tick of the glucose sync pipeline.

Each tick, for every active (user, source) independently:
1. Acquire a valid bearer session (cached across ticks, refreshed near expiry)
2. Work out the fetch lower bound: max(high-water mark, now − lookback cap)
3. Fetch readings, re-filter them client-side, normalize trends
4. Upsert each candidate in ascending recorded_at order
5. Advance the high-water mark to the newest reading that actually landed
6. Record the per-user outcome; one user's failure never touches another's

Ticks are triggered from outside (nominally every 5 minutes) and must stay
correct when skipped, duplicated, or run concurrently.  Per-user locks keep
two ticks from syncing the same user at once; within a tick a user's sources
run one after another under that user's lock.  A hard deadline below the
nominal interval bounds each tick.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable
from uuid import UUID

from glucosync.cgm.base import (
    AuthSession,
    GlucoseReading,
    RawReading,
    SourceAdapter,
    SyncConnection,
    UpsertOutcome,
    utc_now,
)
from glucosync.cgm.config_loader import SyncConfig
from glucosync.cgm.errors import (
    AuthError,
    CredentialsNotFound,
    FetchError,
    NetworkTimeout,
    PersistenceError,
    RateLimited,
    TokenExpired,
    Unauthorized,
)
from glucosync.cgm.sync.retry import call_with_retry
from glucosync.cgm.sync.session import AuthSessionManager
from glucosync.cgm.sync.store import ConnectionDirectory, ProgressStore, ReadingGateway
from glucosync.cgm.trend import TrendNormalizer

logger = logging.getLogger("glucosync.cgm.sync.scheduler")

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_ERROR = "error"
STATUS_SKIPPED = "skipped"
STATUS_ABANDONED = "abandoned"


@dataclass
class UserSyncResult:
    """Outcome of one user's pipeline within a tick.

    Attributes:
        user_id:                Internal user UUID.
        source:                 Adapter slug.
        status:                 'success', 'partial', 'error', 'skipped' or 'abandoned'.
        fetched:                Readings returned by the adapter after filtering.
        inserted:               New rows written.
        duplicates:             Rows that already existed.
        malformed:              Candidates dropped because they failed validation.
        high_water_mark_before: Mark at the start of the pipeline.
        high_water_mark_after:  Mark after the pipeline (unchanged on failure).
        error:                  Error message when status is 'error' or 'partial'.
        error_type:             Exception class name behind ``error``.
        synced_at:              UTC completion time.
    """

    user_id: UUID
    source: str
    status: str = STATUS_SUCCESS
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    malformed: int = 0
    high_water_mark_before: datetime | None = None
    high_water_mark_after: datetime | None = None
    error: str | None = None
    error_type: str | None = None
    synced_at: datetime = field(default_factory=utc_now)

    def fail(self, exc: BaseException) -> "UserSyncResult":
        self.status = STATUS_ERROR
        self.error = str(exc) or type(exc).__name__
        self.error_type = type(exc).__name__
        return self


@dataclass
class TickReport:
    """Aggregate of one tick."""

    started_at: datetime
    finished_at: datetime | None = None
    results: list[UserSyncResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def inserted(self) -> int:
        return sum(r.inserted for r in self.results)


class SyncOrchestrator:
    """Drive one tick across all active users.

    Usage::

        orchestrator = SyncOrchestrator(
            adapters=build_adapters(settings),
            sessions=AuthSessionManager(VaultCredentialProvider(), cfg.auth, cfg.retry),
            gateway=PostgresReadingGateway(cfg.persistence.connection_retries),
            progress=PostgresProgressStore(),
            directory=PostgresConnectionDirectory(),
            normalizer=TrendNormalizer.from_config(cfg),
            config=cfg,
        )
        report = await orchestrator.run_tick()

    The instance is meant to live for the whole process so that sessions and
    per-user locks carry over between ticks.
    """

    def __init__(
        self,
        adapters: dict[str, SourceAdapter],
        sessions: AuthSessionManager,
        gateway: ReadingGateway,
        progress: ProgressStore,
        directory: ConnectionDirectory,
        normalizer: TrendNormalizer,
        config: SyncConfig,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._adapters = adapters
        self._sessions = sessions
        self._gateway = gateway
        self._progress = progress
        self._directory = directory
        self._normalizer = normalizer
        self._config = config
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep
        self._user_locks: dict[UUID, asyncio.Lock] = {}

    def _lock_for(self, user_id: UUID) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def run_tick(self) -> TickReport:
        """Run every active user's pipeline once, within the tick deadline."""
        tick = self._config.tick
        report = TickReport(started_at=self._clock())
        deadline = self._monotonic() + tick.deadline_seconds

        connections = await self._directory.list_active()
        by_user: dict[UUID, list[SyncConnection]] = {}
        for conn in connections:
            by_user.setdefault(conn.user_id, []).append(conn)
        self._prune(by_user, connections)

        if not connections:
            logger.debug("Tick: no active connections")
            report.finished_at = self._clock()
            return report

        logger.info(
            "Tick: syncing %d connections for %d users (workers=%d)",
            len(connections), len(by_user), tick.max_workers,
        )
        semaphore = asyncio.Semaphore(tick.max_workers)
        finished: dict[SyncConnection, UserSyncResult] = {}
        tasks = [
            asyncio.create_task(self._run_guarded(user_conns, semaphore, deadline, finished))
            for user_conns in by_user.values()
        ]

        timeout = max(0.0, deadline - self._monotonic()) + tick.abandon_grace_seconds
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Tick deadline reached: abandoning %d user pipelines", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

        for conn in connections:
            result = finished.get(conn)
            if result is None:
                result = UserSyncResult(user_id=conn.user_id, source=conn.source, status=STATUS_ABANDONED)
                result.error = "Tick deadline exceeded"
            report.results.append(result)

        for result in report.results:
            if result.status == STATUS_SKIPPED:
                continue
            try:
                await self._directory.record_result(
                    result.user_id, result.source, result.status, result.error, result.synced_at
                )
            except Exception as exc:
                logger.warning(
                    "Could not record sync status for %s/%s: %s",
                    result.user_id, result.source, exc,
                )

        report.finished_at = self._clock()
        logger.info(
            "Tick complete: %d success, %d partial, %d error, %d skipped, %d abandoned; %d readings inserted",
            report.count(STATUS_SUCCESS),
            report.count(STATUS_PARTIAL),
            report.count(STATUS_ERROR),
            report.count(STATUS_SKIPPED),
            report.count(STATUS_ABANDONED),
            report.inserted,
        )
        return report

    async def _run_guarded(
        self,
        conns: list[SyncConnection],
        semaphore: asyncio.Semaphore,
        deadline: float,
        finished: dict[SyncConnection, UserSyncResult],
    ) -> None:
        """Single-flight one user's sources and contain any failure in them.

        Results land in ``finished`` as each source completes, so a
        cancellation keeps whatever was already done.
        """
        user_id = conns[0].user_id
        lock = self._lock_for(user_id)
        if lock.locked():
            logger.info("Sync already running for %s, skipping", user_id)
            for conn in conns:
                finished[conn] = UserSyncResult(user_id=user_id, source=conn.source, status=STATUS_SKIPPED)
            return

        async with lock:
            async with semaphore:
                for conn in conns:
                    if self._monotonic() >= deadline:
                        result = UserSyncResult(user_id=user_id, source=conn.source, status=STATUS_ABANDONED)
                        result.error = "Tick deadline exceeded before start"
                    else:
                        try:
                            result = await self.sync_user(conn, deadline)
                        except Exception as exc:
                            logger.exception("Unexpected sync failure for %s/%s", user_id, conn.source)
                            result = UserSyncResult(user_id=user_id, source=conn.source).fail(exc)
                    finished[conn] = result

    def _prune(self, by_user: dict[UUID, list[SyncConnection]], connections: list[SyncConnection]) -> None:
        """Drop locks and sessions of users or sources that are no longer active."""
        for user_id in list(self._user_locks):
            if user_id not in by_user and not self._user_locks[user_id].locked():
                del self._user_locks[user_id]
        self._sessions.prune({(c.user_id, c.source) for c in connections})

    # ------------------------------------------------------------------
    # Per-user pipeline
    # ------------------------------------------------------------------

    async def sync_user(self, conn: SyncConnection, deadline: float | None = None) -> UserSyncResult:
        """Run the pipeline for one (user, source).

        Callers outside ``run_tick`` must not run this concurrently for the
        same user.
        """
        result = UserSyncResult(user_id=conn.user_id, source=conn.source)
        adapter = self._adapters.get(conn.source)
        if adapter is None:
            result.status = STATUS_ERROR
            result.error = f"No adapter registered for source '{conn.source}'"
            result.error_type = "KeyError"
            return result

        try:
            before = await self._progress.get(conn.user_id, conn.source)
            result.high_water_mark_before = before
            result.high_water_mark_after = before

            floor = self._clock() - self._config.tick.lookback_cap
            lower_bound = max(before, floor) if before is not None else floor

            raw_readings = await self._fetch(conn, adapter, lower_bound, deadline)
        except (AuthError, FetchError, CredentialsNotFound, PersistenceError) as exc:
            logger.warning(
                "Sync failed for %s/%s: %s: %s",
                conn.user_id, conn.source, type(exc).__name__, exc,
            )
            result.synced_at = self._clock()
            return result.fail(exc)

        # The vendor may ignore the lower bound; never trust it.
        fresh = sorted(
            (r for r in raw_readings if r.recorded_at > lower_bound),
            key=lambda r: r.recorded_at,
        )
        result.fetched = len(fresh)
        candidates = self._build_candidates(conn, fresh, result)

        await self._persist(conn, candidates, result, deadline)
        result.synced_at = self._clock()
        logger.info(
            "Sync %s/%s → %s: %d fetched, %d inserted, %d duplicate, mark %s",
            conn.user_id, conn.source, result.status, result.fetched,
            result.inserted, result.duplicates,
            result.high_water_mark_after.isoformat() if result.high_water_mark_after else None,
        )
        return result

    async def _fetch(
        self,
        conn: SyncConnection,
        adapter: SourceAdapter,
        since: datetime,
        deadline: float | None,
    ) -> list[RawReading]:
        """Fetch with backoff, re-authenticating once if the token is rejected."""
        session = await self._sessions.acquire(conn.user_id, adapter, deadline)
        try:
            return await self._fetch_with_backoff(adapter, session, since, deadline)
        except (Unauthorized, TokenExpired):
            logger.info("Token rejected for %s/%s, re-authenticating once", conn.user_id, conn.source)
            self._sessions.invalidate(conn.user_id, conn.source)

        session = await self._sessions.acquire(conn.user_id, adapter, deadline)
        return await self._fetch_with_backoff(adapter, session, since, deadline)

    async def _fetch_with_backoff(
        self,
        adapter: SourceAdapter,
        session: AuthSession,
        since: datetime,
        deadline: float | None,
    ) -> list[RawReading]:
        return await call_with_retry(
            lambda: adapter.fetch_readings(session, since=since),
            self._config.retry,
            retry_on=(NetworkTimeout, RateLimited),
            deadline=deadline,
            clock=self._monotonic,
            sleep=self._sleep,
        )

    def _build_candidates(
        self, conn: SyncConnection, raw_readings: list[RawReading], result: UserSyncResult
    ) -> list[GlucoseReading]:
        candidates: list[GlucoseReading] = []
        for raw in raw_readings:
            try:
                candidates.append(
                    GlucoseReading(
                        user_id=conn.user_id,
                        recorded_at=raw.recorded_at,
                        value_mgdl=raw.value_in_mgdl(),
                        trend=self._normalizer.normalize(conn.source, raw.trend_code),
                        source=conn.source,
                        raw=raw.raw,
                    )
                )
            except ValueError as exc:
                result.malformed += 1
                logger.warning(
                    "Dropping invalid reading for %s/%s at %s: %s",
                    conn.user_id, conn.source, raw.recorded_at, exc,
                )
        return candidates

    async def _persist(
        self,
        conn: SyncConnection,
        candidates: list[GlucoseReading],
        result: UserSyncResult,
        deadline: float | None,
    ) -> None:
        """Upsert in ascending order; advance the mark only past what landed."""
        committed: datetime | None = None
        try:
            for reading in candidates:
                if deadline is not None and self._monotonic() >= deadline:
                    result.status = STATUS_ABANDONED
                    result.error = "Tick deadline exceeded during persistence"
                    break
                try:
                    outcome = await self._gateway.upsert(reading)
                except PersistenceError as exc:
                    logger.warning(
                        "Persistence failed for %s/%s at %s: %s",
                        conn.user_id, conn.source, reading.recorded_at, exc,
                    )
                    result.fail(exc)
                    if committed is not None:
                        result.status = STATUS_PARTIAL
                    break
                if outcome is UpsertOutcome.INSERTED:
                    result.inserted += 1
                else:
                    result.duplicates += 1
                committed = reading.recorded_at
        finally:
            if committed is not None:
                await self._advance(conn, committed, result)

    async def _advance(self, conn: SyncConnection, mark: datetime, result: UserSyncResult) -> None:
        before = result.high_water_mark_before
        if before is not None and mark <= before:
            return
        try:
            await self._progress.advance(conn.user_id, conn.source, mark)
        except PersistenceError as exc:
            logger.warning("Could not advance mark for %s/%s: %s", conn.user_id, conn.source, exc)
            result.status = STATUS_PARTIAL
            result.error = str(exc)
            result.error_type = type(exc).__name__
            return
        result.high_water_mark_after = mark
