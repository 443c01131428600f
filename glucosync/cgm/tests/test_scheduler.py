"""Tests for the sync orchestrator — one tick across many users."""

from __future__ import annotations

import asyncio
import dataclasses
from datetime import timedelta
from decimal import Decimal
from uuid import UUID

import pytest

from glucosync.cgm.base import MMOLL, GlucoseReading, RawReading, SyncConnection, TrendArrow, UpsertOutcome
from glucosync.cgm.config_loader import SyncConfig
from glucosync.cgm.errors import (
    InvalidCredentials,
    MalformedResponse,
    NetworkTimeout,
    PersistenceError,
    Unauthorized,
)
from glucosync.cgm.sync.scheduler import (
    STATUS_ABANDONED,
    STATUS_ERROR,
    STATUS_PARTIAL,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    SyncOrchestrator,
)
from glucosync.cgm.sync.session import AuthSessionManager
from glucosync.cgm.sync.store import (
    InMemoryConnectionDirectory,
    InMemoryProgressStore,
    InMemoryReadingGateway,
)
from glucosync.cgm.tests.conftest import (
    FAKE_SOURCE,
    OTHER_USER_ID,
    TEST_USER_ID,
    FakeAdapter,
    FakeClock,
    raw_reading,
    readings_every,
)
from glucosync.cgm.trend import TrendNormalizer

CONN = SyncConnection(user_id=TEST_USER_ID, source=FAKE_SOURCE)


class FailingGateway(InMemoryReadingGateway):
    """Accepts ``fail_after`` upserts, then reports the store as unreachable."""

    def __init__(self, fail_after: int) -> None:
        super().__init__()
        self.fail_after = fail_after
        self.calls = 0

    async def upsert(self, reading: GlucoseReading) -> UpsertOutcome:
        self.calls += 1
        if self.calls > self.fail_after:
            raise PersistenceError("connection lost")
        return await super().upsert(reading)


def _orchestrator(
    fake_adapter: FakeAdapter,
    sessions: AuthSessionManager,
    gateway: InMemoryReadingGateway,
    progress: InMemoryProgressStore,
    directory: InMemoryConnectionDirectory,
    config: SyncConfig,
    clock: FakeClock,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        adapters={FAKE_SOURCE: fake_adapter},
        sessions=sessions,
        gateway=gateway,
        progress=progress,
        directory=directory,
        normalizer=TrendNormalizer.from_config(config),
        config=config,
        clock=clock,
        monotonic=clock.monotonic,
        sleep=clock.sleep,
    )


# ---------------------------------------------------------------------------
# Single-user pipeline
# ---------------------------------------------------------------------------


class TestSyncUser:
    @pytest.mark.asyncio
    async def test_reading_inserted_with_canonical_trend(
        self,
        orchestrator: SyncOrchestrator,
        fake_adapter: FakeAdapter,
        gateway: InMemoryReadingGateway,
        clock: FakeClock,
    ) -> None:
        at = clock() - timedelta(minutes=5)
        fake_adapter.readings[TEST_USER_ID] = [raw_reading(at, 95, trend_code=1)]

        result = await orchestrator.sync_user(CONN)

        assert result.status == STATUS_SUCCESS
        assert result.inserted == 1
        stored = gateway.readings_for(TEST_USER_ID)
        assert len(stored) == 1
        assert stored[0].value_mgdl == Decimal("95")
        assert stored[0].trend is TrendArrow.STABLE
        assert stored[0].recorded_at == at
        assert stored[0].raw["v"] == 95

    @pytest.mark.asyncio
    async def test_replayed_reading_is_duplicate(
        self,
        orchestrator: SyncOrchestrator,
        fake_adapter: FakeAdapter,
        gateway: InMemoryReadingGateway,
        progress: InMemoryProgressStore,
        clock: FakeClock,
    ) -> None:
        fake_adapter.readings[TEST_USER_ID] = [raw_reading(clock() - timedelta(minutes=5), 95, 1)]
        await orchestrator.sync_user(CONN)

        # Lose the progress mark so the same window is fetched again.
        progress.marks.clear()
        result = await orchestrator.sync_user(CONN)

        assert result.status == STATUS_SUCCESS
        assert result.inserted == 0
        assert result.duplicates == 1
        assert len(gateway) == 1

    @pytest.mark.asyncio
    async def test_vendor_ignoring_since_is_refiltered(
        self,
        orchestrator: SyncOrchestrator,
        fake_adapter: FakeAdapter,
        gateway: InMemoryReadingGateway,
        clock: FakeClock,
    ) -> None:
        start = clock() - timedelta(minutes=30)
        fake_adapter.readings[TEST_USER_ID] = readings_every(start, start + timedelta(minutes=15))
        first = await orchestrator.sync_user(CONN)
        assert first.inserted == 4

        fake_adapter.readings[TEST_USER_ID] = readings_every(start, start + timedelta(minutes=25))
        second = await orchestrator.sync_user(CONN)
        assert second.fetched == 2
        assert second.inserted == 2
        assert second.duplicates == 0
        assert len(gateway) == 6

        since = fake_adapter.fetch_calls[-1][2]
        assert since == start + timedelta(minutes=15)

    @pytest.mark.asyncio
    async def test_backlog_bounded_by_lookback_cap(
        self,
        orchestrator: SyncOrchestrator,
        fake_adapter: FakeAdapter,
        gateway: InMemoryReadingGateway,
        progress: InMemoryProgressStore,
        clock: FakeClock,
    ) -> None:
        """Ten days of history for a new user: only the last 24 hours land."""
        now = clock()
        fake_adapter.readings[TEST_USER_ID] = readings_every(now - timedelta(days=10), now)

        result = await orchestrator.sync_user(CONN)

        assert result.inserted == 24 * 12
        oldest = min(r.recorded_at for r in gateway.readings_for(TEST_USER_ID))
        assert oldest > now - timedelta(hours=24)
        assert progress.marks[(TEST_USER_ID, FAKE_SOURCE)] == now
        assert fake_adapter.fetch_calls[0][2] == now - timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_mark_beyond_cap_used_as_lower_bound(
        self,
        orchestrator: SyncOrchestrator,
        fake_adapter: FakeAdapter,
        progress: InMemoryProgressStore,
        clock: FakeClock,
    ) -> None:
        mark = clock() - timedelta(hours=2)
        await progress.advance(TEST_USER_ID, FAKE_SOURCE, mark)
        fake_adapter.readings[TEST_USER_ID] = readings_every(clock() - timedelta(hours=3), clock())

        result = await orchestrator.sync_user(CONN)

        assert fake_adapter.fetch_calls[0][2] == mark
        assert result.inserted == 2 * 12
        assert result.high_water_mark_before == mark

    @pytest.mark.asyncio
    async def test_mmol_reading_converted(
        self,
        orchestrator: SyncOrchestrator,
        fake_adapter: FakeAdapter,
        gateway: InMemoryReadingGateway,
        clock: FakeClock,
    ) -> None:
        fake_adapter.readings[TEST_USER_ID] = [
            RawReading(recorded_at=clock() - timedelta(minutes=1), value=Decimal("5.5"), unit=MMOLL)
        ]
        await orchestrator.sync_user(CONN)
        stored = gateway.readings_for(TEST_USER_ID)[0]
        assert stored.value_mgdl == Decimal("99")
        assert stored.trend is TrendArrow.UNKNOWN

    @pytest.mark.asyncio
    async def test_invalid_value_dropped(
        self,
        orchestrator: SyncOrchestrator,
        fake_adapter: FakeAdapter,
        gateway: InMemoryReadingGateway,
        clock: FakeClock,
    ) -> None:
        now = clock()
        fake_adapter.readings[TEST_USER_ID] = [
            raw_reading(now - timedelta(minutes=10), 100),
            raw_reading(now - timedelta(minutes=5), 0),
            raw_reading(now, 110),
        ]
        result = await orchestrator.sync_user(CONN)
        assert result.status == STATUS_SUCCESS
        assert result.malformed == 1
        assert result.inserted == 2
        assert result.high_water_mark_after == now

    @pytest.mark.asyncio
    async def test_unknown_source(self, orchestrator: SyncOrchestrator) -> None:
        result = await orchestrator.sync_user(SyncConnection(user_id=TEST_USER_ID, source="nope"))
        assert result.status == STATUS_ERROR
        assert "nope" in result.error


# ---------------------------------------------------------------------------
# Progress / failure semantics
# ---------------------------------------------------------------------------


class TestProgress:
    @pytest.mark.asyncio
    async def test_mark_unchanged_on_fetch_failure(
        self,
        orchestrator: SyncOrchestrator,
        fake_adapter: FakeAdapter,
        progress: InMemoryProgressStore,
        clock: FakeClock,
    ) -> None:
        mark = clock() - timedelta(hours=1)
        await progress.advance(TEST_USER_ID, FAKE_SOURCE, mark)
        fake_adapter.readings[TEST_USER_ID] = [raw_reading(clock())]
        fake_adapter.fetch_errors[TEST_USER_ID] = [MalformedResponse("garbage body")]

        result = await orchestrator.sync_user(CONN)

        assert result.status == STATUS_ERROR
        assert result.error_type == "MalformedResponse"
        assert result.high_water_mark_after == mark
        assert progress.marks[(TEST_USER_ID, FAKE_SOURCE)] == mark

    @pytest.mark.asyncio
    async def test_mark_never_regresses(
        self,
        orchestrator: SyncOrchestrator,
        fake_adapter: FakeAdapter,
        progress: InMemoryProgressStore,
        clock: FakeClock,
    ) -> None:
        now = clock()
        fake_adapter.readings[TEST_USER_ID] = [raw_reading(now)]
        await orchestrator.sync_user(CONN)

        fake_adapter.readings[TEST_USER_ID] = [raw_reading(now - timedelta(minutes=30))]
        result = await orchestrator.sync_user(CONN)

        assert result.fetched == 0
        assert progress.marks[(TEST_USER_ID, FAKE_SOURCE)] == now

        await progress.advance(TEST_USER_ID, FAKE_SOURCE, now - timedelta(days=1))
        assert progress.marks[(TEST_USER_ID, FAKE_SOURCE)] == now

    @pytest.mark.asyncio
    async def test_partial_persistence_failure(
        self,
        fake_adapter: FakeAdapter,
        sessions: AuthSessionManager,
        progress: InMemoryProgressStore,
        directory: InMemoryConnectionDirectory,
        sync_config: SyncConfig,
        clock: FakeClock,
    ) -> None:
        gateway = FailingGateway(fail_after=2)
        orchestrator = _orchestrator(fake_adapter, sessions, gateway, progress, directory, sync_config, clock)
        now = clock()
        fake_adapter.readings[TEST_USER_ID] = [
            raw_reading(now - timedelta(minutes=10)),
            raw_reading(now - timedelta(minutes=5)),
            raw_reading(now),
        ]

        result = await orchestrator.sync_user(CONN)

        assert result.status == STATUS_PARTIAL
        assert result.inserted == 2
        assert result.error_type == "PersistenceError"
        assert progress.marks[(TEST_USER_ID, FAKE_SOURCE)] == now - timedelta(minutes=5)

        # Next tick picks up exactly where the store left off.
        gateway.fail_after = 100
        retry = await orchestrator.sync_user(CONN)
        assert retry.status == STATUS_SUCCESS
        assert retry.fetched == 1
        assert retry.inserted == 1

    @pytest.mark.asyncio
    async def test_store_down_from_first_reading(
        self,
        fake_adapter: FakeAdapter,
        sessions: AuthSessionManager,
        progress: InMemoryProgressStore,
        directory: InMemoryConnectionDirectory,
        sync_config: SyncConfig,
        clock: FakeClock,
    ) -> None:
        orchestrator = _orchestrator(
            fake_adapter, sessions, FailingGateway(fail_after=0), progress, directory, sync_config, clock
        )
        fake_adapter.readings[TEST_USER_ID] = [raw_reading(clock())]

        result = await orchestrator.sync_user(CONN)

        assert result.status == STATUS_ERROR
        assert result.high_water_mark_after is None
        assert progress.marks == {}


# ---------------------------------------------------------------------------
# Auth / fetch retry behaviour
# ---------------------------------------------------------------------------


class TestFetchRecovery:
    @pytest.mark.asyncio
    async def test_unauthorized_reauths_once(
        self, orchestrator: SyncOrchestrator, fake_adapter: FakeAdapter, clock: FakeClock
    ) -> None:
        fake_adapter.readings[TEST_USER_ID] = [raw_reading(clock())]
        fake_adapter.fetch_errors[TEST_USER_ID] = [Unauthorized("401")]

        result = await orchestrator.sync_user(CONN)

        assert result.status == STATUS_SUCCESS
        assert result.inserted == 1
        assert len(fake_adapter.auth_calls) == 2
        assert [call[1] for call in fake_adapter.fetch_calls] == ["token-1", "token-2"]

    @pytest.mark.asyncio
    async def test_second_unauthorized_fails_user(
        self, orchestrator: SyncOrchestrator, fake_adapter: FakeAdapter
    ) -> None:
        fake_adapter.fetch_errors[TEST_USER_ID] = [Unauthorized("401"), Unauthorized("401")]

        result = await orchestrator.sync_user(CONN)

        assert result.status == STATUS_ERROR
        assert result.error_type == "Unauthorized"
        assert len(fake_adapter.auth_calls) == 2

    @pytest.mark.asyncio
    async def test_network_timeout_retried(
        self, orchestrator: SyncOrchestrator, fake_adapter: FakeAdapter, clock: FakeClock
    ) -> None:
        fake_adapter.readings[TEST_USER_ID] = [raw_reading(clock())]
        fake_adapter.fetch_errors[TEST_USER_ID] = [NetworkTimeout("t1"), NetworkTimeout("t2")]

        result = await orchestrator.sync_user(CONN)

        assert result.status == STATUS_SUCCESS
        assert len(fake_adapter.fetch_calls) == 3
        assert len(clock.sleeps) == 2

    @pytest.mark.asyncio
    async def test_session_reused_across_ticks(
        self, orchestrator: SyncOrchestrator, fake_adapter: FakeAdapter, clock: FakeClock
    ) -> None:
        await orchestrator.run_tick()
        clock.advance(300)
        await orchestrator.run_tick()
        assert len(fake_adapter.auth_calls) == 2  # one per user, not per tick


# ---------------------------------------------------------------------------
# Whole tick
# ---------------------------------------------------------------------------


class TestRunTick:
    @pytest.mark.asyncio
    async def test_users_are_isolated(
        self,
        orchestrator: SyncOrchestrator,
        fake_adapter: FakeAdapter,
        gateway: InMemoryReadingGateway,
        directory: InMemoryConnectionDirectory,
        clock: FakeClock,
    ) -> None:
        fake_adapter.auth_errors[TEST_USER_ID] = [InvalidCredentials("bad password")]
        fake_adapter.readings[OTHER_USER_ID] = [raw_reading(clock())]

        report = await orchestrator.run_tick()

        by_user = {r.user_id: r for r in report.results}
        assert by_user[TEST_USER_ID].status == STATUS_ERROR
        assert by_user[TEST_USER_ID].error_type == "InvalidCredentials"
        assert by_user[OTHER_USER_ID].status == STATUS_SUCCESS
        assert by_user[OTHER_USER_ID].inserted == 1
        assert len(gateway.readings_for(OTHER_USER_ID)) == 1
        assert report.count(STATUS_ERROR) == 1
        assert report.inserted == 1

        status, error, _ = directory.results[(TEST_USER_ID, FAKE_SOURCE)]
        assert status == STATUS_ERROR
        assert "bad password" in error
        assert directory.results[(OTHER_USER_ID, FAKE_SOURCE)][0] == STATUS_SUCCESS

    @pytest.mark.asyncio
    async def test_missing_credentials_is_per_user_error(
        self,
        fake_adapter: FakeAdapter,
        sessions: AuthSessionManager,
        gateway: InMemoryReadingGateway,
        progress: InMemoryProgressStore,
        sync_config: SyncConfig,
        clock: FakeClock,
    ) -> None:
        stranger = UUID("00000000-0000-0000-0000-000000000001")
        directory = InMemoryConnectionDirectory([
            SyncConnection(user_id=stranger, source=FAKE_SOURCE),
            SyncConnection(user_id=TEST_USER_ID, source=FAKE_SOURCE),
        ])
        orchestrator = _orchestrator(fake_adapter, sessions, gateway, progress, directory, sync_config, clock)

        report = await orchestrator.run_tick()

        by_user = {r.user_id: r for r in report.results}
        assert by_user[stranger].error_type == "CredentialsNotFound"
        assert by_user[TEST_USER_ID].status == STATUS_SUCCESS
        assert stranger not in fake_adapter.auth_calls

    @pytest.mark.asyncio
    async def test_empty_directory(
        self,
        fake_adapter: FakeAdapter,
        sessions: AuthSessionManager,
        gateway: InMemoryReadingGateway,
        progress: InMemoryProgressStore,
        sync_config: SyncConfig,
        clock: FakeClock,
    ) -> None:
        orchestrator = _orchestrator(
            fake_adapter, sessions, gateway, progress, InMemoryConnectionDirectory(), sync_config, clock
        )
        report = await orchestrator.run_tick()
        assert report.results == []
        assert report.finished_at is not None

    @pytest.mark.asyncio
    async def test_overlapping_ticks_skip_busy_users(
        self,
        orchestrator: SyncOrchestrator,
        fake_adapter: FakeAdapter,
        gateway: InMemoryReadingGateway,
        directory: InMemoryConnectionDirectory,
        clock: FakeClock,
    ) -> None:
        fake_adapter.readings[TEST_USER_ID] = [raw_reading(clock())]
        fake_adapter.fetch_delay = 1.0

        first, second = await asyncio.gather(orchestrator.run_tick(), orchestrator.run_tick())

        assert first.count(STATUS_SUCCESS) == 2
        assert second.count(STATUS_SKIPPED) == 2
        assert len(gateway) == 1
        assert len(fake_adapter.fetch_calls) == 2
        # Skipped runs do not overwrite the recorded status.
        assert directory.results[(TEST_USER_ID, FAKE_SOURCE)][0] == STATUS_SUCCESS

    @pytest.mark.asyncio
    async def test_deadline_abandons_remaining_users(
        self,
        fake_adapter: FakeAdapter,
        sessions: AuthSessionManager,
        gateway: InMemoryReadingGateway,
        progress: InMemoryProgressStore,
        directory: InMemoryConnectionDirectory,
        sync_config: SyncConfig,
        clock: FakeClock,
    ) -> None:
        config = dataclasses.replace(
            sync_config, tick=dataclasses.replace(sync_config.tick, max_workers=1)
        )
        orchestrator = _orchestrator(fake_adapter, sessions, gateway, progress, directory, config, clock)
        fake_adapter.readings[TEST_USER_ID] = [raw_reading(clock())]
        fake_adapter.readings[OTHER_USER_ID] = [raw_reading(clock())]
        fake_adapter.fetch_delay = config.tick.deadline_seconds + 10

        report = await orchestrator.run_tick()

        assert report.count(STATUS_ABANDONED) == 2
        assert len(fake_adapter.fetch_calls) == 1
        assert len(gateway) == 0
        assert progress.marks == {}
        for result in report.results:
            assert directory.results[(result.user_id, FAKE_SOURCE)][0] == STATUS_ABANDONED

    @pytest.mark.asyncio
    async def test_unauthorized_twice_leaves_mark_and_other_user_commits(
        self,
        orchestrator: SyncOrchestrator,
        fake_adapter: FakeAdapter,
        gateway: InMemoryReadingGateway,
        progress: InMemoryProgressStore,
        clock: FakeClock,
    ) -> None:
        now = clock()
        mark_a = now - timedelta(hours=1)
        await progress.advance(TEST_USER_ID, FAKE_SOURCE, mark_a)
        fake_adapter.readings[TEST_USER_ID] = [raw_reading(now - timedelta(minutes=5))]
        fake_adapter.fetch_errors[TEST_USER_ID] = [Unauthorized("401"), Unauthorized("401")]
        fake_adapter.readings[OTHER_USER_ID] = [raw_reading(now, 95, 1)]

        report = await orchestrator.run_tick()

        by_user = {r.user_id: r for r in report.results}
        assert by_user[TEST_USER_ID].status == STATUS_ERROR
        assert by_user[TEST_USER_ID].error_type == "Unauthorized"
        assert by_user[TEST_USER_ID].high_water_mark_after == mark_a
        assert progress.marks[(TEST_USER_ID, FAKE_SOURCE)] == mark_a
        assert fake_adapter.auth_calls.count(TEST_USER_ID) == 2
        assert gateway.readings_for(TEST_USER_ID) == []

        assert by_user[OTHER_USER_ID].status == STATUS_SUCCESS
        assert progress.marks[(OTHER_USER_ID, FAKE_SOURCE)] == now
        stored = gateway.readings_for(OTHER_USER_ID)
        assert len(stored) == 1
        assert stored[0].trend is TrendArrow.STABLE


class SecondSourceAdapter(FakeAdapter):
    SOURCE_ID = "fake2"
    DISPLAY_NAME = "Second fake CGM"


class TestMultipleSources:
    @pytest.mark.asyncio
    async def test_every_source_of_a_user_is_synced_each_tick(
        self,
        fake_adapter: FakeAdapter,
        sessions: AuthSessionManager,
        gateway: InMemoryReadingGateway,
        progress: InMemoryProgressStore,
        sync_config: SyncConfig,
        clock: FakeClock,
    ) -> None:
        second = SecondSourceAdapter(clock)
        directory = InMemoryConnectionDirectory([
            SyncConnection(user_id=TEST_USER_ID, source=FAKE_SOURCE),
            SyncConnection(user_id=TEST_USER_ID, source="fake2"),
        ])
        orchestrator = SyncOrchestrator(
            adapters={FAKE_SOURCE: fake_adapter, "fake2": second},
            sessions=sessions,
            gateway=gateway,
            progress=progress,
            directory=directory,
            normalizer=TrendNormalizer.from_config(sync_config),
            config=sync_config,
            clock=clock,
            monotonic=clock.monotonic,
            sleep=clock.sleep,
        )
        fake_adapter.fetch_delay = 1.0

        for _ in range(3):
            at = clock()
            fake_adapter.readings[TEST_USER_ID] = [raw_reading(at)]
            second.readings[TEST_USER_ID] = [raw_reading(at, 120)]
            report = await orchestrator.run_tick()

            assert [(r.source, r.status) for r in report.results] == [
                (FAKE_SOURCE, STATUS_SUCCESS),
                ("fake2", STATUS_SUCCESS),
            ]
            assert progress.marks[(TEST_USER_ID, "fake2")] == at
            clock.advance(300)

        assert len(fake_adapter.fetch_calls) == 3
        assert len(second.fetch_calls) == 3
        assert {r.source for r in gateway.readings_for(TEST_USER_ID)} == {FAKE_SOURCE, "fake2"}
        assert directory.results[(TEST_USER_ID, "fake2")][0] == STATUS_SUCCESS

    @pytest.mark.asyncio
    async def test_inactive_connections_are_forgotten(
        self,
        orchestrator: SyncOrchestrator,
        sessions: AuthSessionManager,
        directory: InMemoryConnectionDirectory,
    ) -> None:
        await orchestrator.run_tick()
        assert sessions.peek(OTHER_USER_ID, FAKE_SOURCE) is not None

        directory.connections = [c for c in directory.connections if c.user_id != OTHER_USER_ID]
        await orchestrator.run_tick()

        assert sessions.peek(OTHER_USER_ID, FAKE_SOURCE) is None
        assert sessions.peek(TEST_USER_ID, FAKE_SOURCE) is not None
        assert OTHER_USER_ID not in orchestrator._user_locks
