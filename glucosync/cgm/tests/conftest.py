"""Shared fixtures, fakes and canned API responses for glucose sync tests."""

from __future__ import annotations

import asyncio
import dataclasses
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from uuid import UUID

import pytest

from glucosync.cgm.base import (
    AuthSession,
    Credentials,
    RawReading,
    SourceAdapter,
    SyncConnection,
)
from glucosync.cgm.config_loader import SyncConfig, load_sync_config
from glucosync.cgm.errors import CredentialsNotFound
from glucosync.cgm.sync.scheduler import SyncOrchestrator
from glucosync.cgm.sync.session import AuthSessionManager
from glucosync.cgm.sync.store import (
    InMemoryConnectionDirectory,
    InMemoryProgressStore,
    InMemoryReadingGateway,
)
from glucosync.cgm.trend import TrendNormalizer
from glucosync.services.secrets import CredentialProvider

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Canonical test users
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
OTHER_USER_ID = UUID("87654321-4321-8765-4321-876543218765")
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

FAKE_SOURCE = "fake"


# ---------------------------------------------------------------------------
# Clock / fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic wall + monotonic clock whose sleep() advances time."""

    def __init__(self, now: datetime) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return (self.now - T0).total_seconds()

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


class StaticCredentialProvider(CredentialProvider):
    def __init__(self, users: dict[UUID, Credentials] | None = None) -> None:
        self.users = dict(users or {})
        self.calls = 0

    async def get_credentials(self, user_id: UUID, source: str) -> Credentials:
        self.calls += 1
        if user_id not in self.users:
            raise CredentialsNotFound(f"No credentials for {source}/{user_id}")
        return self.users[user_id]


class FakeAdapter(SourceAdapter):
    """Scripted adapter.

    Returns every scripted reading regardless of ``since``, like a vendor
    that ignores server-side filtering.  Queued errors are raised in order
    before any successful call.
    """

    SOURCE_ID = FAKE_SOURCE
    DISPLAY_NAME = "Fake CGM"

    def __init__(self, clock: FakeClock, ttl: timedelta = timedelta(hours=1)) -> None:
        self._clock = clock
        self._ttl = ttl
        self.readings: dict[UUID, list[RawReading]] = {}
        self.auth_errors: dict[UUID, list[Exception]] = {}
        self.fetch_errors: dict[UUID, list[Exception]] = {}
        self.auth_calls: list[UUID] = []
        self.fetch_calls: list[tuple[UUID, str, datetime | None]] = []
        self.fetch_delay: float = 0.0

    async def authenticate(self, user_id: UUID, credentials: Credentials) -> AuthSession:
        self.auth_calls.append(user_id)
        queued = self.auth_errors.get(user_id)
        if queued:
            raise queued.pop(0)
        return AuthSession(
            user_id=user_id,
            source=self.SOURCE_ID,
            bearer_token=f"token-{len(self.auth_calls)}",
            expires_at=self._clock() + self._ttl,
        )

    async def fetch_readings(
        self, session: AuthSession, since: datetime | None = None
    ) -> list[RawReading]:
        self.fetch_calls.append((session.user_id, session.bearer_token, since))
        if self.fetch_delay:
            await self._clock.sleep(self.fetch_delay)
        queued = self.fetch_errors.get(session.user_id)
        if queued:
            raise queued.pop(0)
        return list(self.readings.get(session.user_id, []))


def raw_reading(at: datetime, value: int | str = 100, trend_code: object = 3) -> RawReading:
    return RawReading(
        recorded_at=at,
        value=Decimal(str(value)),
        trend_code=trend_code,
        raw={"t": at.isoformat(), "v": value, "trend": trend_code},
    )


def readings_every(start: datetime, end: datetime, minutes: int = 5) -> list[RawReading]:
    """Readings at a fixed cadence from start (inclusive) to end (inclusive)."""
    out = []
    at = start
    while at <= end:
        out.append(raw_reading(at, 100 + len(out) % 50))
        at += timedelta(minutes=minutes)
    return out


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """The bundled config plus a trend table for the fake source."""
    cfg = load_sync_config()
    trend_codes = dict(cfg.trend_codes)
    trend_codes[FAKE_SOURCE] = {"1": "stable", "3": "rising"}
    return dataclasses.replace(cfg, trend_codes=trend_codes)


# ---------------------------------------------------------------------------
# Pipeline fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0 + timedelta(days=10))


@pytest.fixture
def credentials() -> StaticCredentialProvider:
    return StaticCredentialProvider({
        TEST_USER_ID: Credentials(username="a@example.com", password="pw-a"),
        OTHER_USER_ID: Credentials(username="b@example.com", password="pw-b"),
    })


@pytest.fixture
def fake_adapter(clock: FakeClock) -> FakeAdapter:
    return FakeAdapter(clock)


@pytest.fixture
def gateway() -> InMemoryReadingGateway:
    return InMemoryReadingGateway()


@pytest.fixture
def progress() -> InMemoryProgressStore:
    return InMemoryProgressStore()


@pytest.fixture
def directory() -> InMemoryConnectionDirectory:
    return InMemoryConnectionDirectory([
        SyncConnection(user_id=TEST_USER_ID, source=FAKE_SOURCE),
        SyncConnection(user_id=OTHER_USER_ID, source=FAKE_SOURCE),
    ])


@pytest.fixture
def sessions(
    credentials: StaticCredentialProvider, sync_config: SyncConfig, clock: FakeClock
) -> AuthSessionManager:
    return AuthSessionManager(
        credentials,
        sync_config.auth,
        sync_config.retry,
        clock=clock,
        monotonic=clock.monotonic,
        sleep=clock.sleep,
    )


@pytest.fixture
def orchestrator(
    fake_adapter: FakeAdapter,
    sessions: AuthSessionManager,
    gateway: InMemoryReadingGateway,
    progress: InMemoryProgressStore,
    directory: InMemoryConnectionDirectory,
    sync_config: SyncConfig,
    clock: FakeClock,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        adapters={FAKE_SOURCE: fake_adapter},
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


# ---------------------------------------------------------------------------
# JSON fixture loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def libre2_login_raw() -> dict:
    return json.loads((FIXTURES_DIR / "libre2_login.json").read_text())


@pytest.fixture
def libre2_connections_raw() -> dict:
    return json.loads((FIXTURES_DIR / "libre2_connections.json").read_text())


@pytest.fixture
def libre2_graph_raw() -> dict:
    return json.loads((FIXTURES_DIR / "libre2_graph.json").read_text())
