"""Per-user bearer session lifecycle.

State machine per (user, source)::

    unauthenticated ──acquire──▶ authenticating ──ok──▶ authenticated(expires_at)
          ▲                            │                       │
          │                          error          now ≥ expires_at − margin
          └──────── invalidate ◀───────┴───────────────────────┘

Sessions live in memory only and survive across ticks, so a token inside its
validity window is reused without touching the login endpoint.  One lock per
key single-flights concurrent logins for the same user.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import UUID

from glucosync.cgm.base import AuthSession, SourceAdapter, utc_now
from glucosync.cgm.config_loader import AuthConfig, RetryConfig
from glucosync.cgm.errors import ProviderUnavailable
from glucosync.cgm.sync.retry import call_with_retry
from glucosync.services.secrets import CredentialProvider

logger = logging.getLogger("glucosync.cgm.sync.session")

SessionKey = tuple[UUID, str]


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"


class AuthSessionManager:
    """Owns the in-memory AuthSession cache.

    Usage::

        manager = AuthSessionManager(credentials, auth_config, retry_config)
        session = await manager.acquire(user_id, adapter)
        ...
        manager.invalidate(user_id, adapter.SOURCE_ID)   # after a 401
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        auth_config: AuthConfig,
        retry_config: RetryConfig,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._credentials = credentials
        self._auth = auth_config
        self._retry = retry_config
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep
        self._sessions: dict[SessionKey, AuthSession] = {}
        self._locks: dict[SessionKey, asyncio.Lock] = {}
        self._authenticating: set[SessionKey] = set()
        self.login_count = 0

    def _lock_for(self, key: SessionKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def state(self, user_id: UUID, source: str) -> SessionState:
        """Return the current state of a (user, source) session."""
        key = (user_id, source)
        if key in self._authenticating:
            return SessionState.AUTHENTICATING
        session = self._sessions.get(key)
        if session is None or not session.is_valid(self._clock(), self._auth.refresh_margin):
            return SessionState.UNAUTHENTICATED
        return SessionState.AUTHENTICATED

    def peek(self, user_id: UUID, source: str) -> AuthSession | None:
        return self._sessions.get((user_id, source))

    async def acquire(
        self,
        user_id: UUID,
        adapter: SourceAdapter,
        deadline: float | None = None,
    ) -> AuthSession:
        """Return a session valid beyond the refresh margin, logging in if needed.

        Args:
            user_id:  Internal user UUID.
            adapter:  Source adapter to authenticate through.
            deadline: Monotonic time bounding login retries.

        Raises:
            CredentialsNotFound: Secret store has no credentials.
            InvalidCredentials:  Provider rejected them (not retried).
            ProviderUnavailable: Login endpoint still failing after retries.
        """
        key = (user_id, adapter.SOURCE_ID)
        async with self._lock_for(key):
            session = self._sessions.get(key)
            if session is not None and session.is_valid(self._clock(), self._auth.refresh_margin):
                return session

            if session is not None:
                logger.info(
                    "Session for %s/%s expires at %s, refreshing",
                    user_id, adapter.SOURCE_ID, session.expires_at.isoformat(),
                )
                del self._sessions[key]

            self._authenticating.add(key)
            try:
                session = await self._login(user_id, adapter, deadline)
            finally:
                self._authenticating.discard(key)

            self._sessions[key] = session
            return session

    def invalidate(self, user_id: UUID, source: str) -> None:
        """Drop a session after the provider rejected its token."""
        if self._sessions.pop((user_id, source), None) is not None:
            logger.info("Invalidated session for %s/%s", user_id, source)

    async def _login(
        self, user_id: UUID, adapter: SourceAdapter, deadline: float | None
    ) -> AuthSession:
        credentials = await self._credentials.get_credentials(user_id, adapter.SOURCE_ID)

        async def _attempt() -> AuthSession:
            self.login_count += 1
            return await adapter.authenticate(user_id, credentials)

        session = await call_with_retry(
            _attempt,
            self._retry,
            retry_on=(ProviderUnavailable,),
            deadline=deadline,
            clock=self._monotonic,
            sleep=self._sleep,
        )
        logger.info(
            "Authenticated %s/%s (expires %s)",
            user_id, adapter.SOURCE_ID, session.expires_at.isoformat(),
        )
        return session

    def prune(self, active: set[SessionKey]) -> None:
        """Forget sessions and locks for keys no longer in ``active``.

        Locks currently held are kept so an in-flight login is not orphaned.
        """
        for key in list(self._locks):
            if key not in active and not self._locks[key].locked():
                del self._locks[key]
        for key in list(self._sessions):
            if key not in active:
                del self._sessions[key]

    def __len__(self) -> int:
        return len(self._sessions)
