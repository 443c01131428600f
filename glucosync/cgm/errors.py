"""Exception taxonomy for the glucose sync pipeline.

Adapters raise the vendor-agnostic subclasses below so the orchestrator can
decide retry behaviour without knowing anything about the vendor API:

    AuthError
        InvalidCredentials   -- never retried, surfaced for user action
        ProviderUnavailable  -- retried with backoff
        TokenExpired         -- triggers a refresh, never surfaced
    FetchError
        NetworkTimeout       -- retried with backoff
        RateLimited          -- retried with backoff (honours Retry-After)
        MalformedResponse    -- offending entry skipped; whole-response
                                variant surfaces as a per-user error
        Unauthorized         -- one re-auth-and-retry cycle
    PersistenceError         -- connection-level store failure
    CredentialsNotFound      -- secret store has nothing for the user
"""

from __future__ import annotations


class SyncError(Exception):
    """Root of all sync pipeline errors."""


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthError(SyncError):
    """Base class for login failures."""


class InvalidCredentials(AuthError):
    """The provider rejected the username/password (or needs user action)."""


class ProviderUnavailable(AuthError):
    """Login endpoint unreachable or returning server errors."""


class TokenExpired(AuthError):
    """The cached bearer token is past its validity window."""


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------


class FetchError(SyncError):
    """Base class for reading-fetch failures."""


class NetworkTimeout(FetchError):
    """Transport error, timeout, or transient 5xx from the fetch endpoint."""


class RateLimited(FetchError):
    """The provider answered 429.

    Attributes:
        retry_after: Seconds the provider asked us to wait, if it said.
    """

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class MalformedResponse(FetchError):
    """Response (or a single entry in it) could not be parsed."""


class Unauthorized(FetchError):
    """The provider rejected the bearer token on a fetch call."""


# ---------------------------------------------------------------------------
# Storage / secrets
# ---------------------------------------------------------------------------


class PersistenceError(SyncError):
    """The durable store failed for a reason other than a key collision."""


class CredentialsNotFound(SyncError):
    """No credentials stored for a (user, source) pair."""
