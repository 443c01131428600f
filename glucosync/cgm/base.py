"""Base classes and canonical data models for the glucose sync pipeline.

Every CGM source adapter must subclass SourceAdapter and hand back RawReading
objects.  The orchestrator turns those into GlucoseReading records, which are
the single source of truth consumed by the persistence gateway and, through
the database, by every downstream reader.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from uuid import UUID

logger = logging.getLogger("glucosync.cgm")

MGDL = "mg/dL"
MMOLL = "mmol/L"
_MMOL_TO_MGDL = Decimal("18.0182")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TrendArrow(str, Enum):
    """Canonical glucose rate-of-change direction."""

    RISING_RAPIDLY = "rising_rapidly"
    RISING = "rising"
    STABLE = "stable"
    FALLING = "falling"
    FALLING_RAPIDLY = "falling_rapidly"
    UNKNOWN = "unknown"


class UpsertOutcome(str, Enum):
    """Result of writing one reading to the persistence gateway."""

    INSERTED = "inserted"
    DUPLICATE = "duplicate"


# ---------------------------------------------------------------------------
# Credentials / sessions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credentials:
    """Source login credentials as returned by the secret store.

    Attributes:
        username:   Account e-mail / username at the vendor.
        password:   Account password.
        region:     Optional vendor region hint (e.g. 'eu', 'us').
        patient_id: Optional explicit patient/connection id to follow.
    """

    username: str
    password: str = field(repr=False)
    region: str | None = None
    patient_id: str | None = None


@dataclass(frozen=True)
class AuthSession:
    """In-memory bearer session for one (user, source).

    Never persisted.  Adapter-specific state that later fetch calls need
    (regional base URL, account id header, ...) rides along in ``extra``.

    Attributes:
        user_id:      Internal user UUID.
        source:       Adapter slug.
        bearer_token: Opaque token from the login endpoint.
        expires_at:   UTC expiry, conservatively estimated if not reported.
        extra:        Adapter-private values.
    """

    user_id: UUID
    source: str
    bearer_token: str = field(repr=False)
    expires_at: datetime
    extra: dict = field(default_factory=dict)

    def is_valid(self, now: datetime, margin: timedelta) -> bool:
        """Return True if the token can still be used at ``now``.

        A token inside ``margin`` of its expiry counts as expired so that
        it is refreshed before a fetch rather than failing mid-call.
        """
        return now < self.expires_at - margin


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawReading:
    """One entry parsed out of a vendor fetch response.

    Attributes:
        recorded_at: UTC timestamp on the source clock.
        value:       Numeric value in ``unit``.
        unit:        Unit tag ('mg/dL' or 'mmol/L').
        trend_code:  Vendor trend code, None when the vendor gave none.
        raw:         The vendor entry exactly as received.
    """

    recorded_at: datetime
    value: Decimal
    unit: str = MGDL
    trend_code: str | int | None = None
    raw: dict = field(default_factory=dict, compare=False)

    def value_in_mgdl(self) -> Decimal:
        """Return the value in the canonical unit."""
        if self.unit == MMOLL:
            return (self.value * _MMOL_TO_MGDL).quantize(Decimal("1"))
        return self.value


@dataclass(frozen=True)
class GlucoseReading:
    """Canonical, immutable glucose reading.

    Uniqueness on ``idempotency_key`` makes replays of the same reading a
    no-op at the store.

    Attributes:
        user_id:     Internal user UUID.
        recorded_at: UTC timestamp on the source clock.
        value_mgdl:  Positive value in mg/dL.
        trend:       Canonical trend (``TrendArrow.UNKNOWN`` allowed).
        source:      Slug of the originating adapter.
        raw:         Original vendor payload, stored verbatim for audit.
    """

    user_id: UUID
    recorded_at: datetime
    value_mgdl: Decimal
    trend: TrendArrow
    source: str
    raw: dict = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if self.value_mgdl <= 0:
            raise ValueError(f"value_mgdl must be positive, got {self.value_mgdl}")
        if self.recorded_at.tzinfo is None:
            raise ValueError("recorded_at must be timezone-aware")

    @property
    def idempotency_key(self) -> tuple[UUID, datetime, str]:
        return (self.user_id, self.recorded_at, self.source)


@dataclass(frozen=True)
class SyncConnection:
    """An active (user, source) pair the orchestrator should sync."""

    user_id: UUID
    source: str


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class SourceAdapter(ABC):
    """Abstract base class for all CGM source adapters.

    Vendor quirks (missing expiry hints, undocumented trend codes, odd
    timestamp formats) stay inside the adapter so the orchestrator and the
    persistence gateway remain vendor-agnostic.  Adding a source means
    adding a subclass plus one registry line.

    Subclasses must implement:
        - authenticate()
        - fetch_readings()
    """

    #: Unique slug stored in glucose_readings.source (e.g. 'libre2').
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Unknown CGM"

    @abstractmethod
    async def authenticate(self, user_id: UUID, credentials: Credentials) -> AuthSession:
        """Log in and return a bearer session.

        Raises:
            InvalidCredentials:  Provider rejected the credentials.
            ProviderUnavailable: Login endpoint is down or unreachable.
        """

    @abstractmethod
    async def fetch_readings(
        self, session: AuthSession, since: datetime | None = None
    ) -> list[RawReading]:
        """Fetch readings in ascending ``recorded_at`` order.

        With ``since``, only readings strictly after it are returned.
        Without it, the vendor's full default window is returned.

        Raises:
            Unauthorized:      Token rejected.
            NetworkTimeout:    Transport failure or transient server error.
            RateLimited:       HTTP 429.
            MalformedResponse: Response body is not usable at all.
        """

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_decimal(value: object) -> Decimal | None:
        """Coerce a value to Decimal, returning None on failure."""
        if value is None or isinstance(value, bool):
            return None
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None
        if not result.is_finite():
            return None
        return result

    @staticmethod
    def _filter_since(readings: list[RawReading], since: datetime | None) -> list[RawReading]:
        """Drop readings at or before ``since`` and sort ascending."""
        kept = [r for r in readings if since is None or r.recorded_at > since]
        kept.sort(key=lambda r: r.recorded_at)
        return kept
