"""FreeStyle Libre 2 adapter via the LibreLinkUp follower API.

The LibreLinkUp API is unofficial and undocumented; everything below was
observed from the mobile app's traffic and may change without notice.

API base: https://api.libreview.io (regional hosts: https://api-{region}.libreview.io)

Endpoints used:
    POST /llu/auth/login                    — e-mail/password login
    GET  /llu/connections                   — patients this account follows
    GET  /llu/connections/{patientId}/graph — ~12h of readings + current value

Quirks handled here (and nowhere else):
    - Login may answer ``{"data": {"redirect": true, "region": "eu"}}``; the
      login is repeated once against the regional host.
    - ``authTicket.expires`` is unix seconds and sometimes absent.
    - Fetch calls need an ``Account-Id`` header: sha256 of the account user id.
    - ``FactoryTimestamp`` is UTC; ``Timestamp`` is phone-local with no offset
      and is ignored.
    - Only the current measurement carries a ``TrendArrow``; history points
      map to an unknown trend.
    - The graph endpoint ignores any lower bound and always returns its fixed
      window, so filtering by ``since`` happens here (and again upstream).
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID

import httpx

from glucosync.cgm.base import (
    MGDL,
    MMOLL,
    AuthSession,
    Credentials,
    RawReading,
    SourceAdapter,
    utc_now,
)
from glucosync.cgm.config_loader import get_sync_config
from glucosync.cgm.errors import (
    InvalidCredentials,
    MalformedResponse,
    NetworkTimeout,
    ProviderUnavailable,
    RateLimited,
    Unauthorized,
)

logger = logging.getLogger("glucosync.cgm.libre2")

_LLU_API_BASE = "https://api.libreview.io"
_LOGIN_PATH = "/llu/auth/login"
_CONNECTIONS_PATH = "/llu/connections"
_GRAPH_PATH = "/llu/connections/{patient_id}/graph"

_LLU_TIMESTAMP_FORMAT = "%m/%d/%Y %I:%M:%S %p"

# Login body "status" values
_STATUS_OK = 0
_STATUS_BAD_CREDENTIALS = 2
_STATUS_TERMS_PENDING = 4

# GlucoseUnits on a measurement
_UNITS_MMOL = 0


def region_base_url(region: str | None) -> str:
    """Map a LibreLinkUp region code to its API host."""
    if not region:
        return _LLU_API_BASE
    return f"https://api-{region.strip().lower()}.libreview.io"


def account_id_for(llu_user_id: str) -> str:
    return hashlib.sha256(llu_user_id.encode("utf-8")).hexdigest()


def parse_llu_timestamp(value: object) -> datetime | None:
    """Parse a FactoryTimestamp ("1/9/2026 10:41:01 AM") as UTC.

    ISO-8601 strings are accepted too.  Returns None if unparseable.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return datetime.strptime(text, _LLU_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Libre2Adapter(SourceAdapter):
    """LibreLinkUp follower-API adapter for FreeStyle Libre 2 sensors.

    Readings arrive every 5 minutes in the graph history (15 minutes for
    older sensors); the current measurement is minute-resolution.
    """

    SOURCE_ID = "libre2"
    DISPLAY_NAME = "FreeStyle Libre 2 (LibreLinkUp)"

    def __init__(
        self,
        api_base: str = _LLU_API_BASE,
        client_version: str = "4.16.0",
        product: str = "llu.ios",
        timeout_seconds: float = 15.0,
        default_token_ttl: timedelta | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the adapter.

        Args:
            api_base:          Global API host; regional redirects override it per session.
            client_version:    App version sent in the ``version`` header.
            product:           Product header the API expects.
            timeout_seconds:   Per-request timeout.
            default_token_ttl: Token lifetime assumed when login gives no expiry.
            http_client:       Optional pre-configured httpx client (for testing).
            clock:             UTC clock (for testing).
        """
        self._api_base = api_base.rstrip("/")
        self._client_version = client_version
        self._product = product
        self._timeout = timeout_seconds
        self._default_ttl = default_token_ttl or get_sync_config().auth.default_token_ttl
        self._http_client = http_client
        self._clock = clock

    # ------------------------------------------------------------------
    # SourceAdapter interface
    # ------------------------------------------------------------------

    async def authenticate(self, user_id: UUID, credentials: Credentials) -> AuthSession:
        """Log in to LibreLinkUp, following at most one regional redirect."""
        base = region_base_url(credentials.region) if credentials.region else self._api_base
        body = {"email": credentials.username, "password": credentials.password}

        for attempt in (1, 2):
            data = await self._login_request(f"{base}{_LOGIN_PATH}", body)
            inner = data.get("data") or {}

            if isinstance(inner, dict) and inner.get("redirect"):
                region = str(inner.get("region") or "").strip()
                new_base = region_base_url(region)
                if attempt == 1 and region and new_base != base:
                    logger.info("Libre2: login redirected to region %s for user %s", region, user_id)
                    base = new_base
                    continue
                raise ProviderUnavailable(f"LibreLinkUp redirect loop (region={region!r})")

            return self._session_from_login(user_id, base, data, credentials)

        raise ProviderUnavailable("LibreLinkUp login failed after regional redirect")

    async def fetch_readings(
        self, session: AuthSession, since: datetime | None = None
    ) -> list[RawReading]:
        """Fetch the graph window and return readings after ``since``."""
        base = session.extra.get("api_base", self._api_base)
        patient_id = session.extra.get("patient_id") or await self._resolve_patient_id(session, base)

        payload = await self._get(
            f"{base}{_GRAPH_PATH.format(patient_id=patient_id)}", session
        )
        data = payload.get("data")
        if not isinstance(data, dict):
            raise MalformedResponse("LibreLinkUp graph response has no data object")

        entries: list[Any] = []
        history = data.get("graphData")
        if isinstance(history, list):
            entries.extend(history)
        elif history is not None:
            logger.warning("Libre2: graphData is %s, expected a list", type(history).__name__)
        current = (data.get("connection") or {}).get("glucoseMeasurement")
        if current:
            entries.append(current)

        by_time: dict[datetime, RawReading] = {}
        skipped = 0
        for entry in entries:
            try:
                reading = self.parse_entry(entry)
            except MalformedResponse as exc:
                skipped += 1
                logger.warning("Libre2: skipping malformed entry for %s: %s", session.user_id, exc)
                continue
            existing = by_time.get(reading.recorded_at)
            if existing is None or (existing.trend_code is None and reading.trend_code is not None):
                by_time[reading.recorded_at] = reading

        readings = self._filter_since(list(by_time.values()), since)
        logger.debug(
            "Libre2: %d entries → %d readings after %s (%d malformed) for %s",
            len(entries), len(readings), since, skipped, session.user_id,
        )
        return readings

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_entry(self, entry: object) -> RawReading:
        """Convert one graph/measurement entry into a RawReading.

        This is a pure function — no I/O.

        Raises:
            MalformedResponse: If the entry lacks a usable timestamp or value.
        """
        if not isinstance(entry, dict):
            raise MalformedResponse(f"entry is {type(entry).__name__}, expected object")

        recorded_at = parse_llu_timestamp(entry.get("FactoryTimestamp"))
        if recorded_at is None:
            raise MalformedResponse(f"bad FactoryTimestamp {entry.get('FactoryTimestamp')!r}")

        value = self._safe_decimal(entry.get("ValueInMgPerDl"))
        unit = MGDL
        if value is None and entry.get("GlucoseUnits") == _UNITS_MMOL:
            value = self._safe_decimal(entry.get("Value"))
            unit = MMOLL
        if value is None or value <= 0:
            raise MalformedResponse(f"bad glucose value {entry.get('ValueInMgPerDl')!r}")

        return RawReading(
            recorded_at=recorded_at,
            value=value,
            unit=unit,
            trend_code=entry.get("TrendArrow"),
            raw=dict(entry),
        )

    def _session_from_login(
        self, user_id: UUID, base: str, data: dict, credentials: Credentials
    ) -> AuthSession:
        status = data.get("status", _STATUS_OK)
        inner = data.get("data") if isinstance(data.get("data"), dict) else {}
        ticket = inner.get("authTicket") or {}
        llu_user = inner.get("user") or {}
        token = ticket.get("token")
        llu_user_id = llu_user.get("id")

        if status == _STATUS_BAD_CREDENTIALS:
            raise InvalidCredentials("LibreLinkUp rejected the e-mail/password")
        if status == _STATUS_TERMS_PENDING:
            raise InvalidCredentials(
                "LibreLinkUp needs the terms of use accepted in the app before syncing"
            )
        if not token or not llu_user_id:
            message = (data.get("error") or {}).get("message") if isinstance(data.get("error"), dict) else None
            raise ProviderUnavailable(
                f"LibreLinkUp login returned no token (status={status!r}"
                + (f", error={message!r})" if message else ")")
            )

        expires_at = self._clock() + self._default_ttl
        expires = ticket.get("expires")
        if isinstance(expires, (int, float)) and not isinstance(expires, bool) and expires > 0:
            expires_at = datetime.fromtimestamp(expires, tz=timezone.utc)

        return AuthSession(
            user_id=user_id,
            source=self.SOURCE_ID,
            bearer_token=str(token),
            expires_at=expires_at,
            extra={
                "api_base": base,
                "account_id": account_id_for(str(llu_user_id)),
                "patient_id": credentials.patient_id,
            },
        )

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _build_headers(self, session: AuthSession | None = None) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Cache-Control": "no-cache",
            "product": self._product,
            "version": self._client_version,
        }
        if session is not None:
            headers["Authorization"] = f"Bearer {session.bearer_token}"
            headers["Account-Id"] = session.extra.get("account_id", "")
        return headers

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._http_client:
            return await self._http_client.request(method, url, timeout=self._timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.request(method, url, **kwargs)

    async def _login_request(self, url: str, body: dict) -> dict:
        try:
            response = await self._send("POST", url, json=body, headers=self._build_headers())
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"LibreLinkUp login unreachable: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(f"LibreLinkUp login HTTP {response.status_code}")
        if response.status_code >= 400:
            raise InvalidCredentials(f"LibreLinkUp login rejected (HTTP {response.status_code})")
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderUnavailable("LibreLinkUp login response is not JSON") from exc
        if not isinstance(data, dict):
            raise ProviderUnavailable("LibreLinkUp login response is not an object")
        return data

    async def _resolve_patient_id(self, session: AuthSession, base: str) -> str:
        payload = await self._get(f"{base}{_CONNECTIONS_PATH}", session)
        connections = payload.get("data")
        if not isinstance(connections, list) or not connections:
            raise MalformedResponse("LibreLinkUp account follows no patients")
        patient_id = (connections[0] or {}).get("patientId")
        if not patient_id:
            raise MalformedResponse("LibreLinkUp connection has no patientId")
        return str(patient_id)

    async def _get(self, url: str, session: AuthSession) -> dict:
        """Make an authenticated GET request to the LibreLinkUp API.

        Raises:
            Unauthorized:      HTTP 401/403.
            RateLimited:       HTTP 429.
            NetworkTimeout:    Transport error or HTTP 5xx.
            MalformedResponse: Other HTTP errors or a non-object JSON body.
        """
        try:
            response = await self._send("GET", url, headers=self._build_headers(session))
        except httpx.TransportError as exc:
            raise NetworkTimeout(f"LibreLinkUp request failed: {exc}") from exc

        status = response.status_code
        if status in (401, 403):
            raise Unauthorized(f"LibreLinkUp rejected token (HTTP {status})")
        if status == 429:
            raise RateLimited(
                "LibreLinkUp rate limit hit",
                retry_after=self._safe_float(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise NetworkTimeout(f"LibreLinkUp server error (HTTP {status})")
        if status >= 400:
            raise MalformedResponse(f"LibreLinkUp HTTP {status} for {url}")

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponse("LibreLinkUp response is not JSON") from exc
        if not isinstance(data, dict):
            raise MalformedResponse("LibreLinkUp response is not an object")
        return data

    @staticmethod
    def _safe_float(value: object) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
