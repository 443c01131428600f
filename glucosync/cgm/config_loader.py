"""Load, validate, and hot-reload the glucose sync pipeline configuration.

The config lives in ``sync_config.yaml`` alongside this module.  It is loaded
once and cached.  Call ``reload_sync_config()`` to re-read it from disk; if
the new file fails validation the previous config stays in place.

Usage::

    from glucosync.cgm.config_loader import get_sync_config

    config = get_sync_config()
    config.tick.lookback_cap          # timedelta(hours=24)
    config.trend_table("libre2")      # {"1": "falling_rapidly", ...}
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml

logger = logging.getLogger("glucosync.cgm.config")

_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

_CANONICAL_TRENDS = {
    "rising_rapidly",
    "rising",
    "stable",
    "falling",
    "falling_rapidly",
    "unknown",
}


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class TickConfig:
    """Per-invocation scheduling limits."""

    interval_seconds: float
    deadline_seconds: float
    abandon_grace_seconds: float
    max_workers: int
    lookback_cap_hours: float

    @property
    def deadline(self) -> timedelta:
        return timedelta(seconds=self.deadline_seconds)

    @property
    def lookback_cap(self) -> timedelta:
        return timedelta(hours=self.lookback_cap_hours)


@dataclass
class AuthConfig:
    """Bearer session lifecycle settings."""

    refresh_margin_seconds: float
    default_token_ttl_seconds: float

    @property
    def refresh_margin(self) -> timedelta:
        return timedelta(seconds=self.refresh_margin_seconds)

    @property
    def default_token_ttl(self) -> timedelta:
        return timedelta(seconds=self.default_token_ttl_seconds)


@dataclass
class RetryConfig:
    """Bounded exponential backoff for transient network failures."""

    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float
    jitter_seconds: float


@dataclass
class PersistenceConfig:
    connection_retries: int


@dataclass
class SyncConfig:
    """Complete, validated pipeline configuration.

    Attributes:
        version:      Config schema version string.
        tick:         Tick deadline, worker count and lookback cap.
        auth:         Session refresh margin and default token TTL.
        retry:        Backoff policy for login and fetch calls.
        persistence:  Store retry budget.
        trend_codes:  source -> vendor code -> canonical trend name.
    """

    version: str
    tick: TickConfig
    auth: AuthConfig
    retry: RetryConfig
    persistence: PersistenceConfig
    trend_codes: dict[str, dict[str, str]]
    _raw: dict = field(default_factory=dict, repr=False)

    def trend_table(self, source: str) -> dict[str, str]:
        """Return the trend code table for a source (empty if unconfigured)."""
        return self.trend_codes.get(source, {})


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError:     If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Missing keys fall back to defaults; out-of-range values are collected
    and reported together.

    Raises:
        ConfigValidationError: If any value is invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: float, name: str, minimum: float = 0.0) -> float:
        value = section.get(key, default)
        try:
            result = float(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be a number, got {value!r}")
            return default
        if result < minimum:
            errors.append(f"{name}.{key} = {result} must be >= {minimum}")
        return result

    version = str(raw.get("version", "1.0"))

    # ── Tick ──
    tick_raw = raw.get("tick") or {}
    tick = TickConfig(
        interval_seconds=_number(tick_raw, "interval_seconds", 300, "tick", 1),
        deadline_seconds=_number(tick_raw, "deadline_seconds", 240, "tick", 1),
        abandon_grace_seconds=_number(tick_raw, "abandon_grace_seconds", 5, "tick"),
        max_workers=int(_number(tick_raw, "max_workers", 8, "tick", 1)),
        lookback_cap_hours=_number(tick_raw, "lookback_cap_hours", 24, "tick", 0.001),
    )
    if tick.deadline_seconds >= tick.interval_seconds:
        errors.append(
            f"tick.deadline_seconds ({tick.deadline_seconds}) must be less than "
            f"tick.interval_seconds ({tick.interval_seconds})"
        )

    # ── Auth ──
    auth_raw = raw.get("auth") or {}
    auth = AuthConfig(
        refresh_margin_seconds=_number(auth_raw, "refresh_margin_seconds", 60, "auth"),
        default_token_ttl_seconds=_number(auth_raw, "default_token_ttl_seconds", 3600, "auth", 1),
    )
    if auth.refresh_margin_seconds >= auth.default_token_ttl_seconds:
        errors.append("auth.refresh_margin_seconds must be less than auth.default_token_ttl_seconds")

    # ── Retry ──
    retry_raw = raw.get("retry") or {}
    retry = RetryConfig(
        max_attempts=int(_number(retry_raw, "max_attempts", 4, "retry", 1)),
        base_delay_seconds=_number(retry_raw, "base_delay_seconds", 1.0, "retry"),
        max_delay_seconds=_number(retry_raw, "max_delay_seconds", 20.0, "retry"),
        jitter_seconds=_number(retry_raw, "jitter_seconds", 1.0, "retry"),
    )

    # ── Persistence ──
    pers_raw = raw.get("persistence") or {}
    persistence = PersistenceConfig(
        connection_retries=int(_number(pers_raw, "connection_retries", 1, "persistence")),
    )

    # ── Trend codes ──
    trend_codes: dict[str, dict[str, str]] = {}
    for source, table in (raw.get("trend_codes") or {}).items():
        if not isinstance(table, dict):
            errors.append(f"trend_codes.{source} must be a mapping of code→trend")
            continue
        trend_codes[source] = {}
        for code, trend in table.items():
            if trend not in _CANONICAL_TRENDS:
                errors.append(f"trend_codes.{source}.{code} = {trend!r} is not a canonical trend")
                continue
            trend_codes[source][str(code).strip()] = trend

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        tick=tick,
        auth=auth,
        retry=retry,
        persistence=persistence,
        trend_codes=trend_codes,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    Raises:
        ConfigValidationError: If the new config is invalid (old one is kept).
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
