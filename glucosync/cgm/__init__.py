"""Continuous glucose monitor sync pipeline.

This package authenticates against CGM vendor APIs, fetches readings,
normalizes vendor trend codes and persists each reading exactly once.

Subpackages:
    adapters/  — Vendor API adapters (LibreLinkUp for Libre 2)
    sync/      — Session manager, retry policy, stores, tick orchestrator

Core modules:
    base          — SourceAdapter ABC and canonical data models
    errors        — Auth / fetch / persistence exception taxonomy
    trend         — Vendor trend code → canonical trend mapping
    config_loader — Load/validate/hot-reload sync_config.yaml
"""

from glucosync.cgm.base import (
    AuthSession,
    Credentials,
    GlucoseReading,
    RawReading,
    SourceAdapter,
    SyncConnection,
    TrendArrow,
    UpsertOutcome,
)
from glucosync.cgm.config_loader import SyncConfig, get_sync_config

__all__ = [
    "SourceAdapter",
    "AuthSession",
    "Credentials",
    "GlucoseReading",
    "RawReading",
    "SyncConnection",
    "TrendArrow",
    "UpsertOutcome",
    "SyncConfig",
    "get_sync_config",
]
