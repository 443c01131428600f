"""Vendor trend code → canonical TrendArrow mapping.

Pure and total: every input maps to a TrendArrow, with anything the tables
do not know about (new firmware codes, missing arrows, garbage) falling back
to ``TrendArrow.UNKNOWN``.  Vendor format churn stops here.
"""

from __future__ import annotations

import logging

from glucosync.cgm.base import TrendArrow
from glucosync.cgm.config_loader import SyncConfig, get_sync_config

logger = logging.getLogger("glucosync.cgm.trend")


def _code_key(code: object) -> str | None:
    """Canonicalize a vendor code so 3, 3.0, "3" and " 3 " compare equal."""
    if code is None or isinstance(code, bool):
        return None
    if isinstance(code, float) and code.is_integer():
        code = int(code)
    key = str(code).strip()
    return key or None


class TrendNormalizer:
    """Maps (source, vendor code) pairs onto the canonical trend enum.

    Usage::

        normalizer = TrendNormalizer.from_config()
        normalizer.normalize("libre2", 3)   # TrendArrow.STABLE
        normalizer.normalize("libre2", 99)  # TrendArrow.UNKNOWN
    """

    def __init__(self, tables: dict[str, dict[str, str]]) -> None:
        self._tables: dict[str, dict[str, TrendArrow]] = {
            source: {str(code).strip(): TrendArrow(trend) for code, trend in table.items()}
            for source, table in tables.items()
        }

    @classmethod
    def from_config(cls, config: SyncConfig | None = None) -> "TrendNormalizer":
        cfg = config or get_sync_config()
        return cls(cfg.trend_codes)

    def normalize(self, source: str, code: object) -> TrendArrow:
        """Return the canonical trend for a vendor code.  Never raises."""
        key = _code_key(code)
        if key is None:
            return TrendArrow.UNKNOWN
        trend = self._tables.get(source, {}).get(key)
        if trend is None:
            logger.debug("Unmapped trend code %r for source %s", code, source)
            return TrendArrow.UNKNOWN
        return trend

    def sources(self) -> list[str]:
        return sorted(self._tables)
