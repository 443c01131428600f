"""CGM source adapters.

Each adapter implements the SourceAdapter ABC and handles:
- Logging in with the user's stored credentials
- Fetching readings from the vendor API
- Parsing vendor JSON into RawReading objects

Available adapters:
    Libre2Adapter — FreeStyle Libre 2 via the LibreLinkUp follower API
"""

from __future__ import annotations

from glucosync.cgm.adapters.libre2 import Libre2Adapter
from glucosync.cgm.base import SourceAdapter
from glucosync.config import Settings

__all__ = [
    "Libre2Adapter",
    "ADAPTER_REGISTRY",
    "get_adapter",
    "build_adapters",
]

# Registry: source_id → adapter class
ADAPTER_REGISTRY: dict[str, type[SourceAdapter]] = {
    "libre2": Libre2Adapter,
}


def get_adapter(source_id: str) -> type[SourceAdapter]:
    """Return the adapter class for a given source slug.

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in ADAPTER_REGISTRY:
        raise KeyError(
            f"No adapter registered for source '{source_id}'. "
            f"Available: {list(ADAPTER_REGISTRY)}"
        )
    return ADAPTER_REGISTRY[source_id]


def build_adapters(settings: Settings) -> dict[str, SourceAdapter]:
    """Instantiate one adapter per registered source from process settings."""
    return {
        Libre2Adapter.SOURCE_ID: Libre2Adapter(
            api_base=settings.librelinkup_api_base,
            client_version=settings.librelinkup_client_version,
            product=settings.librelinkup_product,
            timeout_seconds=settings.http_timeout_seconds,
        ),
    }
