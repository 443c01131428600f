"""CGM source credentials from the Supabase Vault.

Credentials are consumed, never stored by this service: each login reads
them fresh from ``vault.decrypted_secrets``.  Secrets are named
``cgm:{source}:{user_id}`` and hold a JSON object::

    {"username": "...", "password": "...", "region": "eu", "patient_id": null}
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from uuid import UUID

from glucosync.cgm.base import Credentials
from glucosync.cgm.errors import CredentialsNotFound
from glucosync.services.supabase import fetchval

logger = logging.getLogger("glucosync.secrets")


def secret_name(user_id: UUID, source: str) -> str:
    return f"cgm:{source}:{user_id}"


def parse_credentials(payload: str | dict) -> Credentials:
    """Build Credentials from the stored secret.

    Raises:
        CredentialsNotFound: If the secret lacks a username or password.
    """
    data = json.loads(payload) if isinstance(payload, str) else payload
    username = (data or {}).get("username") or (data or {}).get("email")
    password = (data or {}).get("password")
    if not username or not password:
        raise CredentialsNotFound("Stored secret is missing username or password")
    return Credentials(
        username=username,
        password=password,
        region=data.get("region") or None,
        patient_id=data.get("patient_id") or None,
    )


class CredentialProvider(ABC):
    """Capability returning a user's source credentials."""

    @abstractmethod
    async def get_credentials(self, user_id: UUID, source: str) -> Credentials:
        """Return credentials for (user, source).

        Raises:
            CredentialsNotFound: Nothing stored for this pair.
        """


class VaultCredentialProvider(CredentialProvider):
    """Reads decrypted secrets through the service-role database connection."""

    async def get_credentials(self, user_id: UUID, source: str) -> Credentials:
        name = secret_name(user_id, source)
        value = await fetchval(
            "SELECT decrypted_secret FROM vault.decrypted_secrets WHERE name = $1",
            name,
        )
        if value is None:
            raise CredentialsNotFound(f"No credentials stored for {source}/{user_id}")
        try:
            return parse_credentials(value)
        except (json.JSONDecodeError, AttributeError) as exc:
            logger.error("Secret %s is not a JSON object", name)
            raise CredentialsNotFound(f"Unreadable credentials for {source}/{user_id}") from exc
