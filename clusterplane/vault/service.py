"""
CredentialVault — tenant-scoped credential resolution and storage.

Two sources, checked in order:
    1. Operator credentials from process configuration. They apply to every
       tenant and cannot be changed or removed through the vault.
    2. The tenant's stored row, AES-GCM encrypted JSON.

Nothing is persisted unless the live validator accepts the credential set.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from clusterplane.config import OperatorCredentials, get_config
from clusterplane.errors import CredentialInvalid, ImmutableSource
from clusterplane.models import DEFAULT_TENANT, ProviderKind
from clusterplane.vault.crypto import Cipher
from clusterplane.vault.dal import CredentialStore
from clusterplane.vault.models import CredentialStatus, StoredCredentialSummary

logger = logging.getLogger(__name__)

ENV_IDENTITY = "Environment Variable (Admin Configured)"
ENV_DISPLAY_NAME = "Admin Default"

Validator = Callable[[ProviderKind, dict[str, Any]], Awaitable[Any]]


def _default_validator() -> Validator:
    from clusterplane.validators import validate

    return validate


class CredentialVault:
    def __init__(
        self,
        cipher: Cipher,
        store: CredentialStore | None = None,
        operator: OperatorCredentials | None = None,
        validator: Validator | None = None,
    ) -> None:
        self._cipher = cipher
        self._store = store or CredentialStore()
        self._operator = operator if operator is not None else get_config().operator
        self._validate = validator or _default_validator()

    async def resolve(self, provider: str, tenant_id: str | None = None) -> dict[str, Any] | None:
        """Credentials to provision with, or None when nothing is configured."""
        kind = ProviderKind.parse(provider)
        tenant_id = tenant_id or DEFAULT_TENANT

        if self._operator.has(kind):
            return self._operator.for_provider(kind)

        row = await asyncio.to_thread(self._store.latest, kind.value, tenant_id)
        if not row:
            return None
        return json.loads(self._cipher.decrypt(row["encrypted_data"]))

    async def save(
        self,
        provider: str,
        tenant_id: str | None,
        raw: dict[str, Any],
        display_name: str | None = None,
    ) -> StoredCredentialSummary:
        """Validate *raw* live, then encrypt and store it for the tenant.

        Raises MissingCredentialFields before any network call and
        CredentialInvalid when the validator rejects the set. In both cases
        nothing is written.
        """
        kind = ProviderKind.parse(provider)
        tenant_id = tenant_id or DEFAULT_TENANT
        kind.check_fields(raw)

        result = await self._validate(kind, raw)
        if not result.valid:
            logger.warning("Rejected %s credentials for tenant %s: %s", kind, tenant_id, result.error)
            raise CredentialInvalid(f"Authentication failed: {result.error}")

        name = display_name or f"{kind.value.upper()} - {result.identity or 'Connection'}"
        encrypted = self._cipher.encrypt(json.dumps(raw))
        await asyncio.to_thread(
            self._store.replace,
            kind.value,
            tenant_id,
            encrypted,
            identity=result.identity,
            display_name=name,
        )
        logger.info("Stored %s credentials for tenant %s (%s)", kind, tenant_id, sorted(raw))
        return StoredCredentialSummary(
            provider=kind.value,
            tenant_id=tenant_id,
            identity=result.identity,
            display_name=name,
        )

    async def status(self, provider: str, tenant_id: str | None = None) -> CredentialStatus:
        kind = ProviderKind.parse(provider)
        tenant_id = tenant_id or DEFAULT_TENANT

        if self._operator.has(kind):
            return CredentialStatus(
                connected=True,
                source="env",
                identity=ENV_IDENTITY,
                display_name=ENV_DISPLAY_NAME,
                tenant_id=tenant_id,
            )

        try:
            row = await asyncio.to_thread(self._store.latest, kind.value, tenant_id)
        except Exception as e:
            logger.error("Credential status lookup failed for %s/%s: %s", kind, tenant_id, e)
            return CredentialStatus(connected=False)

        if not row:
            return CredentialStatus(connected=False)
        return CredentialStatus(
            connected=True,
            source="stored",
            identity=row.get("identity") or "Secure Storage",
            display_name=row.get("display_name") or f"{kind.value.upper()} Connection",
            tenant_id=row.get("tenant_id") or tenant_id,
        )

    async def delete(self, provider: str, tenant_id: str | None = None) -> bool:
        kind = ProviderKind.parse(provider)
        if self._operator.has(kind):
            raise ImmutableSource("Cannot disconnect credentials set via Environment Variables.")
        deleted = await asyncio.to_thread(self._store.delete, kind.value, tenant_id or DEFAULT_TENANT)
        if deleted:
            logger.info("Deleted %s credentials for tenant %s", kind, tenant_id or DEFAULT_TENANT)
        return deleted

    async def list_stored(self, tenant_id: str | None = None) -> list[StoredCredentialSummary]:
        rows = await asyncio.to_thread(self._store.list_for_tenant, tenant_id or DEFAULT_TENANT)
        return [StoredCredentialSummary(**row) for row in rows]
