"""
Credential vault — tenant credentials in PostgreSQL, AES-256-GCM encrypted.

Public API:
    CredentialVault.resolve(provider, tenant)        → credential dict or None
    CredentialVault.save(provider, tenant, raw)      → validate, encrypt, store
    CredentialVault.status(provider, tenant)         → CredentialStatus (no secrets)
    CredentialVault.delete(provider, tenant)         → remove stored row
    CredentialVault.list_stored(tenant)              → StoredCredentialSummary list
"""

from __future__ import annotations

from clusterplane.vault.crypto import Cipher, cipher_from_config, init_master_key
from clusterplane.vault.models import CredentialStatus, StoredCredentialSummary
from clusterplane.vault.service import CredentialVault

__all__ = [
    "Cipher",
    "CredentialStatus",
    "CredentialVault",
    "StoredCredentialSummary",
    "cipher_from_config",
    "init_master_key",
]
