"""Vault data models. None of them ever carry decrypted credential material."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class CredentialStatus(BaseModel):
    """Presence and identity report for one (tenant, provider) pair."""

    connected: bool
    source: Literal["env", "stored"] | None = None
    identity: str | None = None
    display_name: str | None = None
    tenant_id: str | None = None


class StoredCredentialSummary(BaseModel):
    """Metadata about a tenant-stored credential row."""

    provider: str
    tenant_id: str
    identity: str | None = None
    display_name: str | None = None
    created_at: datetime | None = None
