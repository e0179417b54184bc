"""
Vault DAL — CRUD on the credentials table.

Rows hold already-encrypted payloads; this module never sees plaintext.
One row per (tenant_id, provider); replace() swaps it atomically.
"""

from __future__ import annotations

import logging
from typing import Any

from psycopg2.extras import RealDictCursor

from clusterplane.db.connection import get_connection

logger = logging.getLogger(__name__)


class CredentialStore:
    """PostgreSQL-backed store for encrypted tenant credentials."""

    def latest(self, provider: str, tenant_id: str) -> dict[str, Any] | None:
        """Most recent row for the pair, or None."""
        with get_connection() as conn:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(
                """
                SELECT provider, tenant_id, encrypted_data, identity, display_name, created_at
                FROM credentials
                WHERE provider = %s AND tenant_id = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (provider, tenant_id),
            )
            row = cur.fetchone()
            if not row:
                return None
            row = dict(row)
            row["encrypted_data"] = bytes(row["encrypted_data"])
            return row

    def replace(
        self,
        provider: str,
        tenant_id: str,
        encrypted_data: bytes,
        *,
        identity: str | None,
        display_name: str,
    ) -> None:
        """Delete any prior row for the pair and insert the new one, in one transaction."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM credentials WHERE provider = %s AND tenant_id = %s",
                    (provider, tenant_id),
                )
                cur.execute(
                    """
                    INSERT INTO credentials
                        (provider, tenant_id, encrypted_data, identity, display_name)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (provider, tenant_id, encrypted_data, identity, display_name),
                )
        logger.debug("Stored %s credential for tenant %s", provider, tenant_id)

    def delete(self, provider: str, tenant_id: str) -> bool:
        """Delete the row for the pair. Returns True if one was deleted."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM credentials WHERE provider = %s AND tenant_id = %s",
                    (provider, tenant_id),
                )
                return cur.rowcount > 0

    def list_for_tenant(self, tenant_id: str) -> list[dict[str, Any]]:
        """Metadata (no ciphertext) for every stored credential of a tenant."""
        with get_connection() as conn:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(
                """
                SELECT provider, tenant_id, identity, display_name, created_at
                FROM credentials
                WHERE tenant_id = %s
                ORDER BY provider ASC
                """,
                (tenant_id,),
            )
            return [dict(r) for r in cur.fetchall()]

