"""
Cluster Data Access Layer — PostgreSQL CRUD for cluster records.

Status transitions go through update() with ``expected_status`` so a record
leaves ``pending`` exactly once.

Usage:
    from clusterplane.clusters.dal import ClusterStore

    store = ClusterStore()
    cluster = store.insert("demo", "aws", tenant_id, region="us-east-1")
    store.update(cluster.id, status="active", config={...}, expected_status="pending")
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from psycopg2.extras import Json, RealDictCursor

from clusterplane.db.connection import get_connection
from clusterplane.models import DEFAULT_TENANT, Cluster, ClusterStatus

logger = logging.getLogger(__name__)

_COLUMNS = "id, tenant_id, name, provider, region, node_count, status, config, created_at"


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class ClusterStore:
    """The cluster record store."""

    def get(self, cluster_id: str) -> Cluster | None:
        if not _is_uuid(cluster_id):
            return None
        with get_connection() as conn:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(f"SELECT {_COLUMNS} FROM clusters WHERE id = %s", (cluster_id,))
            row = cur.fetchone()
            return Cluster.from_row(row) if row else None

    def insert(
        self,
        name: str,
        provider: str,
        tenant_id: str = DEFAULT_TENANT,
        *,
        region: str | None = None,
        node_count: int = 3,
        config: dict[str, Any] | None = None,
    ) -> Cluster:
        """Insert a new ``pending`` record and return it."""
        cluster_id = str(uuid.uuid4())
        with get_connection() as conn:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(
                f"""
                INSERT INTO clusters (id, tenant_id, name, provider, region, node_count, status, config)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_COLUMNS}
                """,
                (
                    cluster_id,
                    tenant_id,
                    name,
                    provider,
                    region,
                    node_count,
                    ClusterStatus.PENDING.value,
                    Json(config or {}),
                ),
            )
            return Cluster.from_row(cur.fetchone())

    def update(
        self,
        cluster_id: str,
        *,
        status: str,
        config: dict[str, Any],
        expected_status: str | None = None,
    ) -> bool:
        """Set status and config. With *expected_status*, only if the row still has it.

        Returns True if a row was updated.
        """
        query = "UPDATE clusters SET status = %s, config = %s WHERE id = %s"
        params: list[Any] = [str(status), Json(config), cluster_id]
        if expected_status is not None:
            query += " AND status = %s"
            params.append(str(expected_status))

        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                updated = cur.rowcount > 0
        if not updated:
            logger.warning(
                "Cluster %s not updated to %s (expected status %s)", cluster_id, status, expected_status
            )
        return updated

    def delete(self, cluster_id: str) -> bool:
        if not _is_uuid(cluster_id):
            return False
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM clusters WHERE id = %s", (cluster_id,))
                return cur.rowcount > 0

    def list(self, tenant_id: str | None = None) -> list[Cluster]:
        """All clusters, newest first, optionally for one tenant."""
        with get_connection() as conn:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            if tenant_id:
                cur.execute(
                    f"SELECT {_COLUMNS} FROM clusters WHERE tenant_id = %s ORDER BY created_at DESC",
                    (tenant_id,),
                )
            else:
                cur.execute(f"SELECT {_COLUMNS} FROM clusters ORDER BY created_at DESC")
            return [Cluster.from_row(r) for r in cur.fetchall()]
