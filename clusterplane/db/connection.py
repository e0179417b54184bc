"""
PostgreSQL access for the credential and cluster stores.

Both stores are synchronous and are called from asyncio worker threads, so
they share one ThreadedConnectionPool sized by CLUSTERPLANE_DB_POOL_SIZE.
Each get_connection() block is one transaction.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager

import psycopg2
import psycopg2.pool

from clusterplane.config import DatabaseConfig, get_config

logger = logging.getLogger(__name__)

_pool: psycopg2.pool.ThreadedConnectionPool | None = None
_pool_lock = threading.Lock()


def _open_pool(cfg: DatabaseConfig) -> psycopg2.pool.ThreadedConnectionPool:
    logger.info("Opening PostgreSQL pool for %s (size %d)", cfg.dsn_summary, cfg.pool_size)
    try:
        return psycopg2.pool.ThreadedConnectionPool(1, cfg.pool_size, **cfg.dict)
    except psycopg2.OperationalError as e:
        raise ConnectionError(
            f"PostgreSQL unavailable ({cfg.dsn_summary}): {e}. "
            "Set CLUSTERPLANE_DB_* and run 'clusterplane migrate'."
        ) from e


def get_pool() -> psycopg2.pool.ThreadedConnectionPool:
    """Return the shared pool, opening it on first use."""
    global _pool
    with _pool_lock:
        if _pool is None or _pool.closed:
            _pool = _open_pool(get_config().db)
        return _pool


@contextmanager
def get_connection() -> Generator[psycopg2.extensions.connection, None, None]:
    """Borrow a pooled connection for one transaction.

    The transaction commits when the block exits cleanly and rolls back when
    it raises. The connection goes back to the pool either way.
    """
    pool = get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def close_pool() -> None:
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.closeall()
            logger.info("PostgreSQL pool closed")
        _pool = None
