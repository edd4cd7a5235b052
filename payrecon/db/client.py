from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2.pool import SimpleConnectionPool

from payrecon.config import settings
from payrecon.errors import PersistenceError

logger = logging.getLogger(__name__)

_pool: SimpleConnectionPool | None = None


def init_pool() -> None:
    global _pool
    if _pool is not None:
        return
    if not settings.db_enabled:
        return
    try:
        _pool = SimpleConnectionPool(1, 10, dsn=settings.db_dsn)
    except psycopg2.Error as exc:
        raise PersistenceError(f"Cannot open database pool: {exc}") from exc


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


@contextmanager
def get_conn() -> Iterator[psycopg2.extensions.connection]:
    """Yield a pooled connection; commit on success, roll back on error.

    Driver errors are re-raised as PersistenceError; IntegrityError subclasses
    pass through so stores can map them to DuplicateKey.
    """
    if _pool is None:
        init_pool()
    if _pool is None:
        raise PersistenceError("Database not configured")
    conn: psycopg2.extensions.connection | None = None
    try:
        # Retry once on connections the server already closed
        for attempt in range(2):
            conn = _pool.getconn()
            try:
                if settings.db_schema:
                    with conn.cursor() as cur:
                        cur.execute(f"SET search_path TO {settings.db_schema}")
                break
            except (psycopg2.OperationalError, psycopg2.InterfaceError):
                try:
                    _pool.putconn(conn, close=True)
                except psycopg2.Error:
                    logger.info("stale connection discard failed", extra={"event": "db"})
                conn = None
                if attempt == 1:
                    raise
        assert conn is not None
        yield conn
        conn.commit()
    except Exception as exc:
        if conn is not None:
            try:
                conn.rollback()
            except psycopg2.Error:
                logger.info("rollback failed", extra={"event": "db"})
        if isinstance(exc, psycopg2.IntegrityError):
            raise
        if isinstance(exc, psycopg2.Error):
            raise PersistenceError(str(exc)) from exc
        raise
    finally:
        if conn is not None:
            _pool.putconn(conn)
