"""
RankSheet Database Connection
=============================

psycopg2 ThreadedConnectionPool wrapper shared by the repositories, the
ASIN cache, the advisory lock manager and the job queue.

Usage:
    db = Database()
    with db.connection() as conn:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute("SELECT 1")
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2
from psycopg2 import pool

from ..data.config import DatabaseConfig, get_settings

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Database operation error."""
    pass


class Database:
    """
    Lazily created connection pool with transactional checkout.

    ``connection()`` commits on success and rolls back on error. ``raw_connection()``
    hands out a connection in autocommit mode for session-level work such
    as advisory locks.
    """

    # psycopg2 pools raise immediately when exhausted; poll instead
    CHECKOUT_POLL_INTERVAL = 0.05

    def __init__(
        self,
        config: Optional[DatabaseConfig] = None,
        db_pool: Optional[pool.ThreadedConnectionPool] = None,
    ):
        self._config = config
        self._db_pool = db_pool
        self._own_pool = db_pool is None
        self._init_lock = threading.Lock()

    @property
    def config(self) -> DatabaseConfig:
        if self._config is None:
            self._config = get_settings().database
        return self._config

    @property
    def db_pool(self) -> pool.ThreadedConnectionPool:
        """Lazy-initialize database connection pool."""
        if self._db_pool is None:
            with self._init_lock:
                if self._db_pool is None:
                    db_config = self.config
                    self._db_pool = pool.ThreadedConnectionPool(
                        minconn=db_config.pool_min_size,
                        maxconn=db_config.pool_max_size,
                        **db_config.connection_dict
                    )
                    logger.info(
                        f"Database connection pool created: "
                        f"{db_config.host}:{db_config.port}/{db_config.name}"
                    )
        return self._db_pool

    def _checkout(self):
        timeout = self._config.connect_timeout if self._config else 10
        deadline = time.monotonic() + timeout
        while True:
            try:
                return self.db_pool.getconn()
            except pool.PoolError as e:
                if time.monotonic() >= deadline:
                    raise DatabaseError(f"Connection pool exhausted: {e}") from e
                time.sleep(self.CHECKOUT_POLL_INTERVAL)

    @contextmanager
    def connection(self) -> Iterator["psycopg2.extensions.connection"]:
        """Get a transactional database connection from the pool."""
        conn = None
        try:
            conn = self._checkout()
            yield conn
            conn.commit()
        except psycopg2.Error as e:
            if conn:
                conn.rollback()
            raise DatabaseError(f"Database operation failed: {e}") from e
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                self.db_pool.putconn(conn)

    @contextmanager
    def raw_connection(self) -> Iterator["psycopg2.extensions.connection"]:
        """Get an autocommit connection held for a whole session-level section."""
        conn = self._checkout()
        try:
            conn.autocommit = True
            yield conn
        finally:
            try:
                conn.autocommit = False
            except psycopg2.Error as e:
                logger.warning(f"Failed to restore autocommit on pooled connection: {e}")
            self.db_pool.putconn(conn)

    def close(self):
        """Clean up resources."""
        if self._own_pool and self._db_pool is not None:
            self._db_pool.closeall()
            self._db_pool = None
            logger.info("Database connection pool closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# Global database instance (lazy-loaded)
_database: Optional[Database] = None


def get_database() -> Database:
    """Get the process-wide Database (singleton pattern)."""
    global _database
    if _database is None:
        _database = Database()
    return _database


def close_database() -> None:
    """Close the process-wide pool."""
    global _database
    if _database is not None:
        _database.close()
        _database = None
