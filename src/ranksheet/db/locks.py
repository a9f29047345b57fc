"""
RankSheet Advisory Locks
========================

Cross-process mutual exclusion on PostgreSQL session advisory locks.

A string key is hashed to a signed 32-bit lock id (FNV-1a). The lock is
taken on one dedicated pooled connection that is held for the whole
critical section and released in a ``finally`` block, so a failing
callable never leaks the lock.

Usage:
    locks = AdvisoryLockManager(db)
    outcome = locks.with_lock("refresh:keyword:best-mouse", do_refresh)
    if not outcome.acquired:
        ...  # someone else is refreshing
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from psycopg2.extras import RealDictCursor

from .pool import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193


def fnv1a32(value: str) -> int:
    """
    FNV-1a 32-bit hash over UTF-16 code units.

    Hashing code units rather than bytes keeps lock ids identical for any
    other process hashing the same key as a UTF-16 string.
    """
    encoded = value.encode("utf-16-le")
    h = FNV_OFFSET_BASIS
    for i in range(0, len(encoded), 2):
        h ^= encoded[i] | (encoded[i + 1] << 8)
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return h


def to_signed32(n: int) -> int:
    """Reinterpret an unsigned 32-bit integer as signed."""
    n &= 0xFFFFFFFF
    return n - 0x100000000 if n >= 0x80000000 else n


def lock_id_for(key: str) -> int:
    return to_signed32(fnv1a32(key))


@dataclass
class LockResult(Generic[T]):
    """Outcome of a guarded call. ``result`` is only set when acquired."""
    acquired: bool
    result: Optional[T] = None


class AdvisoryLockManager:
    """Runs callables under PostgreSQL session advisory locks."""

    POLL_INTERVAL = 0.1

    def __init__(
        self,
        db: Database,
        acquire_timeout: float = 30.0,
        statement_timeout: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            db: Database providing pooled connections
            acquire_timeout: Seconds to keep polling for the lock
            statement_timeout: Per-statement limit in seconds for the lock
                session; 0 disables it
        """
        self.db = db
        self.acquire_timeout = acquire_timeout
        self.statement_timeout = statement_timeout
        self._sleep = sleep
        self._clock = clock

    def with_lock(
        self,
        key: str,
        fn: Callable[[], T],
        acquire_timeout: Optional[float] = None,
        statement_timeout: Optional[float] = None,
    ) -> LockResult[T]:
        """
        Run ``fn`` while holding the advisory lock for ``key``.

        Returns:
            LockResult(acquired=False) if the lock could not be taken within
            the acquire timeout; otherwise LockResult(acquired=True, result=...)

        Raises:
            Whatever ``fn`` raises, after the lock has been released.
        """
        acquire_timeout = self.acquire_timeout if acquire_timeout is None else acquire_timeout
        statement_timeout = self.statement_timeout if statement_timeout is None else statement_timeout
        lock_id = lock_id_for(key)
        log_extra = {"lock_key": key}

        with self.db.raw_connection() as conn:
            cur = conn.cursor()
            try:
                if statement_timeout > 0:
                    cur.execute("SET statement_timeout = %s", (int(statement_timeout * 1000),))

                deadline = self._clock() + acquire_timeout
                acquired = False
                while True:
                    cur.execute("SELECT pg_try_advisory_lock(%s)", (lock_id,))
                    row = cur.fetchone()
                    acquired = bool(row and row[0])
                    if acquired or self._clock() >= deadline:
                        break
                    self._sleep(self.POLL_INTERVAL)

                if not acquired:
                    logger.warning(
                        f"Advisory lock timeout for '{key}' (id={lock_id}) after {acquire_timeout}s",
                        extra=log_extra,
                    )
                    return LockResult(acquired=False)

                logger.debug(f"Advisory lock acquired: {key} (id={lock_id})", extra=log_extra)
                try:
                    return LockResult(acquired=True, result=fn())
                finally:
                    cur.execute("SELECT pg_advisory_unlock(%s)", (lock_id,))
                    logger.debug(f"Advisory lock released: {key}", extra=log_extra)
            finally:
                if statement_timeout > 0:
                    try:
                        cur.execute("RESET statement_timeout")
                    except Exception as e:
                        logger.warning(f"Failed to reset statement_timeout: {e}", extra=log_extra)
                cur.close()

    def held_locks(self) -> List[Dict[str, Any]]:
        """
        List advisory locks currently known to PostgreSQL.

        Informational only: session locks vanish when their connection closes.
        """
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT objid AS lock_id, pid, granted
                    FROM pg_locks
                    WHERE locktype = 'advisory'
                      AND classid = 0
                """)
                return [dict(r) for r in cur.fetchall()]
