"""
ASIN Metadata Cache
===================

PostgreSQL-backed cache of catalog facts per ASIN, with positive (EXISTS)
and negative (NOT_FOUND) entries.

Features:
    - Expired entries are logically absent on read (never returned)
    - Bulk upsert with per-entry TTL (30 days EXISTS, 7 days NOT_FOUND)
    - Write failures are logged and swallowed: the cache is advisory
    - Grace-window cleanup of long-expired rows

Usage:
    cache = AsinCache(db)
    hits = cache.get(["B0AAA", "B0BBB"])
    cache.upsert([AsinCacheEntry.not_found("B0CCC")])
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List

from psycopg2.extras import RealDictCursor, execute_values

from ..data.models import AsinCacheEntry, CacheStatus
from ..db.pool import Database

logger = logging.getLogger(__name__)

DEFAULT_TTL_DAYS = 30
DEFAULT_NEGATIVE_TTL_DAYS = 7
DEFAULT_CLEANUP_GRACE_DAYS = 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AsinCache:
    """Read-through helper over ranksheet.asin_cache."""

    def __init__(
        self,
        db: Database,
        ttl_days: int = DEFAULT_TTL_DAYS,
        negative_ttl_days: int = DEFAULT_NEGATIVE_TTL_DAYS,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.ttl_days = ttl_days
        self.negative_ttl_days = negative_ttl_days
        self._now = now

    def ttl_for(self, entry: AsinCacheEntry) -> int:
        """Explicit TTL wins; otherwise 30 days for EXISTS, 7 for NOT_FOUND."""
        if entry.ttl_days is not None:
            return entry.ttl_days
        if entry.status == CacheStatus.NOT_FOUND:
            return self.negative_ttl_days
        return self.ttl_days

    def get(self, asins: Iterable[str]) -> Dict[str, AsinCacheEntry]:
        """
        Look up live cache entries.

        Returns:
            Mapping asin -> entry for every ASIN with an unexpired entry
        """
        unique = list(dict.fromkeys(a for a in asins if a))
        if not unique:
            return {}

        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT asin, status, title, brand, image_url, parent_asin,
                           price_cents, price_currency, is_prime, source,
                           fetched_at, expires_at
                    FROM ranksheet.asin_cache
                    WHERE asin = ANY(%s)
                      AND expires_at > %s
                    """,
                    (unique, self._now()),
                )
                rows = cur.fetchall()

        entries = {r["asin"]: AsinCacheEntry.from_row(r) for r in rows}
        not_found = sum(1 for e in entries.values() if e.status == CacheStatus.NOT_FOUND)
        logger.debug(
            f"ASIN cache lookup: requested={len(unique)} hits={len(entries)} not_found={not_found}"
        )
        return entries

    def upsert(self, entries: List[AsinCacheEntry]) -> bool:
        """
        Bulk insert or replace cache entries.

        Returns:
            True if written, False if skipped or the write failed
        """
        if not entries:
            return False

        # ON CONFLICT cannot touch the same row twice in one statement
        latest: Dict[str, AsinCacheEntry] = {}
        for entry in entries:
            latest[entry.asin] = entry

        try:
            now = self._now()
            values = []
            for entry in latest.values():
                expires_at = now + timedelta(days=self.ttl_for(entry))
                values.append((
                    entry.asin,
                    entry.status.value,
                    entry.title,
                    entry.brand,
                    entry.image_url,
                    entry.parent_asin,
                    entry.price_cents,
                    entry.price_currency or "USD",
                    entry.is_prime,
                    entry.source,
                    expires_at,
                ))

            with self.db.connection() as conn:
                with conn.cursor() as cur:
                    execute_values(
                        cur,
                        """
                        INSERT INTO ranksheet.asin_cache (
                            asin, status, title, brand, image_url, parent_asin,
                            price_cents, price_currency, is_prime, source, expires_at
                        ) VALUES %s
                        ON CONFLICT (asin) DO UPDATE SET
                            status = EXCLUDED.status,
                            title = EXCLUDED.title,
                            brand = EXCLUDED.brand,
                            image_url = EXCLUDED.image_url,
                            parent_asin = EXCLUDED.parent_asin,
                            price_cents = EXCLUDED.price_cents,
                            price_currency = EXCLUDED.price_currency,
                            is_prime = EXCLUDED.is_prime,
                            source = EXCLUDED.source,
                            expires_at = EXCLUDED.expires_at,
                            fetched_at = NOW(),
                            updated_at = NOW()
                        """,
                        values,
                    )
        except Exception as e:
            logger.warning(f"Failed to update ASIN cache ({len(latest)} entries): {e}", exc_info=True)
            return False

        not_found = sum(1 for e in latest.values() if e.status == CacheStatus.NOT_FOUND)
        logger.info(
            f"Upserted ASIN cache entries: total={len(values)} "
            f"exists={len(values) - not_found} not_found={not_found}"
        )
        return True

    def clean_expired(self, older_than_days: int = DEFAULT_CLEANUP_GRACE_DAYS) -> int:
        """Delete entries that expired more than ``older_than_days`` ago."""
        cutoff = self._now() - timedelta(days=older_than_days)
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM ranksheet.asin_cache WHERE expires_at < %s",
                    (cutoff,),
                )
                count = cur.rowcount
        logger.info(f"Cleaned expired ASIN cache entries: count={count} older_than_days={older_than_days}")
        return count

    def count_expired(self, older_than_days: int = DEFAULT_CLEANUP_GRACE_DAYS) -> int:
        """Rows ``clean_expired`` would delete."""
        cutoff = self._now() - timedelta(days=older_than_days)
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*) FROM ranksheet.asin_cache WHERE expires_at < %s",
                    (cutoff,),
                )
                return int(cur.fetchone()[0])

    def stats(self) -> Dict[str, int]:
        """Entry counts by status and expiry horizon."""
        now = self._now()
        in_7_days = now + timedelta(days=7)
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT
                        COUNT(*) AS total,
                        COUNT(*) FILTER (WHERE status = 'EXISTS') AS exists,
                        COUNT(*) FILTER (WHERE status = 'NOT_FOUND') AS not_found,
                        COUNT(*) FILTER (WHERE expires_at < %s) AS expired,
                        COUNT(*) FILTER (WHERE expires_at > %s AND expires_at <= %s) AS expiring_7d
                    FROM ranksheet.asin_cache
                    """,
                    (now, now, in_7_days),
                )
                row = cur.fetchone()
        return {key: int(row[key] or 0) for key in ("total", "exists", "not_found", "expired", "expiring_7d")}
