"""
Tests for the ASIN metadata cache.

The database is mocked; SQL parameters are inspected directly.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from ranksheet.cache.asin_cache import AsinCache
from ranksheet.data.models import AsinCacheEntry, CacheStatus
from ranksheet.data.product_card import ProductCard
from ranksheet.db.pool import DatabaseError

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_db():
    """MagicMock Database whose connection()/cursor() yield one cursor."""
    db = MagicMock()
    conn = MagicMock()
    cur = MagicMock()
    db.connection.return_value.__enter__.return_value = conn
    conn.cursor.return_value.__enter__.return_value = cur
    return db, cur


class TestAsinCacheTtl:
    """Tests for TTL selection."""

    def setup_method(self):
        """Set up test fixtures."""
        self.db, self.cur = make_db()
        self.cache = AsinCache(self.db, now=lambda: NOW)

    def test_positive_ttl_30_days(self):
        """EXISTS entries live 30 days."""
        entry = AsinCacheEntry.from_card(ProductCard(asin="B000000001", title="Mouse"))
        assert self.cache.ttl_for(entry) == 30

    def test_negative_ttl_7_days(self):
        """NOT_FOUND entries live 7 days."""
        assert self.cache.ttl_for(AsinCacheEntry.not_found("B000000002")) == 7

    def test_explicit_ttl_wins(self):
        """A per-entry TTL overrides the defaults."""
        assert self.cache.ttl_for(AsinCacheEntry.not_found("B000000002", ttl_days=1)) == 1

    @patch("ranksheet.cache.asin_cache.execute_values")
    def test_upsert_writes_expiry_by_status(self, mock_execute_values):
        """Expiry is now + 30d for EXISTS and now + 7d for NOT_FOUND."""
        entries = [
            AsinCacheEntry.from_card(ProductCard(asin="B000000001", title="Mouse")),
            AsinCacheEntry.not_found("B000000002"),
        ]
        assert self.cache.upsert(entries) is True

        values = mock_execute_values.call_args[0][2]
        expires = {row[0]: row[-1] for row in values}
        assert expires["B000000001"] == NOW + timedelta(days=30)
        assert expires["B000000002"] == NOW + timedelta(days=7)
        statuses = {row[0]: row[1] for row in values}
        assert statuses["B000000002"] == "NOT_FOUND"


class TestAsinCacheUpsert:
    """Tests for bulk upsert behavior."""

    def setup_method(self):
        """Set up test fixtures."""
        self.db, self.cur = make_db()
        self.cache = AsinCache(self.db, now=lambda: NOW)

    def test_empty_upsert_skips_database(self):
        """Nothing to write -> no connection taken."""
        assert self.cache.upsert([]) is False
        self.db.connection.assert_not_called()

    @patch("ranksheet.cache.asin_cache.execute_values")
    def test_duplicate_asins_last_wins(self, mock_execute_values):
        """Only one row per ASIN is sent, the last one given."""
        entries = [
            AsinCacheEntry.not_found("B000000001"),
            AsinCacheEntry.from_card(ProductCard(asin="B000000001", title="Mouse")),
        ]
        self.cache.upsert(entries)

        values = mock_execute_values.call_args[0][2]
        assert len(values) == 1
        assert values[0][1] == "EXISTS"

    @patch("ranksheet.cache.asin_cache.execute_values")
    def test_database_failure_returns_false(self, mock_execute_values):
        """Cache writes are best-effort."""
        self.db.connection.side_effect = DatabaseError("down")
        entries = [AsinCacheEntry.not_found("B000000001")]

        assert self.cache.upsert(entries) is False

    @patch("ranksheet.cache.asin_cache.execute_values")
    def test_non_database_failure_returns_false(self, mock_execute_values):
        """Driver or adaptation errors are swallowed too."""
        mock_execute_values.side_effect = TypeError("can't adapt type 'dict'")
        entries = [AsinCacheEntry.not_found("B000000001")]

        assert self.cache.upsert(entries) is False

    def test_bad_ttl_returns_false(self):
        """Expiry arithmetic failures do not escape."""
        entries = [AsinCacheEntry.not_found("B000000001", ttl_days="7")]

        assert self.cache.upsert(entries) is False
        self.db.connection.assert_not_called()


class TestAsinCacheRead:
    """Tests for lookups and maintenance queries."""

    def setup_method(self):
        """Set up test fixtures."""
        self.db, self.cur = make_db()
        self.cache = AsinCache(self.db, now=lambda: NOW)

    def test_get_filters_on_expiry(self):
        """Only unexpired rows are requested; rows map by ASIN."""
        self.cur.fetchall.return_value = [
            {"asin": "B000000001", "status": "EXISTS", "title": "Mouse", "brand": "Acme",
             "image_url": "https://img/1.jpg", "expires_at": NOW + timedelta(days=3)},
            {"asin": "B000000002", "status": "NOT_FOUND", "expires_at": NOW + timedelta(days=1)},
        ]
        entries = self.cache.get(["B000000001", "B000000002", "B000000001", ""])

        sql, params = self.cur.execute.call_args[0]
        assert "expires_at > %s" in sql
        assert params == (["B000000001", "B000000002"], NOW)
        assert entries["B000000001"].title == "Mouse"
        assert entries["B000000002"].status == CacheStatus.NOT_FOUND

    def test_get_empty_input(self):
        """No ASINs -> no query."""
        assert self.cache.get([]) == {}
        self.db.connection.assert_not_called()

    def test_clean_expired_uses_grace_cutoff(self):
        """Rows expired before now - grace are deleted."""
        self.cur.rowcount = 4
        assert self.cache.clean_expired(60) == 4

        _, params = self.cur.execute.call_args[0]
        assert params == (NOW - timedelta(days=60),)

    def test_count_expired(self):
        """Dry-run count uses the same cutoff."""
        self.cur.fetchone.return_value = (9,)
        assert self.cache.count_expired(10) == 9

    def test_stats(self):
        """Counts are returned as ints."""
        self.cur.fetchone.return_value = {
            "total": 10, "exists": 7, "not_found": 3, "expired": 2, "expiring_7d": None,
        }
        stats = self.cache.stats()
        assert stats == {"total": 10, "exists": 7, "not_found": 3, "expired": 2, "expiring_7d": 0}
