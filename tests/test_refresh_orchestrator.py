"""
Tests for the single-keyword refresh orchestrator.

Collaborators are MagicMocks; advisory locks are replaced by a stand-in
that either runs the callable or reports the lock as busy.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from ranksheet.cache.asin_cache import AsinCache
from ranksheet.data.config import RefreshConfig
from ranksheet.data.models import (
    AsinCacheEntry,
    CacheStatus,
    Keyword,
    KeywordStatus,
    RankSheetMode,
    ReadinessLevel,
    SignalItem,
)
from ranksheet.data.product_card import CatalogBrand, CatalogProduct
from ranksheet.db.locks import LockResult
from ranksheet.orchestrator.refresh import RefreshOrchestrator, lock_key_for

NOW = datetime(2025, 3, 10, 6, 0, tzinfo=timezone.utc)
CURRENT = "2025-03-08"
PREVIOUS = "2025-03-01"


class FakeLocks:
    def __init__(self, acquired=True):
        self.acquired = acquired
        self.keys = []

    def with_lock(self, key, fn):
        self.keys.append(key)
        if not self.acquired:
            return LockResult(acquired=False)
        return LockResult(acquired=True, result=fn())


def product(asin, complete=True, **extra):
    return CatalogProduct(
        asin=asin,
        title=f"Product {asin}",
        featuredImage=f"https://img.example.com/{asin}.jpg" if complete else None,
        brand=CatalogBrand(name=f"Brand {asin}"),
        **extra,
    )


def items(asins, date=CURRENT):
    return [
        SignalItem(asin=asin, rank=i, click_share=0.3 / i, conversion_share=0.1 / i, report_date=date)
        for i, asin in enumerate(asins, 1)
    ]


class TestRefreshOrchestrator:
    """Tests for refresh_keyword_by_slug."""

    def setup_method(self):
        """Set up test fixtures."""
        self.keyword = Keyword(id=7, slug="wireless-mouse", keyword="wireless mouse", top_n=20,
                               status=KeywordStatus.ACTIVE, indexable=True)
        self.keywords = MagicMock()
        self.keywords.get_by_slug.return_value = self.keyword
        self.sheets = MagicMock()
        self.sheets.get_history.return_value = []
        self.asin_cache = MagicMock()
        self.asin_cache.ttl_days = 30
        self.asin_cache.negative_ttl_days = 7
        self.asin_cache.get.return_value = {}
        self.signals = MagicMock()
        self.signals.get_weekly_report_dates.return_value = [CURRENT, PREVIOUS]
        self.catalog = MagicMock()
        self.catalog.warm_paapi5.return_value = []
        self.locks = FakeLocks()
        self.sleeps = []

        self.asins = [f"B00000000{i}" for i in range(1, 7)]
        self.signals.get_keyword_asins.side_effect = lambda kw, date, limit: (
            items(self.asins) if date == CURRENT else items(list(reversed(self.asins)), PREVIOUS)
        )
        self.catalog.get_products_by_asins.side_effect = lambda asins: {
            a: product(a) for a in asins
        }

    def make_orchestrator(self):
        return RefreshOrchestrator(
            keywords=self.keywords,
            sheets=self.sheets,
            asin_cache=self.asin_cache,
            signals=self.signals,
            catalog=self.catalog,
            locks=self.locks,
            config=RefreshConfig(),
            sleep=self.sleeps.append,
            now=lambda: NOW,
        )

    def test_successful_refresh_publishes_sheet(self):
        """Complete data -> ACTIVE, indexable, sheet written."""
        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.ok is True
        assert result.updated is True
        assert result.data_period == CURRENT
        assert result.mode == RankSheetMode.NORMAL
        assert result.readiness_level == ReadinessLevel.FULL
        assert result.valid_count == 6
        assert result.stats["prev_report_date"] == PREVIOUS
        assert result.stats["buffer"] == 20

        state = self.keywords.update_state.call_args[0][1]
        assert state.status == KeywordStatus.ACTIVE
        assert state.indexable is True
        assert state.status_reason is None

        sheet = self.sheets.upsert.call_args[0][0]
        assert sheet.keyword_id == 7
        assert sheet.data_period == CURRENT
        assert sheet.report_date == datetime(2025, 3, 8, tzinfo=timezone.utc)
        assert [r.asin for r in sheet.rows] == self.asins
        self.sheets.get_history.assert_called_once_with(7, exclude_period=CURRENT)

    def test_lock_key_per_slug(self):
        """The lock key is derived from the slug."""
        self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")
        assert self.locks.keys == [lock_key_for("wireless-mouse")]

    def test_trend_uses_previous_period(self):
        """Previous ranks feed the trend delta."""
        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")
        assert result.ok
        rows = self.sheets.upsert.call_args[0][0].rows
        # First ASIN was rank 6 last period
        assert rows[0].trend_delta == 5

    def test_lock_busy(self):
        """Lock not acquired -> refresh_in_progress, nothing touched."""
        self.locks.acquired = False

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.ok is False
        assert result.error == "refresh_in_progress"
        self.keywords.get_by_slug.assert_not_called()

    def test_keyword_not_found(self):
        """Unknown slug -> keyword_not_found."""
        self.keywords.get_by_slug.return_value = None

        result = self.make_orchestrator().refresh_keyword_by_slug("nope")

        assert result.error == "keyword_not_found"
        self.keywords.update_state.assert_not_called()

    @pytest.mark.parametrize("is_active,status", [
        (False, KeywordStatus.ACTIVE),
        (True, KeywordStatus.PAUSED),
    ])
    def test_keyword_inactive(self, is_active, status):
        """Inactive or paused keywords are skipped."""
        self.keyword.is_active = is_active
        self.keyword.status = status

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.error == "keyword_inactive"
        self.signals.get_keyword_asins.assert_not_called()

    def test_invalid_report_date(self):
        """Malformed report dates are rejected before locking."""
        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse", report_date="08/03/2025")

        assert result.error == "invalid_report_date"
        assert self.locks.keys == []

    @pytest.mark.parametrize("report_date", ["2025-02-30", "2025-01-01\n", "2025-13-01"])
    def test_impossible_report_date(self, report_date):
        """Well-shaped but impossible dates never reach the keyword."""
        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse", report_date=report_date)

        assert result.ok is False
        assert result.error == "invalid_report_date"
        assert self.locks.keys == []
        self.signals.get_keyword_asins.assert_not_called()
        self.keywords.update_state.assert_not_called()

    def test_explicit_report_date_picks_older_previous(self):
        """With an explicit date, previous is the newest strictly older date."""
        self.signals.get_weekly_report_dates.return_value = ["2025-03-15", CURRENT, PREVIOUS]

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse", report_date=CURRENT)

        assert result.data_period == CURRENT
        assert result.stats["prev_report_date"] == PREVIOUS

    def test_no_report_dates(self):
        """No weekly reports -> no_report_date."""
        self.signals.get_weekly_report_dates.return_value = []

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.error == "no_report_date"

    def test_dry_run_persists_nothing(self):
        """Dry run computes the result without writes."""
        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse", dry_run=True)

        assert result.ok is True
        assert result.updated is False
        self.keywords.update_state.assert_not_called()
        self.sheets.upsert.assert_not_called()

    def test_low_readiness_warms_up_and_holds_sheet(self):
        """Incomplete cards trigger warm-up; still-low readiness is not published."""
        self.catalog.get_products_by_asins.side_effect = lambda asins: {
            a: product(a, complete=a in self.asins[:2]) for a in asins
        }
        self.catalog.warm_paapi5.return_value = ["job-1"]

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.ok is True
        assert result.updated is False
        assert result.readiness_level == ReadinessLevel.CRITICAL
        assert result.stats["warmup_jobs"] == 1
        self.catalog.warm_paapi5.assert_called_once_with(self.asins[2:])
        assert self.sleeps == [0.75]

        state = self.keywords.update_state.call_args[0][1]
        assert state.status == KeywordStatus.WARMING_UP
        assert state.indexable is False
        assert state.status_reason.startswith("Readiness=CRITICAL")
        self.sheets.upsert.assert_not_called()

    def test_warm_up_fills_missing_cards(self):
        """Cards fetched after warm-up raise readiness."""
        calls = []

        def fetch(asins):
            calls.append(list(asins))
            complete = len(calls) > 1
            return {a: product(a, complete=complete) for a in asins}

        self.catalog.get_products_by_asins.side_effect = fetch

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.readiness_level == ReadinessLevel.FULL
        assert result.updated is True

    def test_warm_up_failure_is_not_fatal(self):
        """A failing warm-up keeps the original readiness."""
        self.catalog.get_products_by_asins.side_effect = lambda asins: {
            a: product(a, complete=False) for a in asins
        }
        self.catalog.warm_paapi5.side_effect = RuntimeError("catalog down")

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.ok is True
        assert result.readiness_level == ReadinessLevel.CRITICAL

    def test_cache_hits_skip_catalog(self):
        """Cached ASINs are not fetched; NOT_FOUND entries stay cardless."""
        self.asin_cache.get.return_value = {
            self.asins[0]: AsinCacheEntry(asin=self.asins[0], title="Cached", brand="Acme",
                                          image_url="https://img/c.jpg"),
            self.asins[1]: AsinCacheEntry(asin=self.asins[1], status=CacheStatus.NOT_FOUND),
        }

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        fetched = self.catalog.get_products_by_asins.call_args_list[0][0][0]
        assert fetched == self.asins[2:]
        assert result.stats["cache_hits"] == 2
        assert result.stats["not_found_cached"] == 1

    def test_fetched_misses_cached_with_negative_ttl(self):
        """ASINs the catalog lacks are cached as NOT_FOUND for 7 days."""
        self.catalog.get_products_by_asins.side_effect = lambda asins: {
            a: product(a) for a in asins if a != self.asins[-1]
        }

        self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        entries = self.asin_cache.upsert.call_args_list[0][0][0]
        by_asin = {e.asin: e for e in entries}
        assert by_asin[self.asins[-1]].status == CacheStatus.NOT_FOUND
        assert by_asin[self.asins[-1]].ttl_days == 7
        assert by_asin[self.asins[0]].ttl_days == 30

    def test_corrupted_cache_entry_dropped(self):
        """A cached card that fails validation is not trusted."""
        self.asin_cache.get.return_value = {
            self.asins[0]: AsinCacheEntry(asin=self.asins[0], title=123, brand="Acme",
                                          image_url="https://img/c.jpg"),
        }

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.ok is True
        assert result.stats["cache_hits"] == 1
        assert result.stats["cache_corrupted"] == 1
        first_fetch = self.catalog.get_products_by_asins.call_args_list[0][0][0]
        assert first_fetch == self.asins[1:]
        # The cardless row is repaired by the warm-up re-fetch
        warm_fetch = self.catalog.get_products_by_asins.call_args_list[1][0][0]
        assert warm_fetch == [self.asins[0]]
        assert result.valid_count == 6

    @patch("ranksheet.cache.asin_cache.execute_values")
    def test_cache_write_failure_does_not_fail_refresh(self, mock_execute_values):
        """A failing cache upsert is logged and the refresh carries on."""
        db = MagicMock()
        cur = MagicMock()
        cur.fetchall.return_value = []
        db.connection.return_value.__enter__.return_value.cursor.return_value.__enter__.return_value = cur
        mock_execute_values.side_effect = TypeError("can't adapt type 'dict'")
        self.asin_cache = AsinCache(db, now=lambda: NOW)

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.ok is True
        assert result.updated is True
        mock_execute_values.assert_called_once()
        assert self.keywords.update_state.call_args[0][1].status == KeywordStatus.ACTIVE

    def test_variations_deduped(self):
        """Variants sharing a parent ASIN appear once."""
        self.catalog.get_products_by_asins.side_effect = lambda asins: {
            a: product(a, parentAsin="P1" if a in self.asins[:2] else None) for a in asins
        }

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.valid_count == 5
        assert result.stats["deduped_removed"] == 1
        rows = self.sheets.upsert.call_args[0][0].rows
        assert "Multiple Options" in rows[0].badges

    def test_sheet_failure_reverts_then_marks_error(self):
        """A failing sheet write reverts the keyword, then records ERROR."""
        self.sheets.upsert.side_effect = RuntimeError("disk full")

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.ok is False
        assert result.error == "refresh_failed"
        assert "disk full" in result.detail

        states = [c[0][1] for c in self.keywords.update_state.call_args_list]
        assert [s.status for s in states] == [KeywordStatus.ACTIVE, KeywordStatus.ACTIVE, KeywordStatus.ERROR]
        # Second write restores the pre-refresh state
        assert states[1].indexable is True
        assert states[1].last_refreshed_at is None
        assert states[2].indexable is False

    def test_upstream_exception_marks_error(self):
        """An unexpected exception leaves the keyword in ERROR."""
        self.signals.get_keyword_asins.side_effect = RuntimeError("signals down")

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.ok is False
        assert result.error == "refresh_failed"
        state = self.keywords.update_state.call_args[0][1]
        assert state.status == KeywordStatus.ERROR
        assert state.status_reason == "signals down"

    def test_dry_run_exception_does_not_mark_error(self):
        """Dry runs never write, even on failure."""
        self.signals.get_keyword_asins.side_effect = RuntimeError("signals down")

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse", dry_run=True)

        assert result.error == "refresh_failed"
        self.keywords.update_state.assert_not_called()

    def test_low_data_not_indexable(self):
        """Fewer than three valid rows -> WARMING_UP with a low-data reason."""
        self.asins = self.asins[:2]

        result = self.make_orchestrator().refresh_keyword_by_slug("wireless-mouse")

        assert result.mode == RankSheetMode.LOW_DATA
        assert result.updated is False
        state = self.keywords.update_state.call_args[0][1]
        assert state.status == KeywordStatus.WARMING_UP
        assert state.status_reason == "Low data (2 valid items)."
