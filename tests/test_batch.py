"""
Tests for batch refresh and maintenance jobs.
"""

import threading
import time
from unittest.mock import MagicMock

from ranksheet.data.models import Keyword, KeywordStatus, RefreshResult
from ranksheet.orchestrator.batch import refresh_all_keywords, run_with_concurrency
from ranksheet.orchestrator.maintenance import cleanup_asin_cache, retry_failed_keywords


def keywords_repo(slugs):
    repo = MagicMock()
    repo.list_active.return_value = [Keyword(id=i, slug=s, keyword=s) for i, s in enumerate(slugs, 1)]
    repo.list_by_status.return_value = [
        Keyword(id=i, slug=s, keyword=s, status=KeywordStatus.ERROR) for i, s in enumerate(slugs, 1)
    ]
    return repo


class TestRunWithConcurrency:
    """Tests for the bounded worker pool."""

    def test_results_keep_input_order(self):
        """Results line up with inputs regardless of completion order."""
        def slow_for_small(n):
            time.sleep(0.01 * (5 - n))
            return n * 10

        assert run_with_concurrency([1, 2, 3, 4], 3, slow_for_small) == [10, 20, 30, 40]

    def test_concurrency_bound(self):
        """Never more than ``concurrency`` calls in flight."""
        lock = threading.Lock()
        in_flight = [0]
        peak = [0]

        def work(n):
            with lock:
                in_flight[0] += 1
                peak[0] = max(peak[0], in_flight[0])
            time.sleep(0.01)
            with lock:
                in_flight[0] -= 1
            return n

        run_with_concurrency(list(range(20)), 3, work)
        assert peak[0] <= 3

    def test_empty(self):
        """No items -> no results."""
        assert run_with_concurrency([], 3, lambda x: x) == []


class TestRefreshAllKeywords:
    """Tests for refresh_all_keywords."""

    def setup_method(self):
        """Set up test fixtures."""
        self.orchestrator = MagicMock()

    def test_failures_isolated(self):
        """One raising keyword becomes a refresh_failed result."""
        def refresh(slug):
            if slug == "b":
                raise RuntimeError("boom")
            return RefreshResult(ok=True, slug=slug)

        self.orchestrator.refresh_keyword_by_slug.side_effect = refresh
        result = refresh_all_keywords(self.orchestrator, keywords_repo(["a", "b", "c"]), concurrency=2)

        assert result.total == 3
        assert result.success == 2
        assert result.failed == 1
        assert [r.slug for r in result.results] == ["a", "b", "c"]
        assert result.results[1].error == "refresh_failed"
        assert result.results[1].detail == "boom"

    def test_limit_clamped(self):
        """Limit is clamped to 1..2000 before listing keywords."""
        repo = keywords_repo([])
        refresh_all_keywords(self.orchestrator, repo, limit=5000)
        repo.list_active.assert_called_with(2000)

        refresh_all_keywords(self.orchestrator, repo, limit=0)
        repo.list_active.assert_called_with(1)

    def test_default_limit(self):
        """No limit -> 500."""
        repo = keywords_repo([])
        refresh_all_keywords(self.orchestrator, repo)
        repo.list_active.assert_called_with(500)

    def test_summary_sample(self):
        """Summary lists failed slugs with their errors."""
        self.orchestrator.refresh_keyword_by_slug.side_effect = lambda slug: RefreshResult.failure(
            slug, "keyword_inactive",
        )
        result = refresh_all_keywords(self.orchestrator, keywords_repo(["a"]))

        assert result.get_summary() == {
            "total": 1,
            "success": 0,
            "failed": 1,
            "sample_errors": [{"slug": "a", "error": "keyword_inactive", "detail": None}],
        }


class TestMaintenance:
    """Tests for cache cleanup and failed keyword retry."""

    def test_cleanup_dry_run_only_counts(self):
        """Dry run counts without deleting."""
        cache = MagicMock()
        cache.count_expired.return_value = 12

        result = cleanup_asin_cache(cache, dry_run=True)

        assert result.to_dict() == {"expired_count": 12, "deleted_count": 0, "dry_run": True}
        cache.clean_expired.assert_not_called()

    def test_cleanup_deletes(self):
        """Real run deletes with the grace window."""
        cache = MagicMock()
        cache.clean_expired.return_value = 4

        result = cleanup_asin_cache(cache, older_than_days=30)

        cache.clean_expired.assert_called_once_with(30)
        assert result.deleted_count == 4

    def test_retry_failed_counts(self):
        """Successes and failures are tallied; pauses sit between keywords."""
        orchestrator = MagicMock()
        orchestrator.refresh_keyword_by_slug.side_effect = [
            RefreshResult(ok=True, slug="a"),
            RefreshResult.failure("b", "refresh_failed"),
            RuntimeError("boom"),
        ]
        repo = keywords_repo(["a", "b", "c"])
        sleeps = []

        result = retry_failed_keywords(orchestrator, repo, limit=3, sleep=sleeps.append)

        repo.list_by_status.assert_called_once_with(KeywordStatus.ERROR, 3)
        assert result.to_dict() == {"attempted": 3, "succeeded": 1, "failed": 2}
        assert sleeps == [1.0, 1.0]

    def test_retry_dry_run(self):
        """Dry run lists without refreshing."""
        orchestrator = MagicMock()
        result = retry_failed_keywords(orchestrator, keywords_repo(["a", "b"]), dry_run=True, sleep=lambda s: None)

        assert result.attempted == 2
        orchestrator.refresh_keyword_by_slug.assert_not_called()
