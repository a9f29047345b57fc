"""
RankSheet Batch Refresh
=======================

Refreshes every active keyword with bounded parallelism.

Workers are threads pulling the next unprocessed index from a shared
counter; results keep the input order. One keyword failing never aborts
the batch.

Usage:
    result = refresh_all_keywords(orchestrator, keywords_repo, concurrency=3)
    print(result.get_summary())
"""

import logging
import threading
import time
from typing import Callable, List, Optional, Sequence, TypeVar

from ..data.models import BatchResult, RefreshResult
from ..db.repositories import KeywordRepository
from .refresh import ERROR_FAILED, RefreshOrchestrator, clamp_int

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10
DEFAULT_CONCURRENCY = 3
MIN_LIMIT = 1
MAX_LIMIT = 2000
DEFAULT_LIMIT = 500


def run_with_concurrency(
    items: Sequence[T],
    concurrency: int,
    fn: Callable[[T], R],
) -> List[R]:
    """
    Apply ``fn`` to every item with at most ``concurrency`` in flight.

    ``fn`` must not raise; wrap it if it can. Results are in input order.
    """
    n = len(items)
    results: List[Optional[R]] = [None] * n
    if n == 0:
        return []

    next_index = 0
    index_lock = threading.Lock()

    def worker():
        nonlocal next_index
        while True:
            with index_lock:
                if next_index >= n:
                    return
                i = next_index
                next_index += 1
            results[i] = fn(items[i])

    workers = [
        threading.Thread(target=worker, name=f"refresh-worker-{k}", daemon=True)
        for k in range(min(max(1, concurrency), n))
    ]
    for t in workers:
        t.start()
    for t in workers:
        t.join()

    return results  # type: ignore[return-value]


def refresh_all_keywords(
    orchestrator: RefreshOrchestrator,
    keywords: KeywordRepository,
    concurrency: Optional[int] = None,
    limit: Optional[int] = None,
) -> BatchResult:
    """
    Refresh active keywords, highest priority first.

    Args:
        orchestrator: Single-keyword refresher
        keywords: Keyword repository
        concurrency: Parallel refreshes (clamped to 1..10, default 3)
        limit: Maximum keywords to refresh (clamped to 1..2000, default 500)

    Returns:
        BatchResult with per-keyword results in priority order
    """
    concurrency = clamp_int(DEFAULT_CONCURRENCY if concurrency is None else concurrency,
                            MIN_CONCURRENCY, MAX_CONCURRENCY)
    limit = clamp_int(DEFAULT_LIMIT if limit is None else limit, MIN_LIMIT, MAX_LIMIT)

    batch = keywords.list_active(limit)
    logger.info(f"Batch refresh starting: {len(batch)} keywords, concurrency={concurrency}")
    started = time.monotonic()

    def refresh_one(slug: str) -> RefreshResult:
        try:
            return orchestrator.refresh_keyword_by_slug(slug)
        except Exception as e:
            logger.exception(f"Batch refresh of '{slug}' raised: {e}", extra={"slug": slug})
            return RefreshResult.failure(slug, ERROR_FAILED, str(e) or type(e).__name__)

    results = run_with_concurrency([k.slug for k in batch], concurrency, refresh_one)

    success = sum(1 for r in results if r.ok)
    result = BatchResult(
        total=len(results),
        success=success,
        failed=len(results) - success,
        results=results,
    )
    logger.info(
        f"Batch refresh finished in {time.monotonic() - started:.1f}s: "
        f"{result.success}/{result.total} succeeded, {result.failed} failed"
    )
    return result
