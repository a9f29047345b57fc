"""
RankSheet Maintenance Jobs
==========================

Housekeeping run by the scheduler or the CLI:
    - cleanup_asin_cache: delete cache rows expired beyond a grace window
    - retry_failed_keywords: re-run refreshes for keywords stuck in ERROR
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict

from ..cache.asin_cache import DEFAULT_CLEANUP_GRACE_DAYS, AsinCache
from ..data.models import KeywordStatus
from ..db.repositories import KeywordRepository
from .refresh import RefreshOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    """Outcome of an ASIN cache cleanup."""
    expired_count: int
    deleted_count: int
    dry_run: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RetryResult:
    """Outcome of a failed-keyword retry pass."""
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def cleanup_asin_cache(
    cache: AsinCache,
    dry_run: bool = False,
    older_than_days: int = DEFAULT_CLEANUP_GRACE_DAYS,
) -> CleanupResult:
    """Delete (or, in dry-run, count) entries expired more than ``older_than_days`` ago."""
    if dry_run:
        expired = cache.count_expired(older_than_days)
        logger.info(f"ASIN cache cleanup dry run: {expired} entries would be deleted")
        return CleanupResult(expired_count=expired, deleted_count=0, dry_run=True)

    deleted = cache.clean_expired(older_than_days)
    return CleanupResult(expired_count=deleted, deleted_count=deleted, dry_run=False)


def retry_failed_keywords(
    orchestrator: RefreshOrchestrator,
    keywords: KeywordRepository,
    limit: int = 10,
    dry_run: bool = False,
    pause: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryResult:
    """
    Re-refresh active keywords in ERROR status, most recently refreshed first.

    A successful refresh sets the keyword's status through the normal
    publish gate.
    """
    failed_keywords = keywords.list_by_status(KeywordStatus.ERROR, limit)
    logger.info(f"Retrying {len(failed_keywords)} keywords in ERROR status")

    result = RetryResult()
    for i, keyword in enumerate(failed_keywords):
        result.attempted += 1
        if dry_run:
            continue

        try:
            refreshed = orchestrator.refresh_keyword_by_slug(keyword.slug)
        except Exception as e:
            result.failed += 1
            logger.error(f"Retry of '{keyword.slug}' raised: {e}", extra={"slug": keyword.slug})
        else:
            if refreshed.ok:
                result.succeeded += 1
                logger.info(f"Retry of '{keyword.slug}' succeeded", extra={"slug": keyword.slug})
            else:
                result.failed += 1
                logger.warning(
                    f"Retry of '{keyword.slug}' failed: {refreshed.error}",
                    extra={"slug": keyword.slug},
                )

        if pause > 0 and i < len(failed_keywords) - 1:
            sleep(pause)

    logger.info(
        f"Retry pass done: attempted={result.attempted} "
        f"succeeded={result.succeeded} failed={result.failed}"
    )
    return result
