"""
RankSheet Orchestrator Module
=============================

Orchestration layer for keyword refreshes.

Components:
    - RefreshOrchestrator: refresh of one keyword under an advisory lock
    - refresh_all_keywords: bounded-concurrency batch refresh
    - Maintenance: ASIN cache cleanup, retry of failed keywords
    - RefreshScheduler and CLI (import from their modules)

Usage:
    from ranksheet.orchestrator import RefreshOrchestrator

    orchestrator = RefreshOrchestrator.from_database(get_database())
    result = orchestrator.refresh_keyword_by_slug("wireless-mouse")
"""

from .batch import refresh_all_keywords, run_with_concurrency
from .maintenance import CleanupResult, RetryResult, cleanup_asin_cache, retry_failed_keywords
from .refresh import PersistenceError, RefreshOrchestrator

__all__ = [
    "RefreshOrchestrator",
    "PersistenceError",
    "refresh_all_keywords",
    "run_with_concurrency",
    "CleanupResult",
    "RetryResult",
    "cleanup_asin_cache",
    "retry_failed_keywords",
]
