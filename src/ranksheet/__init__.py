"""
RankSheet
=========

Keyword rank sheet refresh pipeline: pulls weekly search-term signals,
resolves product metadata through a cached catalog, dedupes variations,
scores and publishes a ranked sheet per keyword.

Packages:
    - data: configuration, upstream clients and domain models
    - db: connection pool, advisory locks, repositories, schema
    - cache: ASIN metadata cache and Redis cache
    - scoring: dedupe, readiness and rank scoring
    - orchestrator: single and batch refresh, maintenance, scheduler, CLI
    - jobs: durable job queue and background worker
"""

__version__ = "1.0.0"
