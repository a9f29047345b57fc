"""
RankSheet Cache Module
======================

Two caches:
    - AsinCache: PostgreSQL cache of product cards with TTL and NOT_FOUND negatives
    - RedisCache: Redis-based cache with fallback to in-memory (report dates)

Usage:
    from ranksheet.cache import get_cache

    cache = get_cache()
    cache.set("key", {"data": "value"}, ttl_seconds=3600)
    result = cache.get("key")
"""

from .asin_cache import AsinCache
from .redis_cache import RedisCache, get_cache

__all__ = ["AsinCache", "RedisCache", "get_cache"]
