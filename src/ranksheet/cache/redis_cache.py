"""
Redis Cache for RankSheet
=========================

Short-lived JSON cache for upstream lookups that change rarely (weekly
report dates), with automatic fallback to an in-process cache.

Features:
    - TTL-based expiration
    - JSON serialization
    - Fallback to in-memory if Redis unavailable
    - Namespace prefixing for key isolation

Usage:
    cache = RedisCache()
    cache.set("signals:reports:weekly:10", ["2025-06-01"], ttl_seconds=21600)
    dates = cache.get("signals:reports:weekly:10")

Environment variables:
    REDIS_URL - Full Redis URL (redis://host:port/db)
    REDIS_HOST - Redis host (default: localhost)
    REDIS_PORT - Redis port (default: 6379)
    REDIS_DB - Redis database number (default: 0)
    REDIS_PASSWORD - Redis password (optional)
    CACHE_PREFIX - Key prefix (default: ranksheet)
"""

import os
import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Tuple

import redis

logger = logging.getLogger(__name__)

# Global cache instance (singleton)
_cache_instance: Optional["RedisCache"] = None
_cache_lock = threading.Lock()


def _build_url() -> str:
    host = os.getenv("REDIS_HOST", "localhost")
    port = int(os.getenv("REDIS_PORT", "6379"))
    db = int(os.getenv("REDIS_DB", "0"))
    password = os.getenv("REDIS_PASSWORD")

    if password:
        return f"redis://:{password}@{host}:{port}/{db}"
    return f"redis://{host}:{port}/{db}"


class RedisCache:
    """
    Redis-based cache with in-memory fallback.

    Any Redis failure degrades to the memory cache for that call; cache
    errors never propagate to callers.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        """
        Initialize Redis cache.

        Args:
            redis_url: Optional Redis URL. If None, reads from env.
            prefix: Key prefix for namespace isolation.
            client: Pre-built redis client (skips connection setup).
        """
        self.prefix = prefix or os.getenv("CACHE_PREFIX", "ranksheet")
        self._redis: Optional[Any] = client
        self._memory_cache: Dict[str, Tuple[Optional[datetime], Any]] = {}
        self._memory_lock = threading.Lock()
        self._use_memory = False

        if client is None:
            self._connect(redis_url)

    def _connect(self, redis_url: Optional[str] = None) -> None:
        """Establish Redis connection."""
        url = redis_url or os.getenv("REDIS_URL") or _build_url()

        try:
            self._redis = redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
            self._redis.ping()
            logger.info(f"Redis cache connected: {url.split('@')[-1] if '@' in url else url}")
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e}. Using in-memory cache.")
            self._redis = None
            self._use_memory = True

    def _make_key(self, key: str) -> str:
        """Create prefixed key."""
        return f"{self.prefix}:{key}"

    @property
    def backend(self) -> str:
        return "memory" if self._use_memory or self._redis is None else "redis"

    def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Returns:
            Cached value or None if not found/expired
        """
        full_key = self._make_key(key)

        if self.backend == "memory":
            return self._memory_get(full_key)

        try:
            value = self._redis.get(full_key)
            if value is None:
                return None
            return json.loads(value)
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Redis get failed: {e}")
            return self._memory_get(full_key)

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache (must be JSON serializable)
            ttl_seconds: Time to live in seconds

        Returns:
            True if successful
        """
        full_key = self._make_key(key)

        if self.backend == "memory":
            return self._memory_set(full_key, value, ttl_seconds)

        try:
            serialized = json.dumps(value)
            if ttl_seconds:
                self._redis.setex(full_key, ttl_seconds, serialized)
            else:
                self._redis.set(full_key, serialized)
            return True
        except (redis.RedisError, TypeError) as e:
            logger.warning(f"Redis set failed: {e}")
            return self._memory_set(full_key, value, ttl_seconds)

    def delete(self, key: str) -> bool:
        """Delete key from cache. Returns True if a key was removed."""
        full_key = self._make_key(key)

        if self.backend == "memory":
            return self._memory_delete(full_key)

        try:
            return self._redis.delete(full_key) > 0
        except redis.RedisError as e:
            logger.warning(f"Redis delete failed: {e}")
            return self._memory_delete(full_key)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        stats: Dict[str, Any] = {
            "backend": self.backend,
            "connected": self.backend == "redis",
        }

        if self.backend == "memory":
            stats["memory_keys"] = len(self._memory_cache)
        else:
            try:
                stats["redis_keys"] = self._redis.dbsize()
            except redis.RedisError as e:
                logger.warning(f"Redis stats failed: {e}")

        return stats

    # =========================================================================
    # MEMORY FALLBACK
    # =========================================================================

    def _memory_get(self, key: str) -> Optional[Any]:
        """Get from in-memory cache."""
        with self._memory_lock:
            if key not in self._memory_cache:
                return None

            expires_at, value = self._memory_cache[key]
            if expires_at and datetime.utcnow() > expires_at:
                del self._memory_cache[key]
                return None

            return value

    def _memory_set(self, key: str, value: Any, ttl_seconds: Optional[int]) -> bool:
        """Set in in-memory cache."""
        expires_at = None
        if ttl_seconds:
            expires_at = datetime.utcnow() + timedelta(seconds=ttl_seconds)

        with self._memory_lock:
            self._memory_cache[key] = (expires_at, value)
        return True

    def _memory_delete(self, key: str) -> bool:
        """Delete from in-memory cache."""
        with self._memory_lock:
            return self._memory_cache.pop(key, None) is not None

    def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            try:
                self._redis.close()
            except redis.RedisError as e:
                logger.debug(f"Redis close failed: {e}")
            self._redis = None


def get_cache(redis_url: Optional[str] = None, force_new: bool = False) -> RedisCache:
    """
    Get singleton cache instance.

    Args:
        redis_url: Optional Redis URL (only used if creating new instance)
        force_new: If True, create new instance even if one exists

    Returns:
        RedisCache instance
    """
    global _cache_instance

    with _cache_lock:
        if _cache_instance is None or force_new:
            _cache_instance = RedisCache(redis_url=redis_url)
        return _cache_instance
