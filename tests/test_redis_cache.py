"""
Tests for the Redis report-date cache and its in-memory fallback.
"""

import json
from unittest.mock import MagicMock

import redis

from ranksheet.cache.redis_cache import RedisCache


class TestRedisCache:
    """Tests for RedisCache with an injected client."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = MagicMock()
        self.cache = RedisCache(prefix="rs-test", client=self.client)

    def test_get_decodes_json(self):
        self.client.get.return_value = json.dumps(["2025-03-08"])

        assert self.cache.get("signals:reports:weekly:10") == ["2025-03-08"]
        self.client.get.assert_called_once_with("rs-test:signals:reports:weekly:10")

    def test_set_with_ttl_uses_setex(self):
        assert self.cache.set("k", [1, 2], ttl_seconds=60) is True
        self.client.setex.assert_called_once_with("rs-test:k", 60, "[1, 2]")

    def test_redis_failure_falls_back_to_memory(self):
        """A Redis error degrades that call to the in-process cache."""
        self.client.setex.side_effect = redis.RedisError("down")
        self.client.get.side_effect = redis.RedisError("down")

        assert self.cache.set("k", ["v"], ttl_seconds=60) is True
        assert self.cache.get("k") == ["v"]

    def test_memory_backend_ttl_expiry(self):
        cache = RedisCache(prefix="rs-test", client=MagicMock())
        cache._use_memory = True

        cache.set("k", "v", ttl_seconds=0)
        assert cache.get("k") == "v"
        assert cache.delete("k") is True
        assert cache.get("k") is None
        assert cache.get_stats()["backend"] == "memory"
