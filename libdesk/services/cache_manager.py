"""
Redis-backed cache manager.
Falls back to an in-process TTL dictionary when Redis is unreachable.
"""

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import redis

from libdesk.config import settings

logger = logging.getLogger(__name__)

MEMORY_CACHE_LIMIT = 1000


class CacheManager:
    """Key/value cache with Redis first and memory as the fallback."""

    def __init__(self, namespace: str = "libdesk", use_redis: bool = True):
        self.namespace = namespace
        self.redis_client = None
        self.memory_cache: Dict[str, tuple] = {}
        self.memory_cache_lock = threading.RLock()
        self.cache_stats = {
            "hits": 0,
            "misses": 0,
            "redis_hits": 0,
            "memory_hits": 0,
        }
        if use_redis:
            self._init_redis()

    def _init_redis(self) -> None:
        try:
            self.redis_client = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=1,
                socket_timeout=1,
                retry_on_timeout=True,
                health_check_interval=30,
            )
            self.redis_client.ping()
            logger.info("Redis cache ready for namespace %s", self.namespace)
        except redis.RedisError as e:
            logger.warning("Redis unavailable (%s), using the memory cache only", e)
            self.redis_client = None

    def _make_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Optional[Any]:
        redis_missed = False
        if self.redis_client:
            try:
                data = self.redis_client.get(self._make_key(key))
                if data is not None:
                    self.cache_stats["hits"] += 1
                    self.cache_stats["redis_hits"] += 1
                    return json.loads(data)
                redis_missed = True
            except redis.RedisError as e:
                logger.warning("Redis get failed: %s", e)

        with self.memory_cache_lock:
            entry = self.memory_cache.get(key)
            if entry:
                value, expires_at, in_redis = entry
                # a key Redis no longer has was invalidated elsewhere
                if datetime.now() < expires_at and not (redis_missed and in_redis):
                    self.cache_stats["hits"] += 1
                    self.cache_stats["memory_hits"] += 1
                    return value
                del self.memory_cache[key]

        self.cache_stats["misses"] += 1
        return None

    def set(self, key: str, value: Any, ttl_seconds: int = 300) -> bool:
        """Store a value. Redis only receives JSON-serializable values."""
        in_redis = False
        if self.redis_client:
            try:
                self.redis_client.setex(self._make_key(key), ttl_seconds,
                                        json.dumps(value, default=str, ensure_ascii=False))
                in_redis = True
            except (TypeError, ValueError):
                logger.debug("Value for %s is not JSON serializable, kept in memory", key)
            except redis.RedisError as e:
                logger.warning("Redis set failed: %s", e)

        with self.memory_cache_lock:
            self.memory_cache[key] = (value, datetime.now() + timedelta(seconds=ttl_seconds), in_redis)
            if len(self.memory_cache) > MEMORY_CACHE_LIMIT:
                # drop the tenth of entries closest to expiry
                oldest = sorted(self.memory_cache.items(), key=lambda item: item[1][1])
                for k, _ in oldest[: MEMORY_CACHE_LIMIT // 10]:
                    self.memory_cache.pop(k, None)

        return True

    def delete(self, key: str) -> bool:
        redis_deleted = False
        if self.redis_client:
            try:
                redis_deleted = bool(self.redis_client.delete(self._make_key(key)))
            except redis.RedisError as e:
                logger.warning("Redis delete failed: %s", e)

        with self.memory_cache_lock:
            memory_deleted = self.memory_cache.pop(key, None) is not None

        return redis_deleted or memory_deleted

    def invalidate_pattern(self, pattern: str) -> int:
        """Drop every key matching a `prefix*` pattern."""
        count = 0
        if self.redis_client:
            try:
                keys = list(self.redis_client.scan_iter(self._make_key(pattern)))
                if keys:
                    count += self.redis_client.delete(*keys)
            except redis.RedisError as e:
                logger.warning("Redis pattern invalidation failed: %s", e)

        prefix = pattern.replace("*", "")
        with self.memory_cache_lock:
            for key in [k for k in self.memory_cache if k.startswith(prefix)]:
                self.memory_cache.pop(key, None)
                count += 1
        return count

    def clear(self) -> bool:
        redis_cleared = False
        if self.redis_client:
            try:
                keys = list(self.redis_client.scan_iter(self._make_key("*")))
                if keys:
                    self.redis_client.delete(*keys)
                redis_cleared = True
            except redis.RedisError as e:
                logger.warning("Redis clear failed: %s", e)

        with self.memory_cache_lock:
            self.memory_cache.clear()
        return redis_cleared

    def size(self) -> int:
        with self.memory_cache_lock:
            now = datetime.now()
            return sum(1 for _, expires_at, _ in self.memory_cache.values() if expires_at > now)

    def get_stats(self) -> Dict[str, Any]:
        stats = dict(self.cache_stats)
        stats["redis_available"] = self.redis_client is not None
        stats["memory_cache_size"] = len(self.memory_cache)
        total = stats["hits"] + stats["misses"]
        stats["hit_ratio"] = stats["hits"] / total if total else 0.0
        return stats


# Global cache shared by the API layer
cache_manager = CacheManager()
