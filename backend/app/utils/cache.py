"""
Read-through cache for analytics payloads.

Redis is used when REDIS_URL is reachable; otherwise an in-process TTL map
serves the same interface. Values must be JSON-serialisable.

Usage:
    from app.utils.cache import cache, profile_cache_key

    profile = cache.get_or_set(profile_cache_key(user_id), build_profile, ttl=300)
    invalidate_user_cache(user_id)
"""

import os
import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

PROFILE_KEY_PREFIX = "cognitive_profile"
PATTERNS_KEY_PREFIX = "clinical_patterns"
HOT_TOPICS_KEY_PREFIX = "hot_topics"


def profile_cache_key(user_id: str) -> str:
    return f"{PROFILE_KEY_PREFIX}:{user_id}"


def patterns_cache_key(user_id: str, days_back: int) -> str:
    return f"{PATTERNS_KEY_PREFIX}:{user_id}:{days_back}"


def hot_topics_cache_key(user_id: str) -> str:
    return f"{HOT_TOPICS_KEY_PREFIX}:{user_id}"


class TTLCache:
    """Thread-safe in-memory map whose entries expire after a TTL."""

    def __init__(
        self,
        maxsize: int = 1000,
        default_ttl: int = 300,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self._entries: Dict[str, Tuple[Any, datetime]] = {}
        self._lock = threading.Lock()
        self.maxsize = maxsize
        self.default_ttl = default_ttl
        self.clock = clock

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self.clock() < expires_at:
                return value
            del self._entries[key]
        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = self.clock() + timedelta(seconds=self.default_ttl if ttl is None else ttl)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.maxsize:
                # Evict whichever entry expires soonest
                soonest = min(self._entries.items(), key=lambda item: item[1][1])[0]
                del self._entries[soonest]
            self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)


class RedisCache:
    """Redis-backed cache storing JSON strings with SETEX."""

    def __init__(self, redis_url: Optional[str] = None, default_ttl: int = 300):
        self.default_ttl = default_ttl
        self._client = None
        self._redis_url = redis_url or os.getenv("REDIS_URL")

        if self._redis_url:
            try:
                import redis
                self._client = redis.from_url(
                    self._redis_url,
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                )
                self._client.ping()
                logger.info("Analytics cache connected to Redis")
            except Exception as e:
                logger.warning(f"Redis unavailable, analytics cache stays in memory: {e}")
                self._client = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def get(self, key: str) -> Optional[Any]:
        if not self._client:
            return None
        try:
            raw = self._client.get(key)
            return json.loads(raw) if raw else None
        except Exception as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self._client:
            return False
        try:
            self._client.setex(key, self.default_ttl if ttl is None else ttl, json.dumps(value, default=str))
            return True
        except Exception as e:
            logger.warning(f"Redis set failed for {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        if not self._client:
            return False
        try:
            return self._client.delete(key) > 0
        except Exception as e:
            logger.warning(f"Redis delete failed for {key}: {e}")
            return False

    def delete_prefix(self, prefix: str) -> int:
        if not self._client:
            return 0
        try:
            keys = list(self._client.scan_iter(match=f"{prefix}*"))
            return self._client.delete(*keys) if keys else 0
        except Exception as e:
            logger.warning(f"Redis prefix delete failed for {prefix}: {e}")
            return 0


class HybridCache:
    """Redis when connected, in-memory otherwise."""

    def __init__(self, maxsize: int = 1000, default_ttl: int = 300):
        self.default_ttl = default_ttl
        self._redis = RedisCache(default_ttl=default_ttl)
        self._local = TTLCache(maxsize=maxsize, default_ttl=default_ttl)

    @property
    def backend(self) -> str:
        return "redis" if self._redis.is_connected else "memory"

    @property
    def _store(self):
        return self._redis if self._redis.is_connected else self._local

    def get(self, key: str) -> Optional[Any]:
        return self._store.get(key)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self._store.set(key, value, self.default_ttl if ttl is None else ttl)

    def delete(self, key: str) -> bool:
        return self._store.delete(key)

    def delete_prefix(self, prefix: str) -> int:
        return self._store.delete_prefix(prefix)

    def clear(self) -> None:
        """Drop every analytics entry from whichever store is active."""
        for prefix in (PROFILE_KEY_PREFIX, PATTERNS_KEY_PREFIX, HOT_TOPICS_KEY_PREFIX):
            self.delete_prefix(f"{prefix}:")

    def get_or_set(self, key: str, factory: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        """Return the cached value, computing and storing it on a miss."""
        value = self.get(key)
        if value is not None:
            return value

        value = factory()
        if value is not None:
            self.set(key, value, ttl)
        return value


# Global cache instance
cache = HybridCache(maxsize=1000, default_ttl=300)


def invalidate_user_cache(user_id: str) -> None:
    """Drop every cached analytics payload for a user."""
    cache.delete(profile_cache_key(user_id))
    cache.delete_prefix(f"{PATTERNS_KEY_PREFIX}:{user_id}:")
    cache.delete(hot_topics_cache_key(user_id))
