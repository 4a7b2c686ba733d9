"""
Response cache.

Values are JSON encoded and kept in Redis under `<tag>:<suffix>` keys with
a TTL. Invalidating a tag removes every key under that prefix. When Redis is
not configured or a command fails, the cache falls back to an in-process
TTL store so endpoints keep working.
"""

import fnmatch
import json
import logging
import threading
import time
from typing import Any, Callable, Optional

import redis
from fastapi.encoders import jsonable_encoder

import config

logger = logging.getLogger(__name__)


class MemoryStore:
    def __init__(self):
        self._data = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at < time.monotonic():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._data[key] = (value, time.monotonic() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            keys = [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]
            for k in keys:
                del self._data[k]
            return len(keys)


class ResponseCache:
    def __init__(self, client: Optional[redis.Redis] = None, default_ttl: int = config.CACHE_TTL_SECONDS):
        self.client = client
        self.default_ttl = default_ttl
        self.memory = MemoryStore()

    @classmethod
    def from_url(cls, url: Optional[str]):
        if not url:
            logger.info("REDIS_URL not set, using in-memory response cache")
            return cls()
        client = redis.Redis.from_url(url, socket_connect_timeout=2, socket_timeout=1)
        return cls(client)

    @property
    def backend(self) -> str:
        return "redis" if self.client is not None else "memory"

    @staticmethod
    def key(tag: str, *parts: Any) -> str:
        return ":".join([tag] + [str(p) for p in parts if p is not None and p != ""])

    def get(self, key: str):
        raw = None
        if self.client is not None:
            try:
                raw = self.client.get(key)
            except redis.RedisError as e:
                logger.warning("Redis GET failed, using in-memory cache: %s", e)
                raw = self.memory.get(key)
        else:
            raw = self.memory.get(key)
        return json.loads(raw) if raw else None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        raw = json.dumps(jsonable_encoder(value))
        ttl = ttl or self.default_ttl
        if self.client is not None:
            try:
                self.client.setex(key, ttl, raw)
                return
            except redis.RedisError as e:
                logger.warning("Redis SET failed, using in-memory cache: %s", e)
        self.memory.set(key, raw, ttl)

    def remember(self, key: str, producer: Callable[[], Any], ttl: Optional[int] = None):
        """Return (value, hit); on a miss compute the value and store it."""
        cached = self.get(key)
        if cached is not None:
            return cached, True
        value = jsonable_encoder(producer())
        self.set(key, value, ttl)
        return value, False

    def delete(self, key: str) -> None:
        self.memory.delete(key)
        if self.client is not None:
            try:
                self.client.delete(key)
            except redis.RedisError as e:
                logger.warning("Redis DEL failed for %s: %s", key, e)

    def invalidate(self, *tags: str) -> None:
        """Drop every cached entry under the given tags."""
        for tag in tags:
            pattern = f"{tag}:*"
            self.memory.delete_pattern(pattern)
            if self.client is None:
                continue
            try:
                keys = list(self.client.scan_iter(match=pattern, count=500))
                if keys:
                    self.client.delete(*keys)
            except redis.RedisError as e:
                logger.warning("Redis invalidation failed for %s: %s", pattern, e)


def user_tags(user_id: str, *kinds: str):
    """Per-user cache tags; all of cart, orders and wallet when no kind is given."""
    return [f"{kind}:{user_id}" for kind in (kinds or ("cart", "orders", "wallet"))]


response_cache = ResponseCache.from_url(config.REDIS_URL)


def get_cache() -> ResponseCache:
    return response_cache
