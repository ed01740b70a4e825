from __future__ import annotations

import json
import logging
import os
import time
from threading import Lock
from typing import Any

import redis

from storefront_chat.core.metrics import metrics

logger = logging.getLogger(__name__)


class MemoryCache:
    def __init__(self) -> None:
        self._store: dict[str, tuple[float | None, Any]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Any | None:
        now = time.time()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at is not None and expires_at <= now:
                self._store.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = None
        if ttl is not None:
            expires_at = time.time() + ttl
        with self._lock:
            self._store[key] = (expires_at, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)


class CacheClient:
    """JSON cache backed by Redis when a URL is configured, otherwise process memory."""

    def __init__(self, redis_url: str | None) -> None:
        self._redis: redis.Redis | None = None
        self._local = MemoryCache()
        self._redis_enabled = False
        if redis_url:
            try:
                self._redis = redis.Redis.from_url(redis_url, decode_responses=True)
                self._redis_enabled = True
            except Exception as exc:
                logger.warning("cache redis init failed, using memory: %s", exc)
                self._redis = None
                self._redis_enabled = False

    @property
    def backend(self) -> str:
        return "redis" if self._redis_enabled else "memory"

    def get_json(self, key: str) -> Any | None:
        if self._redis_enabled and self._redis is not None:
            try:
                value = self._redis.get(key)
                if value is None:
                    return None
                return json.loads(value)
            except Exception as exc:
                logger.warning("cache redis get failed: %s", exc)
                metrics.inc("sc_cache_errors_total", {"op": "get"})
        return self._local.get(key)

    def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        if self._redis_enabled and self._redis is not None:
            try:
                payload = json.dumps(value, ensure_ascii=False)
                if ttl is not None:
                    self._redis.setex(key, ttl, payload)
                else:
                    self._redis.set(key, payload)
                return
            except Exception as exc:
                logger.warning("cache redis set failed: %s", exc)
                metrics.inc("sc_cache_errors_total", {"op": "set"})
        self._local.set(key, value, ttl)

    def delete(self, key: str) -> None:
        if self._redis_enabled and self._redis is not None:
            try:
                self._redis.delete(key)
            except Exception as exc:
                logger.warning("cache redis delete failed: %s", exc)
                metrics.inc("sc_cache_errors_total", {"op": "delete"})
        self._local.delete(key)


_cache: CacheClient | None = None


def get_cache() -> CacheClient:
    global _cache
    if _cache is not None:
        return _cache
    _cache = CacheClient(os.getenv("REDIS_URL"))
    return _cache


def reset_cache() -> None:
    global _cache
    _cache = None
