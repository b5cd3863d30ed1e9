from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

import redis


class CacheStore:
    """Key-value store with per-key TTL. Backend errors are raised, not hidden."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryCacheStore(CacheStore):
    def __init__(self, max_size: int = 1024, clock: Callable[[], float] = time.time):
        self.max_size = max_size
        self._clock = clock
        self._lock = threading.Lock()
        self._data: OrderedDict[str, tuple[float, str]] = OrderedDict()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._prune(self._clock())
            entry = self._data.get(key)
            return entry[1] if entry else None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._data[key] = (now + ttl_seconds, value)
            self._data.move_to_end(key)
            if len(self._data) > self.max_size:
                self._data.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def _prune(self, now: float) -> None:
        for k, (expires_at, _) in list(self._data.items()):
            if expires_at <= now:
                self._data.pop(k, None)


class RedisCacheStore(CacheStore):
    def __init__(self, url: str, socket_timeout: float = 2.0):
        self.url = url
        self._client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def get(self, key: str) -> Optional[str]:
        return self._client.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._client.setex(key, ttl_seconds, value)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def close(self) -> None:
        self._client.close()


def build_cache_store(backend: str, redis_url: str) -> CacheStore:
    if backend == "memory":
        return MemoryCacheStore()
    if backend == "redis":
        return RedisCacheStore(redis_url)
    raise ValueError(f"unknown cache backend {backend!r}")
