"""
Key-value stores for rate-limit records.

The gateway only needs get/put with a TTL, plus an atomic increment for
the stricter rate-limit strategy. Two backends:

- MemoryStore: dict with manual expiry. Per-process, so only suitable for
  tests and single-worker deployments.
- RedisStore: shared by every worker. JSON values, TTL via SET EX.
"""

from __future__ import annotations

import json
import time
from threading import Lock
from typing import Callable, Optional

import redis


class RateLimitStore:
    """Interface every rate-limit backend implements."""

    def get(self, key: str) -> Optional[dict]:
        raise NotImplementedError

    def put(self, key: str, record: dict, ttl_seconds: int) -> None:
        raise NotImplementedError

    def incr(self, key: str, ttl_seconds: int) -> int:
        """Atomically add one to a counter, creating it with the TTL if absent."""
        raise NotImplementedError


class MemoryStore(RateLimitStore):
    """In-process store: {key: (value, expires_at)}.

    Expired entries are dropped when read. The clock is injectable so tests
    can move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[object, float]] = {}
        self._lock = Lock()

    def _live(self, key: str):
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            value = self._live(key)
        # Copies keep callers from mutating stored records
        return dict(value) if isinstance(value, dict) else value

    def put(self, key: str, record: dict, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (dict(record), self._clock() + ttl_seconds)

    def incr(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                self._data[key] = (1, self._clock() + ttl_seconds)
                return 1
            count = int(current) + 1
            self._data[key] = (count, self._data[key][1])
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisStore(RateLimitStore):
    """Redis-backed store shared across gateway workers."""

    def __init__(self, client: "redis.Redis") -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 0.5) -> "RedisStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    def get(self, key: str) -> Optional[dict]:
        raw = self._redis.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def put(self, key: str, record: dict, ttl_seconds: int) -> None:
        self._redis.set(key, json.dumps(record), ex=ttl_seconds)

    def incr(self, key: str, ttl_seconds: int) -> int:
        # SET NX seeds the counter with its TTL; INCR never touches the TTL
        pipe = self._redis.pipeline(transaction=True)
        pipe.set(key, 0, ex=ttl_seconds, nx=True)
        pipe.incr(key)
        _, count = pipe.execute()
        return int(count)
