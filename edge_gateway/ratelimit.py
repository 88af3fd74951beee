"""
Per-client fixed-window rate limiting.

Records live in an external store keyed by client IP, so every worker in
the deployment shares the same counters.

Note: the default limiter is best-effort. The read, the decision and the
write are separate store calls, so two concurrent requests from one client
can both see the same count and both be let through. Under that race the
real number of requests in a window can exceed max_requests. Use the
"atomic" strategy when the quota has to hold exactly.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from edge_gateway.config import RateLimitSettings
from edge_gateway.events import EventLog
from edge_gateway.store import RateLimitStore

logger = logging.getLogger(__name__)


def rate_limit_key(client_id: str) -> str:
    """Synthetic URL used as the store key for a client."""
    return f"https://ratelimit/{client_id}"


@dataclass(frozen=True)
class RateLimitRecord:
    count: int
    timestamp: int  # window start, epoch milliseconds

    def to_dict(self) -> dict:
        return {"count": self.count, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict) -> "RateLimitRecord":
        return cls(count=int(data["count"]), timestamp=int(data["timestamp"]))


class RateLimiter:
    """Best-effort fixed-window limiter (get, decide, put)."""

    def __init__(
        self,
        settings: RateLimitSettings,
        store: RateLimitStore,
        events: Optional[EventLog] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store
        self.events = events or EventLog(enabled=False)
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def check(self, client_id: str) -> bool:
        """Return True if the client may proceed, charging one request.

        Store failures fail open: the error is logged and the request is
        allowed.
        """
        if not self.settings.enabled:
            return True

        try:
            return self._check(client_id)
        except Exception as e:
            self.events.error("Rate limit error", ip=client_id, error=str(e))
            return True

    def _check(self, client_id: str) -> bool:
        key = rate_limit_key(client_id)
        ttl = self.settings.window_seconds
        now = self._now_ms()

        cached = self.store.get(key)
        if cached is None:
            self.store.put(key, RateLimitRecord(1, now).to_dict(), ttl)
            return True

        record = RateLimitRecord.from_dict(cached)
        window_start = now - ttl * 1000

        if record.timestamp < window_start:
            self.store.put(key, RateLimitRecord(1, now).to_dict(), ttl)
            return True

        if record.count >= self.settings.max_requests:
            return False

        self.store.put(key, RateLimitRecord(record.count + 1, record.timestamp).to_dict(), ttl)
        return True


class AtomicRateLimiter(RateLimiter):
    """Fixed-window limiter built on the store's atomic increment.

    The window starts at the client's first request and ends when the
    counter's TTL expires. Denied requests still bump the counter, which
    only matters until the key expires.
    """

    def _check(self, client_id: str) -> bool:
        count = self.store.incr(rate_limit_key(client_id), self.settings.window_seconds)
        return count <= self.settings.max_requests


def build_rate_limiter(
    settings: RateLimitSettings,
    store: RateLimitStore,
    events: Optional[EventLog] = None,
    clock: Callable[[], float] = time.time,
) -> RateLimiter:
    if settings.strategy == "atomic":
        logger.info("Rate limit strategy: atomic")
        return AtomicRateLimiter(settings, store, events, clock)
    return RateLimiter(settings, store, events, clock)
