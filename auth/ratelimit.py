"""
auth/ratelimit.py -- Per-source login attempt limiter.

Every password login attempt from a client IP counts against a fixed window
(default 100 attempts per 15 minutes). The window opens on the first attempt
and resets when it elapses; attempt N+1 inside the window raises
TooManyAttempts.

Backed by the `limits` library (the engine underneath slowapi). The storage
URI selects the backend: "memory://" keeps counters in this process (lost on
restart, expired buckets evicted by the storage itself); "redis://..." shares
them across workers. Call sites only see LoginRateLimiter.check(), so swapping
the backend is a configuration change.

Thread safety: limits' storages guard their counters with locks (memory) or
atomic INCR (redis), so concurrent requests never lose an increment.
"""

from __future__ import annotations

import logging
import time

from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter

from auth.errors import TooManyAttempts

logger = logging.getLogger("enisi.auth.ratelimit")

_NAMESPACE = "login"


class LoginRateLimiter:
    """Fixed-window attempt counter keyed by source address.

    Usage:
        limiter = LoginRateLimiter(attempts=100, window_seconds=900)
        limiter.check("203.0.113.7")   # raises TooManyAttempts once exhausted
    """

    def __init__(self, attempts: int = 100, window_seconds: int = 900, storage_uri: str = "memory://") -> None:
        self.attempts = attempts
        self.window_seconds = window_seconds
        self._item = RateLimitItemPerSecond(attempts, window_seconds)
        self._storage = storage_from_string(storage_uri)
        self._strategy = FixedWindowRateLimiter(self._storage)

    def check(self, key: str) -> None:
        """Count one attempt for key. Raises TooManyAttempts past the capacity."""
        if self._strategy.hit(self._item, _NAMESPACE, key):
            return
        reset_time, _remaining = self._strategy.get_window_stats(self._item, _NAMESPACE, key)
        retry_after = max(1, int(reset_time - time.time()))
        logger.warning("Login rate limit exceeded for %s (retry in %ds)", key, retry_after)
        raise TooManyAttempts(retry_after=retry_after)

    def remaining(self, key: str) -> int:
        _reset_time, remaining = self._strategy.get_window_stats(self._item, _NAMESPACE, key)
        return remaining

    def reset(self, key: str) -> None:
        self._strategy.clear(self._item, _NAMESPACE, key)
