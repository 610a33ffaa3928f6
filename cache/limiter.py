"""
cache/limiter.py -- Fixed-window attempt counter on Redis.

Used for login attempts ("login:<email>") and password reset requests
("reset:<email>"). Each key holds an integer hit count whose TTL is the rest
of the current window.

Algorithm (per call to limit()):
  1. GET the count (missing key = 0). At or above max -> LimitExceeded.
  2. INCR. Redis increments atomically, so concurrent callers each get a
     distinct result.
  3. If INCR returned 1 this call opened the window: PEXPIRE it. Later hits
     never touch the expiry, which is what makes the window fixed.
  4. If INCR returned more than max, another caller took the last slot
     between steps 1 and 2 -> LimitExceeded.

Bursts of up to 2 * max across a window boundary are possible. That is the
accepted cost of a fixed window.

A counter with no TTL (process died between INCR and PEXPIRE) would block
its key forever; when one is found at the limit the window is applied again.

Layer rule: no imports from api/, auth/, or sessions/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

import redis

from core.errors import LimitExceeded

logger = logging.getLogger("gatehouse.limiter")

# PTTL sentinels
_NO_KEY = -2
_NO_EXPIRY = -1


def _as_timedelta(window: timedelta | int | float) -> timedelta:
    if isinstance(window, timedelta):
        return window
    return timedelta(seconds=window)


def _ms(window: timedelta) -> int:
    return max(1, int(window.total_seconds() * 1000))


class RateLimiter:
    """Per-key fixed-window limiter.

    Usage:
        limiter = RateLimiter(create_redis())
        limiter.limit("login:a@b.com", 5, timedelta(minutes=15))
        ...
        limiter.reset("login:a@b.com")   # after a successful login
    """

    def __init__(self, client: redis.Redis) -> None:
        self.redis = client

    def limit(self, key: str, max_attempts: int, window: timedelta | int | float) -> None:
        """Count one attempt against ``key``; raise LimitExceeded if none are left."""
        window = _as_timedelta(window)

        current = self.redis.get(key)
        count = int(current) if current is not None else 0
        if count >= max_attempts:
            raise LimitExceeded(self._remaining(key, window), max_attempts)

        count = self.redis.incr(key)
        if count == 1:
            self.redis.pexpire(key, _ms(window))
        elif count > max_attempts:
            raise LimitExceeded(self._remaining(key, window), max_attempts)

    def ttl(self, key: str, max_attempts: int) -> timedelta:
        """Time until ``key`` may be used again. Zero while below the limit."""
        current = self.redis.get(key)
        if current is None or int(current) < max_attempts:
            return timedelta(0)
        remaining = self.redis.pttl(key)
        if remaining < 0:
            return timedelta(0)
        return timedelta(milliseconds=remaining)

    def reset(self, key: str) -> None:
        """Forget every attempt counted against ``key``."""
        self.redis.delete(key)

    def _remaining(self, key: str, window: timedelta) -> timedelta:
        remaining = self.redis.pttl(key)
        if remaining == _NO_EXPIRY:
            logger.warning("Rate limit counter %s had no expiry; reapplying window", key)
            self.redis.pexpire(key, _ms(window))
            return window
        if remaining == _NO_KEY:
            return timedelta(0)
        return timedelta(milliseconds=remaining)
