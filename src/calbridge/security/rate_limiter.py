"""In-memory token-bucket rate limiter for the OAuth endpoints.

Pre-configured tiers:
  - auth:  1 req/s, burst  5  (/register, /authorize)
  - api:  10 req/s, burst 30  (/token, /revoke)
"""

from __future__ import annotations

import math
import time

__all__ = [
    "RateLimiter",
    "RateLimitInfo",
    "api_limiter",
    "auth_limiter",
    "cleanup_all",
    "reset_all",
]


class _Bucket:
    """A single token bucket for one client."""

    __slots__ = ("tokens", "last_refill")

    def __init__(self, capacity: float, now: float):
        self.tokens: float = capacity
        self.last_refill: float = now


class RateLimitInfo:
    """Rate limit state returned by ``check()``."""

    __slots__ = ("allowed", "limit", "remaining", "reset_after")

    def __init__(self, allowed: bool, limit: int, remaining: int, reset_after: float):
        self.allowed = allowed
        self.limit = limit
        self.remaining = remaining
        self.reset_after = reset_after

    def headers(self) -> dict[str, str]:
        """Return rate-limit response headers (RFC 6585 style)."""
        h: dict[str, str] = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_after)),
        }
        if not self.allowed:
            h["Retry-After"] = str(math.ceil(self.reset_after))
        return h


class RateLimiter:
    """Token-bucket rate limiter keyed by client IP.

    Parameters
    ----------
    rate : float
        Tokens added per second.
    capacity : int
        Maximum burst size (bucket capacity).
    """

    def __init__(self, rate: float, capacity: int):
        self.rate = rate
        self.capacity = capacity
        self._buckets: dict[str, _Bucket] = {}

    def allow(self, key: str) -> bool:
        """Return True if the request is allowed, consuming one token."""
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitInfo:
        """Check rate limit and return detailed info with header values."""
        now = time.monotonic()

        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = _Bucket(self.capacity, now)

        elapsed = now - bucket.last_refill
        bucket.tokens = min(self.capacity, bucket.tokens + elapsed * self.rate)
        bucket.last_refill = now

        if bucket.tokens >= 1.0:
            bucket.tokens -= 1.0
            remaining = int(bucket.tokens)
            reset_after = (self.capacity - bucket.tokens) / self.rate if self.rate > 0 else 0
            return RateLimitInfo(True, self.capacity, remaining, reset_after)

        reset_after = (1.0 - bucket.tokens) / self.rate if self.rate > 0 else 1.0
        return RateLimitInfo(False, self.capacity, 0, reset_after)

    def cleanup(self, max_age: float = 3600.0) -> int:
        """Remove stale entries older than *max_age* seconds. Returns count removed."""
        now = time.monotonic()
        stale = [k for k, b in self._buckets.items() if now - b.last_refill > max_age]
        for k in stale:
            del self._buckets[k]
        return len(stale)

    def reset(self) -> None:
        self._buckets.clear()


auth_limiter = RateLimiter(rate=1.0, capacity=5)
api_limiter = RateLimiter(rate=10.0, capacity=30)

BUCKET_MAX_AGE = 3600.0  # seconds a client IP may stay idle before its bucket is dropped


def cleanup_all(max_age: float = BUCKET_MAX_AGE) -> int:
    """Drop idle buckets from every limiter. Called by the broker's expiry sweep."""
    return auth_limiter.cleanup(max_age) + api_limiter.cleanup(max_age)


def reset_all() -> None:
    auth_limiter.reset()
    api_limiter.reset()
