"""Per-channel hourly / daily token-bucket rate limiting."""

from __future__ import annotations

import time
from collections.abc import Callable

from src.notify.registry import RateLimit

_HOUR = 3600.0
_DAY = 86_400.0


class TokenBucket:
    """A simple token bucket that refills at a fixed rate."""

    def __init__(
        self,
        rate: float,
        capacity: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate = rate
        self.capacity = capacity
        self.tokens = capacity
        self._clock = clock
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self._last_refill = now

    def try_acquire(self) -> bool:
        """Try to consume one token. Returns True if successful."""
        self._refill()
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    def refund(self) -> None:
        self.tokens = min(self.capacity, self.tokens + 1.0)

    def time_until_available(self) -> float:
        """Seconds until at least one token is available."""
        self._refill()
        if self.tokens >= 1.0:
            return 0.0
        if self.rate <= 0:
            return float("inf")
        return (1.0 - self.tokens) / self.rate


class ChannelRateLimiter:
    """Hourly + daily buckets per registry channel id.

    Both buckets must have a token for a delivery to proceed. Unlike an
    API client limiter this never waits: an exhausted channel rejects the
    delivery and the caller reports it as failed.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buckets: dict[str, tuple[TokenBucket, TokenBucket]] = {}
        self._limits: dict[str, RateLimit] = {}

    def _buckets_for(self, channel_id: str, limit: RateLimit) -> tuple[TokenBucket, TokenBucket]:
        if self._limits.get(channel_id) != limit or channel_id not in self._buckets:
            self._limits[channel_id] = limit
            self._buckets[channel_id] = (
                TokenBucket(limit.max_per_hour / _HOUR, limit.max_per_hour, self._clock),
                TokenBucket(limit.max_per_day / _DAY, limit.max_per_day, self._clock),
            )
        return self._buckets[channel_id]

    def try_acquire(self, channel_id: str, limit: RateLimit | None) -> bool:
        """Consume one delivery from *channel_id*'s allowance; no limit always passes."""
        if limit is None:
            return True
        hourly, daily = self._buckets_for(channel_id, limit)
        if not hourly.try_acquire():
            return False
        if daily.try_acquire():
            return True
        # Undo hourly consumption since daily wasn't available
        hourly.refund()
        return False

    def time_until_available(self, channel_id: str) -> float:
        buckets = self._buckets.get(channel_id)
        if buckets is None:
            return 0.0
        return max(b.time_until_available() for b in buckets)

    def reset(self, channel_id: str | None = None) -> None:
        if channel_id is None:
            self._buckets.clear()
            self._limits.clear()
        else:
            self._buckets.pop(channel_id, None)
            self._limits.pop(channel_id, None)
