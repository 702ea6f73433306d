"""Best-effort in-process rate limiting for install registration and submissions.

Per-process, not distributed. Registration and submission are the two
unauthenticated write paths, so each gets its own keyed token bucket.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Tuple


@dataclass
class TokenBucket:
    capacity: float
    refill_rate_per_sec: float
    tokens: float
    last_ts: float

    @classmethod
    def new(cls, capacity: float, refill_rate_per_sec: float) -> "TokenBucket":
        return cls(capacity=capacity, refill_rate_per_sec=refill_rate_per_sec, tokens=capacity, last_ts=time.monotonic())

    def is_idle(self, now: float) -> bool:
        """Refilled to capacity, so dropping it loses no state."""
        elapsed = max(0.0, now - self.last_ts)
        return self.tokens + elapsed * self.refill_rate_per_sec >= self.capacity

    def allow(self, cost: float = 1.0) -> bool:
        now = time.monotonic()
        elapsed = max(0.0, now - self.last_ts)
        self.last_ts = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_sec)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False


class RateLimiter:
    """Keyed token-bucket rate limiter."""

    def __init__(self, capacity: float, refill_rate_per_sec: float, max_keys: int = 20000):
        if capacity <= 0 or refill_rate_per_sec <= 0:
            raise ValueError("capacity and refill_rate_per_sec must be positive")
        self._capacity = float(capacity)
        self._refill = float(refill_rate_per_sec)
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 20000
        self._buckets: "OrderedDict[str, TokenBucket]" = OrderedDict()
        self._lock = threading.Lock()

    def allow(self, key: str, cost: float = 1.0) -> bool:
        key = key or "_anon"
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self._max_keys:
                    self._evict_idle()
                # Still full: every tracked key is actively limited.
                if len(self._buckets) >= self._max_keys:
                    return False
                bucket = TokenBucket.new(self._capacity, self._refill)
                self._buckets[key] = bucket
            else:
                self._buckets.move_to_end(key)
            return bucket.allow(cost=cost)

    def _evict_idle(self) -> None:
        # Least recently used first; stop once a slot is free.
        now = time.monotonic()
        for key in list(self._buckets):
            if self._buckets[key].is_idle(now):
                del self._buckets[key]
                if len(self._buckets) < self._max_keys:
                    return

    def __len__(self) -> int:
        return len(self._buckets)


def parse_rate_limit(spec: str) -> Tuple[float, float]:
    """Parse a compact rate limit spec like '30/m' or '10/s'.

    Returns (capacity, refill_rate_per_sec).
    """
    s = (spec or "").strip().lower()
    if "/" not in s:
        raise ValueError("invalid rate limit spec; expected like '30/m' or '10/s'")
    num_str, unit = s.split("/", 1)
    n = float(num_str)
    if n <= 0:
        raise ValueError("rate must be positive")
    unit = unit.strip()
    if unit in ("s", "sec", "second", "seconds"):
        per_sec = n
    elif unit in ("m", "min", "minute", "minutes"):
        per_sec = n / 60.0
    elif unit in ("h", "hr", "hour", "hours"):
        per_sec = n / 3600.0
    else:
        raise ValueError(f"unsupported rate unit: {unit}")
    return float(n), float(per_sec)
