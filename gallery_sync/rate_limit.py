"""
Per-tenant token buckets.

Buckets never block: an empty bucket reports how long until the next token
so the caller can pause and come back on a later invocation.
"""

import threading
import time
from typing import Callable, Dict, Optional

from core.config import settings


class TokenBucket:
    """Classic token bucket refilled continuously at a fixed rate"""

    def __init__(
        self,
        capacity: float,
        refill_per_second: float,
        clock: Callable[[], float] = time.monotonic
    ):
        if capacity <= 0 or refill_per_second <= 0:
            raise ValueError("Token bucket capacity and refill rate must be positive")
        self.capacity = float(capacity)
        self.refill_per_second = float(refill_per_second)
        self._clock = clock
        self._tokens = float(capacity)
        self._updated_at = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._updated_at, 0.0)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
        self._updated_at = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def try_acquire(self, tokens: float = 1.0) -> bool:
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    def retry_after(self, tokens: float = 1.0) -> float:
        """Seconds until `tokens` will be available"""
        self._refill()
        missing = tokens - self._tokens
        if missing <= 0:
            return 0.0
        return missing / self.refill_per_second


class RateLimiterRegistry:
    """One independent bucket per tenant key"""

    def __init__(
        self,
        capacity: Optional[float] = None,
        refill_per_second: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.capacity = capacity or settings.RATE_LIMIT_CAPACITY
        self.refill_per_second = refill_per_second or settings.RATE_LIMIT_REFILL_PER_SECOND
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def bucket_for(self, tenant_key: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(tenant_key)
            if bucket is None:
                bucket = TokenBucket(self.capacity, self.refill_per_second, self._clock)
                self._buckets[tenant_key] = bucket
            return bucket

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


# Process-wide buckets shared by every fetcher instance
rate_limiters = RateLimiterRegistry()
