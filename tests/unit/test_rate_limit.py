"""
Unit tests for per-tenant token buckets
"""

import pytest
from gallery_sync.rate_limit import TokenBucket, RateLimiterRegistry


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestTokenBucket:
    """Test token bucket behaviour"""

    def test_bucket_starts_full_and_drains(self):
        clock = FakeClock()
        bucket = TokenBucket(capacity=3, refill_per_second=1, clock=clock)

        assert bucket.try_acquire()
        assert bucket.try_acquire()
        assert bucket.try_acquire()
        assert not bucket.try_acquire()

    def test_empty_bucket_reports_retry_after_without_sleeping(self):
        clock = FakeClock()
        bucket = TokenBucket(capacity=1, refill_per_second=2, clock=clock)

        assert bucket.try_acquire()
        assert bucket.try_acquire() is False
        assert bucket.retry_after() == pytest.approx(0.5)

    def test_bucket_refills_over_time_up_to_capacity(self):
        clock = FakeClock()
        bucket = TokenBucket(capacity=2, refill_per_second=1, clock=clock)
        bucket.try_acquire()
        bucket.try_acquire()

        clock.advance(1.0)
        assert bucket.available == pytest.approx(1.0)

        clock.advance(10.0)
        assert bucket.available == pytest.approx(2.0)
        assert bucket.retry_after() == 0.0

    def test_invalid_configuration_rejected(self):
        with pytest.raises(ValueError):
            TokenBucket(capacity=0, refill_per_second=1)
        with pytest.raises(ValueError):
            TokenBucket(capacity=1, refill_per_second=0)


class TestRateLimiterRegistry:
    """Test per-tenant isolation"""

    def test_tenants_have_independent_buckets(self):
        clock = FakeClock()
        limiters = RateLimiterRegistry(capacity=1, refill_per_second=1, clock=clock)

        assert limiters.bucket_for("1234:aaaa").try_acquire()
        assert not limiters.bucket_for("1234:aaaa").try_acquire()

        # Exhausting one tenant never affects another
        assert limiters.bucket_for("5678:bbbb").try_acquire()

    def test_same_tenant_gets_same_bucket(self):
        limiters = RateLimiterRegistry(capacity=5, refill_per_second=1)
        assert limiters.bucket_for("t") is limiters.bucket_for("t")

    def test_reset_forgets_buckets(self):
        limiters = RateLimiterRegistry(capacity=5, refill_per_second=1)
        first = limiters.bucket_for("t")
        limiters.reset()
        assert limiters.bucket_for("t") is not first
