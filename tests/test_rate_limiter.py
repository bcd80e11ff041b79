import pytest

from exam_relay.rate_limiter import UNKNOWN_IDENTITY, RateLimiter


class TestRateLimiter:

    def test_first_request_creates_entry(self, limiter):
        decision = limiter.check("1.2.3.4")
        assert decision.allowed
        assert decision.count == 1
        assert "1.2.3.4" in limiter

    def test_quota_then_reject(self, limiter):
        for _ in range(10):
            assert limiter.check("1.2.3.4").allowed
        rejected = limiter.check("1.2.3.4")
        assert not rejected.allowed
        assert rejected.count == 11

    def test_rejected_requests_keep_counting(self, limiter, clock):
        for _ in range(10):
            limiter.check("1.2.3.4")
        for expected in (11, 12, 13):
            clock.advance(5)
            decision = limiter.check("1.2.3.4")
            assert not decision.allowed
            assert decision.count == expected

    def test_window_reset_after_expiry(self, limiter, clock):
        for _ in range(12):
            limiter.check("1.2.3.4")
        clock.advance(60)
        # exactly W elapsed is still inside the window
        assert not limiter.check("1.2.3.4").allowed
        clock.advance(0.001)
        decision = limiter.check("1.2.3.4")
        assert decision.allowed
        assert decision.count == 1

    def test_window_start_is_reset_not_slid(self, limiter, clock):
        limiter.check("a")
        clock.advance(61)
        limiter.check("a")
        clock.advance(59)
        for _ in range(9):
            assert limiter.check("a").allowed
        assert not limiter.check("a").allowed

    def test_identities_are_independent(self, limiter):
        for _ in range(11):
            limiter.check("a")
        assert limiter.check("b").allowed

    def test_retry_after_reports_remaining_window(self, limiter, clock):
        for _ in range(10):
            limiter.check("a")
        clock.advance(20)
        decision = limiter.check("a")
        assert decision.retry_after == pytest.approx(40)

    def test_empty_identity_uses_sentinel(self, limiter):
        limiter.check("")
        assert UNKNOWN_IDENTITY in limiter

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            RateLimiter(window=0)
        with pytest.raises(ValueError):
            RateLimiter(max_requests=0)


class TestRateLimiterCleanup:

    def test_stale_entries_removed_by_periodic_sweep(self, clock):
        limiter = RateLimiter(window=60, max_requests=10, cleanup_every=100, stale_factor=5, clock=clock)
        limiter.check("stale")
        clock.advance(301)
        # calls 2..99 do not sweep
        for _ in range(98):
            limiter.check("active")
        assert "stale" in limiter
        limiter.check("active")
        assert "stale" not in limiter
        assert "active" in limiter

    def test_sweep_keeps_entries_within_horizon(self, clock):
        limiter = RateLimiter(window=60, cleanup_every=1, stale_factor=5, clock=clock)
        limiter.check("recent")
        clock.advance(300)
        limiter.check("other")
        assert "recent" in limiter

    def test_sweep_does_not_change_active_counts(self, clock):
        limiter = RateLimiter(window=60, max_requests=3, cleanup_every=2, clock=clock)
        limiter.check("old")
        clock.advance(400)
        limiter.check("active")
        limiter.check("active")
        assert len(limiter) == 1
        assert limiter.check("active").count == 3

    def test_manual_cleanup_returns_removed_count(self, limiter, clock):
        limiter.check("a")
        limiter.check("b")
        clock.advance(301)
        assert limiter.cleanup() == 2
        assert len(limiter) == 0
