"""
Tests for the Sliding-Window Rate Limiter
=========================================
"""

import pytest

from bastion.api.services.rate_limit import SlidingWindowRateLimiter


@pytest.fixture
def limiter(clock):
    """Three attempts per minute."""
    return SlidingWindowRateLimiter(limit=3, window_seconds=60, clock=clock)


class TestSlidingWindow:
    """Tests for hit accounting within the window."""

    def test_allows_up_to_limit(self, limiter):
        decisions = [limiter.hit("10.0.0.1") for _ in range(3)]

        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]

    def test_rejects_over_limit(self, limiter, clock):
        for _ in range(3):
            limiter.hit("10.0.0.1")
        clock.advance(15)

        decision = limiter.hit("10.0.0.1")

        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.retry_after == 46

    def test_rejected_hits_do_not_extend_window(self, limiter, clock):
        for _ in range(3):
            limiter.hit("10.0.0.1")
        for _ in range(5):
            limiter.hit("10.0.0.1")

        clock.advance(60)

        assert limiter.hit("10.0.0.1").allowed is True

    def test_window_slides(self, limiter, clock):
        limiter.hit("10.0.0.1")
        clock.advance(30)
        limiter.hit("10.0.0.1")
        limiter.hit("10.0.0.1")
        assert limiter.hit("10.0.0.1").allowed is False

        # The first hit falls out of the window
        clock.advance(31)
        decision = limiter.hit("10.0.0.1")
        assert decision.allowed is True
        assert decision.remaining == 0

    def test_keys_are_independent(self, limiter):
        for _ in range(3):
            limiter.hit("10.0.0.1")

        assert limiter.hit("10.0.0.1").allowed is False
        assert limiter.hit("10.0.0.2").allowed is True


class TestReset:
    def test_reset_single_key(self, limiter):
        for _ in range(3):
            limiter.hit("a")
            limiter.hit("b")

        limiter.reset("a")

        assert limiter.hit("a").allowed is True
        assert limiter.hit("b").allowed is False

    def test_reset_all(self, limiter):
        for _ in range(3):
            limiter.hit("a")
            limiter.hit("b")

        limiter.reset()

        assert limiter.hit("a").allowed is True
        assert limiter.hit("b").allowed is True


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(limit=0)
