"""
Tests for fixed-window rate limiting.

A fake clock drives the windows so the tests never sleep.
"""

from __future__ import annotations

import pytest

from unistore.config.settings import RateLimitSettings
from unistore.core.rate_limiter import RateLimiter, RateLimitStatus


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(max_requests=2, window_ms=1000, clock=clock)


class TestRateLimiter:
    """Test request counting within windows."""

    def test_allows_up_to_limit(self, limiter):
        assert limiter.try_acquire("k") is True
        assert limiter.try_acquire("k") is True
        assert limiter.try_acquire("k") is False

    def test_window_resets_after_expiry(self, limiter, clock):
        limiter.try_acquire("k")
        limiter.try_acquire("k")
        clock.advance(0.5)
        assert limiter.try_acquire("k") is False
        clock.advance(1.0)
        assert limiter.try_acquire("k") is True

    def test_keys_are_independent(self, limiter):
        limiter.try_acquire("a")
        limiter.try_acquire("a")
        assert limiter.try_acquire("a") is False
        assert limiter.try_acquire("b") is True

    def test_rejected_requests_are_not_counted(self, limiter):
        for _ in range(5):
            limiter.try_acquire("k")
        assert limiter.status("k").remaining == 0


class TestStatus:
    """Test quota snapshots."""

    def test_unknown_key(self, limiter):
        assert limiter.status("nobody") == RateLimitStatus(remaining=2, reset_in_ms=0)

    def test_counts_down(self, limiter, clock):
        limiter.try_acquire("k")
        clock.advance(0.25)
        status = limiter.status("k")
        assert status.remaining == 1
        assert status.reset_in_ms == 750
        assert status.to_dict() == {"remaining": 1, "reset_in_ms": 750}

    def test_expired_window(self, limiter, clock):
        limiter.try_acquire("k")
        clock.advance(2)
        assert limiter.status("k") == RateLimitStatus(remaining=2, reset_in_ms=0)


def test_reset(limiter):
    limiter.try_acquire("a")
    limiter.try_acquire("b")
    limiter.reset("a")
    assert limiter.status("a").remaining == 2
    assert limiter.status("b").remaining == 1
    limiter.reset()
    assert limiter.status("b").remaining == 2


def test_expired_windows_are_cleaned_up(limiter, clock):
    limiter.try_acquire("stale")
    clock.advance(61)
    limiter.try_acquire("fresh")
    assert "stale" not in limiter._windows
    assert "fresh" in limiter._windows


def test_from_settings():
    limiter = RateLimiter.from_settings(
        RateLimitSettings(max_requests=5, window_ms=2000))
    assert limiter.max_requests == 5
    assert limiter.window_ms == 2000


@pytest.mark.parametrize("max_requests, window_ms", [(0, 1000), (1, 0)])
def test_invalid_arguments(max_requests, window_ms):
    with pytest.raises(ValueError):
        RateLimiter(max_requests, window_ms)
