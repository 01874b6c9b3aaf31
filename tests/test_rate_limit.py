"""Tests for the fixed-window webhook rate limiter."""

from __future__ import annotations

import asyncio

import pytest

from storefront_guard.security.rate_limit import (
    EnvironmentRateLimiter,
    FixedWindowRateLimiter,
    RateLimitResult,
)
from storefront_guard.webhooks.verification import SquareEnvironment


@pytest.fixture()
def limiter(clock) -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(3, 60.0, clock=clock)


class TestFixedWindow:
    """At most max_requests per identifier per window."""

    def test_counts_down_remaining(self, limiter):
        assert [limiter.check("1.1.1.1").remaining for _ in range(3)] == [2, 1, 0]

    def test_blocks_over_limit(self, limiter, clock):
        for _ in range(3):
            assert limiter.check("1.1.1.1").allowed is True
        result = limiter.check("1.1.1.1")
        assert result.allowed is False
        assert result.remaining == 0
        assert result.reset_time == clock.now + 60
        assert "Try again in 60 seconds" in result.message

    def test_blocked_requests_do_not_extend_window(self, limiter, clock):
        for _ in range(5):
            limiter.check("1.1.1.1")
        clock.advance(61)
        assert limiter.check("1.1.1.1").allowed is True

    def test_window_resets(self, limiter, clock):
        for _ in range(3):
            limiter.check("1.1.1.1")
        clock.advance(59)
        assert limiter.check("1.1.1.1").allowed is False
        clock.advance(2)
        result = limiter.check("1.1.1.1")
        assert result.allowed is True
        assert result.remaining == 2

    def test_still_blocked_at_reset_time(self, clock):
        limiter = FixedWindowRateLimiter(1, 60.0, clock=clock)
        first = limiter.check("1.1.1.1")
        clock.advance(60)
        assert clock.now == first.reset_time
        assert limiter.check("1.1.1.1").allowed is False
        assert limiter.sweep() == 0
        clock.advance(0.001)
        assert limiter.check("1.1.1.1").allowed is True

    def test_identifiers_are_independent(self, limiter):
        for _ in range(3):
            limiter.check("1.1.1.1")
        assert limiter.check("2.2.2.2").allowed is True

    def test_sweep_removes_expired_windows(self, limiter, clock):
        limiter.check("a")
        clock.advance(30)
        limiter.check("b")
        clock.advance(31)
        assert limiter.sweep() == 1
        assert limiter.stats()["tracked_identifiers"] == 1

    def test_stats_counts_blocked(self, limiter):
        for _ in range(5):
            limiter.check("1.1.1.1")
        assert limiter.stats()["blocked_requests"] == 2

    def test_reset(self, limiter):
        for _ in range(3):
            limiter.check("1.1.1.1")
        limiter.reset("1.1.1.1")
        assert limiter.check("1.1.1.1").allowed is True

    @pytest.mark.parametrize(("max_requests", "window"), [(0, 60), (1, 0)])
    def test_invalid_configuration(self, max_requests, window):
        with pytest.raises(ValueError):
            FixedWindowRateLimiter(max_requests, window)

    def test_retry_after(self):
        assert RateLimitResult(False, 0, reset_time=100.0).retry_after(90.0) == 10
        assert RateLimitResult(False, 0, reset_time=100.0).retry_after(100.0) == 1

    @pytest.mark.asyncio
    async def test_background_sweeper(self, limiter, clock):
        limiter.check("a")
        clock.advance(61)
        task = asyncio.create_task(limiter.run_sweeper(0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert limiter.stats()["tracked_identifiers"] == 0


class TestEnvironmentRateLimiter:
    """Production is stricter than sandbox."""

    def test_from_settings(self, settings, clock):
        limiter = EnvironmentRateLimiter.from_settings(settings, clock=clock)
        assert limiter.sandbox.max_requests == 200
        assert limiter.production.max_requests == 100

    def test_selects_by_environment(self, clock):
        limiter = EnvironmentRateLimiter(
            sandbox=FixedWindowRateLimiter(2, clock=clock),
            production=FixedWindowRateLimiter(1, clock=clock),
        )
        assert limiter.check("ip", SquareEnvironment.PRODUCTION).allowed is True
        assert limiter.check("ip", SquareEnvironment.PRODUCTION).allowed is False
        assert limiter.check("ip", "sandbox").allowed is True
        assert limiter.check("ip", SquareEnvironment.SANDBOX).allowed is True
        assert limiter.check("ip", "sandbox").allowed is False
        assert set(limiter.stats()) == {"sandbox", "production"}
