"""Fixed-window rate limiting for inbound webhook traffic.

Each identifier (normally a client IP) gets a counter that resets when its
window elapses. Expired windows are dropped lazily on the next check and
periodically by sweep(), so memory stays bounded by the set of identifiers
seen in the last window.

State is per process. Running several workers multiplies the effective limit
by the worker count.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check."""

    allowed: bool
    remaining: int
    reset_time: float
    message: str | None = None

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets (at least 1)."""
        return max(1, int(self.reset_time - now + 0.999))


@dataclass
class _Window:
    count: int
    reset_time: float


class FixedWindowRateLimiter:
    """At most max_requests per identifier per window_seconds."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._blocked = 0

    def now(self) -> float:
        return self._clock() if self._clock else time.time()

    def check(self, identifier: str) -> RateLimitResult:
        """Count one request for identifier and decide whether it may proceed.

        Args:
            identifier: Client key (IP address)

        Returns:
            RateLimitResult; a rejected request does not consume quota
        """
        now = self.now()
        window = self._windows.get(identifier)

        if window is None or now > window.reset_time:
            window = _Window(count=1, reset_time=now + self.window_seconds)
            self._windows[identifier] = window
            return RateLimitResult(True, self.max_requests - 1, window.reset_time)

        if window.count >= self.max_requests:
            self._blocked += 1
            seconds = max(1, int(window.reset_time - now + 0.999))
            logger.warning(
                "Rate limit exceeded [%s] for %s: %d requests in %.0fs window",
                self.name,
                identifier,
                window.count,
                self.window_seconds,
            )
            return RateLimitResult(
                False,
                0,
                window.reset_time,
                f"Rate limit exceeded. Try again in {seconds} seconds.",
            )

        window.count += 1
        return RateLimitResult(True, self.max_requests - window.count, window.reset_time)

    def sweep(self) -> int:
        """Drop expired windows. Returns the number removed."""
        now = self.now()
        expired = [key for key, window in self._windows.items() if now > window.reset_time]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("Rate limiter [%s] swept %d expired windows", self.name, len(expired))
        return len(expired)

    async def run_sweeper(self, interval: float = 60.0) -> None:
        """Sweep forever every interval seconds. Cancel the task to stop."""
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def reset(self, identifier: str | None = None) -> None:
        if identifier is None:
            self._windows.clear()
        else:
            self._windows.pop(identifier, None)

    def stats(self) -> dict[str, float | int | str]:
        return {
            "name": self.name,
            "tracked_identifiers": len(self._windows),
            "blocked_requests": self._blocked,
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
        }


class EnvironmentRateLimiter:
    """Separate limits for Square sandbox and production deliveries."""

    def __init__(
        self,
        sandbox: FixedWindowRateLimiter,
        production: FixedWindowRateLimiter,
    ) -> None:
        self.sandbox = sandbox
        self.production = production

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] | None = None) -> EnvironmentRateLimiter:
        return cls(
            sandbox=FixedWindowRateLimiter(
                settings.rate_limit_sandbox_max,
                settings.rate_limit_window_seconds,
                name="sandbox",
                clock=clock,
            ),
            production=FixedWindowRateLimiter(
                settings.rate_limit_production_max,
                settings.rate_limit_window_seconds,
                name="production",
                clock=clock,
            ),
        )

    def limiter_for(self, environment: str) -> FixedWindowRateLimiter:
        value = getattr(environment, "value", environment)
        return self.sandbox if str(value).lower() == "sandbox" else self.production

    def check(self, identifier: str, environment: str) -> RateLimitResult:
        return self.limiter_for(environment).check(identifier)

    def sweep(self) -> int:
        return self.sandbox.sweep() + self.production.sweep()

    async def run_sweeper(self, interval: float = 60.0) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def stats(self) -> dict[str, dict]:
        return {"sandbox": self.sandbox.stats(), "production": self.production.stats()}
