"""Circuit breaker for outbound calls to Square, Shippo and the database.

States:
- CLOSED: calls pass through. Consecutive countable failures are tracked and
  reaching failure_threshold opens the circuit. A success resets the count.
- OPEN: calls are rejected with CircuitBreakerError without being attempted,
  until reset_timeout has elapsed since the last failure.
- HALF_OPEN: up to half_open_requests trial calls are admitted at a time. Any
  countable failure reopens the circuit; half_open_requests successes close it.

The OPEN -> HALF_OPEN transition is evaluated from the clock whenever the
breaker is consulted, so no timer task is needed. State is per process.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, TypeVar

from storefront_guard.webhooks.errors import BadRequestError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures caused by our own input say nothing about the dependency's health
_CLIENT_ERROR_PHRASES = ("validation", "bad request", "invalid input")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerError(Exception):
    """Raised when a call is rejected without being attempted."""

    def __init__(self, message: str, service_name: str, state: CircuitState) -> None:
        super().__init__(message)
        self.message = message
        self.service_name = service_name
        self.state = state


def is_circuit_breaker_error(error: object) -> bool:
    return isinstance(error, CircuitBreakerError)


def default_is_failure(error: BaseException) -> bool:
    """Count everything except validation and bad-request errors."""
    if isinstance(error, BadRequestError):
        return False
    message = str(error).lower()
    return not any(phrase in message for phrase in _CLIENT_ERROR_PHRASES)


@dataclass(frozen=True)
class CircuitBreakerStats:
    service_name: str
    state: CircuitState
    consecutive_failures: int
    half_open_successes: int
    half_open_in_flight: int
    total_requests: int
    total_failures: int
    total_successes: int
    rejected_requests: int
    last_failure_time: float | None
    last_success_time: float | None
    last_state_change: float

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class CircuitBreaker:
    """Per-dependency circuit breaker."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_requests: int = 3,
        service_name: str = "default",
        is_failure: Callable[[BaseException], bool] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if half_open_requests < 1:
            raise ValueError("half_open_requests must be at least 1")
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_requests = half_open_requests
        self.service_name = service_name
        self._is_failure = is_failure or default_is_failure
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._generation = 0
        self._consecutive_failures = 0
        self._half_open_successes = 0
        self._half_open_in_flight = 0
        self._last_failure_time: float | None = None
        self._last_success_time: float | None = None
        self._last_state_change = self._now()

        self._total_requests = 0
        self._total_failures = 0
        self._total_successes = 0
        self._rejected = 0

    def _now(self) -> float:
        return self._clock() if self._clock else time.time()

    def _transition(self, state: CircuitState) -> None:
        previous = self._state
        self._state = state
        self._generation += 1
        self._last_state_change = self._now()
        self._half_open_successes = 0
        self._half_open_in_flight = 0
        if state is CircuitState.CLOSED:
            self._consecutive_failures = 0

        if state is CircuitState.OPEN:
            logger.warning(
                "Circuit breaker [%s] %s -> OPEN after %d failures, retry after %.0fs",
                self.service_name,
                previous.value,
                self._consecutive_failures,
                self.reset_timeout,
            )
        else:
            logger.info(
                "Circuit breaker [%s] %s -> %s",
                self.service_name,
                previous.value,
                state.value,
            )

    def _refresh(self) -> None:
        if self._state is CircuitState.OPEN and self._last_failure_time is not None:
            if self._now() - self._last_failure_time >= self.reset_timeout:
                self._transition(CircuitState.HALF_OPEN)

    @property
    def state(self) -> CircuitState:
        self._refresh()
        return self._state

    def _reject(self, reason: str) -> CircuitBreakerError:
        self._rejected += 1
        logger.warning("Circuit breaker [%s] rejected call: %s", self.service_name, reason)
        return CircuitBreakerError(
            f"Circuit breaker is {self._state.value} for {self.service_name}: {reason}",
            self.service_name,
            self._state,
        )

    def _admit(self) -> int:
        """Check admissibility and return the generation the call belongs to."""
        self._refresh()
        if self._state is CircuitState.OPEN:
            raise self._reject("service unavailable")
        if self._state is CircuitState.HALF_OPEN:
            if self._half_open_successes + self._half_open_in_flight >= self.half_open_requests:
                raise self._reject("trial requests in progress")
            self._half_open_in_flight += 1
        self._total_requests += 1
        return self._generation

    def _release(self, trial: bool, generation: int) -> None:
        if trial and generation == self._generation:
            self._half_open_in_flight -= 1

    def _on_success(self, generation: int) -> None:
        self._total_successes += 1
        self._last_success_time = self._now()
        if generation != self._generation:
            return
        if self._state is CircuitState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self.half_open_requests:
                self._transition(CircuitState.CLOSED)
        else:
            self._consecutive_failures = 0

    def _on_failure(self, generation: int) -> None:
        self._total_failures += 1
        self._last_failure_time = self._now()
        if generation != self._generation:
            return
        self._consecutive_failures += 1
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self._state is CircuitState.CLOSED and self._consecutive_failures >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run fn through the breaker.

        Args:
            fn: Zero-argument coroutine function performing the call

        Returns:
            Whatever fn returns

        Raises:
            CircuitBreakerError: If the call was rejected without running fn
            Exception: The original error from fn, unchanged
        """
        generation = self._admit()
        trial = self._state is CircuitState.HALF_OPEN
        try:
            result = await fn()
        except Exception as exc:
            self._release(trial, generation)
            if self._is_failure(exc):
                self._on_failure(generation)
            raise
        except BaseException:
            self._release(trial, generation)
            raise

        self._release(trial, generation)
        self._on_success(generation)
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED and clear every counter."""
        self._transition(CircuitState.CLOSED)
        self._last_failure_time = None
        self._last_success_time = None
        self._total_requests = 0
        self._total_failures = 0
        self._total_successes = 0
        self._rejected = 0

    def stats(self) -> CircuitBreakerStats:
        self._refresh()
        return CircuitBreakerStats(
            service_name=self.service_name,
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            half_open_successes=self._half_open_successes,
            half_open_in_flight=self._half_open_in_flight,
            total_requests=self._total_requests,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
            rejected_requests=self._rejected,
            last_failure_time=self._last_failure_time,
            last_success_time=self._last_success_time,
            last_state_change=self._last_state_change,
        )


class CircuitBreakerRegistry:
    """One breaker per external dependency, created on first use."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_requests: int = 3,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._defaults = {
            "failure_threshold": failure_threshold,
            "reset_timeout": reset_timeout,
            "half_open_requests": half_open_requests,
            "clock": clock,
        }
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] | None = None) -> CircuitBreakerRegistry:
        return cls(
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout=settings.breaker_reset_timeout_seconds,
            half_open_requests=settings.breaker_half_open_requests,
            clock=clock,
        )

    def get(self, service_name: str, **overrides: Any) -> CircuitBreaker:
        breaker = self._breakers.get(service_name)
        if breaker is None:
            options = {**self._defaults, **overrides}
            breaker = CircuitBreaker(service_name=service_name, **options)
            self._breakers[service_name] = breaker
        return breaker

    def __contains__(self, service_name: str) -> bool:
        return service_name in self._breakers

    def stats(self) -> dict[str, dict[str, Any]]:
        return {name: b.stats().to_dict() for name, b in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
