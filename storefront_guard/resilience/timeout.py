"""Timeouts and retries for calls into Square, Shippo and the database.

with_timeout() bounds a single await and cancels the underlying work when the
deadline passes. with_timeout_and_retry() calls a factory for a fresh attempt
each time, retrying transient failures with exponential backoff + jitter.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings that identify dropped or unreachable connections
NETWORK_ERROR_PHRASES = (
    "etimedout",
    "econnreset",
    "econnrefused",
    "enotfound",
    "enetunreach",
    "network",
    "timed out",
    "timeout",
)


class OperationTimeoutError(TimeoutError):
    """An awaited operation exceeded its deadline and was cancelled."""

    def __init__(
        self,
        message: str,
        timeout: float,
        operation_name: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.timeout = timeout
        self.operation_name = operation_name


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float | None,
    message: str | None = None,
    operation_name: str | None = None,
) -> T:
    """Await with a deadline.

    Args:
        awaitable: Coroutine or task to await. It is cancelled on timeout.
        timeout: Seconds, or None for no deadline
        message: Error message override
        operation_name: Name carried by the raised error and used in logs

    Raises:
        OperationTimeoutError: If the deadline passed first
    """
    deadline = asyncio.timeout(timeout)
    try:
        async with deadline:
            return await awaitable
    except TimeoutError as exc:
        if not deadline.expired():
            raise
        label = operation_name or "operation"
        raise OperationTimeoutError(
            message or f"{label} timed out after {timeout}s",
            timeout,
            operation_name,
        ) from exc


def is_timeout_error(error: BaseException) -> bool:
    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        return True
    message = str(error).lower()
    return "timeout" in message or "timed out" in message


def is_network_error(error: BaseException) -> bool:
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(phrase in message for phrase in NETWORK_ERROR_PHRASES)


def default_is_retryable(error: BaseException) -> bool:
    return is_timeout_error(error) or is_network_error(error)


@dataclass
class RetryConfig:
    """Retry policy for with_timeout_and_retry().

    max_retries counts retries after the first attempt. The delay before
    retry n is retry_delay, or retry_delay * 2**(n-1) with exponential
    backoff, capped at max_delay, plus uniform jitter in [0, jitter).
    """

    timeout: float | None = 10.0
    max_retries: int = 3
    retry_delay: float = 1.0
    exponential_backoff: bool = False
    max_delay: float = 30.0
    is_retryable: Callable[[BaseException], bool] | None = None
    operation_name: str | None = None
    jitter: float = 0.5

    @classmethod
    def from_settings(cls, settings, **overrides: Any) -> RetryConfig:
        options: dict[str, Any] = {
            "timeout": settings.outbound_timeout_seconds,
            "max_retries": settings.outbound_max_retries,
            "retry_delay": settings.outbound_retry_delay_seconds,
            "exponential_backoff": True,
        }
        options.update(overrides)
        return cls(**options)


def compute_retry_delay(attempt: int, config: RetryConfig) -> float:
    """Delay in seconds before retry number attempt (1-based)."""
    if config.exponential_backoff:
        delay = config.retry_delay * (2 ** (attempt - 1))
    else:
        delay = config.retry_delay
    delay = min(delay, config.max_delay)
    if config.jitter > 0:
        delay += random.uniform(0, config.jitter)
    return delay


async def with_timeout_and_retry(
    factory: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
) -> T:
    """Run factory() under a timeout, retrying transient failures.

    Non-retryable failures and the failure of the last attempt propagate
    unchanged.
    """
    config = config or RetryConfig()
    is_retryable = config.is_retryable or default_is_retryable
    label = config.operation_name or "operation"

    retry = 0
    while True:
        try:
            return await with_timeout(
                factory(),
                config.timeout,
                operation_name=config.operation_name,
            )
        except Exception as exc:
            if retry >= config.max_retries or not is_retryable(exc):
                raise
            retry += 1
            delay = compute_retry_delay(retry, config)
            logger.warning(
                "[%s] Retry %d/%d after %s: %s, waiting %.2fs",
                label,
                retry,
                config.max_retries,
                type(exc).__name__,
                exc,
                delay,
            )
            await asyncio.sleep(delay)


async def fetch_with_timeout(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    timeout: float,
    operation_name: str | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """Send an HTTP request that is aborted at the transport when it runs late.

    Raises:
        OperationTimeoutError: On either the overall deadline or an httpx
            connect/read/write/pool timeout
    """
    name = operation_name or f"{method.upper()} {url}"
    try:
        return await with_timeout(
            client.request(method, url, timeout=timeout, **kwargs),
            timeout,
            operation_name=name,
        )
    except httpx.TimeoutException as exc:
        raise OperationTimeoutError(f"{name} timed out after {timeout}s", timeout, name) from exc
