"""Guarded outbound calls: deduplication -> circuit breaker -> timeout/retry.

Every call into Square or Shippo goes through one OutboundGuard per
dependency. Upstream HTTP failures are converted into typed WebhookErrors as
soon as the response is seen, so retry and breaker decisions downstream act
on the error kind rather than on raw status codes.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import TypeVar

import httpx

from storefront_guard.resilience.circuit_breaker import CircuitBreaker
from storefront_guard.resilience.deduplication import RequestDeduplicator
from storefront_guard.resilience.timeout import (
    RetryConfig,
    default_is_retryable,
    with_timeout_and_retry,
)
from storefront_guard.webhooks.errors import WebhookError, coerce_upstream_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


def raise_for_upstream_status(response: httpx.Response, service: str) -> httpx.Response:
    """Raise the typed WebhookError for a non-2xx upstream response.

    Args:
        response: Response from Square/Shippo
        service: Dependency name used in error messages

    Returns:
        The response unchanged when it is successful
    """
    if response.is_success:
        return response

    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        error = coerce_upstream_error(exc, resource=service)
        if error is not None:
            raise error from exc
        raise
    return response


def outbound_is_retryable(error: BaseException) -> bool:
    """Typed errors follow their own policy; everything else by timeout/network rules."""
    if isinstance(error, WebhookError):
        return error.should_retry
    return default_is_retryable(error)


class OutboundGuard:
    """Composes the reliability guards for one external dependency."""

    def __init__(
        self,
        breaker: CircuitBreaker,
        retry_config: RetryConfig | None = None,
        deduplicator: RequestDeduplicator | None = None,
    ) -> None:
        self.breaker = breaker
        config = retry_config or RetryConfig()
        if config.is_retryable is None:
            config = replace(config, is_retryable=outbound_is_retryable)
        if config.operation_name is None:
            config = replace(config, operation_name=breaker.service_name)
        self.retry_config = config
        self.deduplicator = deduplicator

    async def call(
        self,
        factory: Callable[[], Awaitable[T]],
        dedup_key: str | None = None,
    ) -> T:
        """Run factory through the breaker with timeout and retries.

        Args:
            factory: Zero-argument coroutine function; called once per attempt
            dedup_key: Share one execution among concurrent callers with
                this key (requires a deduplicator)

        Raises:
            CircuitBreakerError: If the breaker rejected the call
            Exception: The last error of the final attempt
        """

        async def guarded() -> T:
            return await self.breaker.execute(
                lambda: with_timeout_and_retry(factory, self.retry_config)
            )

        if dedup_key is not None and self.deduplicator is not None:
            return await self.deduplicator.deduplicate(dedup_key, guarded)
        return await guarded()
