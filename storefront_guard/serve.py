"""FastAPI application wiring for the storefront webhook endpoints.

Every guard is built once per application and held in a WebhookGuards
container on app.state, so tests and multiple apps never share state.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

from fastapi import FastAPI

from storefront_guard.config import Settings, get_settings
from storefront_guard.resilience.circuit_breaker import CircuitBreakerRegistry
from storefront_guard.resilience.deduplication import RequestDeduplicator
from storefront_guard.resilience.outbound import OutboundGuard
from storefront_guard.resilience.timeout import RetryConfig
from storefront_guard.security.rate_limit import EnvironmentRateLimiter
from storefront_guard.webhooks.dispatcher import WebhookDispatcher
from storefront_guard.webhooks.handlers import register_webhook_routes
from storefront_guard.webhooks.replay import (
    InMemoryWebhookLedger,
    RedisWebhookLedger,
    ReplayGuard,
    WebhookLedger,
)
from storefront_guard.webhooks.security import SecurityMonitor, WebhookSecurity
from storefront_guard.webhooks.verification import SignatureVerifier, WebhookSecrets

logger = logging.getLogger(__name__)

MONITOR_CLEANUP_INTERVAL_SECONDS = 24 * 3600


@dataclass
class WebhookGuards:
    """All per-application guard instances."""

    settings: Settings
    verifier: SignatureVerifier
    replay_guard: ReplayGuard
    rate_limiter: EnvironmentRateLimiter
    monitor: SecurityMonitor
    security: WebhookSecurity
    breakers: CircuitBreakerRegistry
    deduplicator: RequestDeduplicator
    dispatcher: WebhookDispatcher
    audit_counts: dict[str, int] = field(default_factory=dict)

    def outbound(self, service: str) -> OutboundGuard:
        """Guard for calls into an external dependency ("square", "shippo", ...)."""
        return OutboundGuard(
            self.breakers.get(service),
            RetryConfig.from_settings(self.settings, operation_name=service),
            self.deduplicator,
        )


def _default_ledger(settings: Settings) -> WebhookLedger:
    if settings.redis_url:
        logger.info("Using Redis webhook ledger")
        return RedisWebhookLedger.from_url(
            settings.redis_url,
            socket_timeout=settings.webhook_ledger_timeout_seconds,
        )
    logger.warning("REDIS_URL not set, using in-memory webhook ledger (not shared across workers)")
    return InMemoryWebhookLedger()


def build_guards(
    settings: Settings,
    dispatcher: WebhookDispatcher | None = None,
    ledger: WebhookLedger | None = None,
    clock: Callable[[], float] | None = None,
) -> WebhookGuards:
    """Construct every guard from settings.

    Args:
        settings: Application settings
        dispatcher: Handler registry (empty dispatcher when omitted)
        ledger: Replay ledger (Redis when REDIS_URL is set, else in-memory)
        clock: Time source override for rate limiting, replay and breakers
    """
    rate_limiter = EnvironmentRateLimiter.from_settings(settings, clock=clock)
    monitor = SecurityMonitor(clock=clock)
    return WebhookGuards(
        settings=settings,
        verifier=SignatureVerifier(
            WebhookSecrets.from_settings(settings),
            notification_url=settings.square_webhook_notification_url,
        ),
        replay_guard=ReplayGuard(
            ledger if ledger is not None else _default_ledger(settings),
            max_event_age=settings.webhook_max_event_age_seconds,
            clock_skew=settings.webhook_clock_skew_seconds,
            clock=clock,
            ledger_timeout=settings.webhook_ledger_timeout_seconds,
        ),
        rate_limiter=rate_limiter,
        monitor=monitor,
        security=WebhookSecurity(
            rate_limiter,
            max_body_bytes=settings.webhook_max_body_bytes,
            ip_ranges=settings.square_ip_ranges,
            monitor=monitor,
        ),
        breakers=CircuitBreakerRegistry.from_settings(settings, clock=clock),
        deduplicator=RequestDeduplicator(ttl=settings.dedup_ttl_seconds),
        dispatcher=dispatcher or WebhookDispatcher(),
    )


async def _monitor_cleanup(monitor: SecurityMonitor, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        removed = monitor.cleanup()
        if removed:
            logger.info("Forgot %d suspicious IP records", removed)


def create_app(
    settings: Settings | None = None,
    dispatcher: WebhookDispatcher | None = None,
    ledger: WebhookLedger | None = None,
    clock: Callable[[], float] | None = None,
) -> FastAPI:
    """Create the webhook application with its own guard instances."""
    settings = settings or get_settings()
    guards = build_guards(settings, dispatcher=dispatcher, ledger=ledger, clock=clock)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        tasks = [
            asyncio.create_task(guards.rate_limiter.run_sweeper(settings.rate_limit_sweep_interval_seconds)),
            asyncio.create_task(_monitor_cleanup(guards.monitor, MONITOR_CLEANUP_INTERVAL_SECONDS)),
        ]
        logger.info("Webhook guards started")
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            guards.deduplicator.clear()

    app = FastAPI(title="Storefront Guard", lifespan=lifespan)
    app.state.guards = guards
    register_webhook_routes(app)
    return app
