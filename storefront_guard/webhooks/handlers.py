"""Webhook HTTP handlers: FastAPI route handlers for inbound webhooks.

Square flow:
1. Request checks (rate limit, size, signature header present)
2. Signature verification on the raw body
3. Payload validation
4. Replay protection (duplicate / stale / future-dated)
5. Dispatch, shared among concurrent deliveries of the same event_id
6. Ledger record of the processed event

Security contract:
- Return 401 only for signature failures
- Replayed or malformed deliveries get a 4xx and must not be retried
- Handler failures return the error kind's status and a retry flag;
  Retry-After is set only when the sender should retry
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from storefront_guard.resilience.circuit_breaker import is_circuit_breaker_error
from storefront_guard.webhooks.dispatcher import (
    SHIPPO_EVENT_TYPES,
    ShippoWebhookPayload,
    SquareWebhookPayload,
    WebhookEvent,
)
from storefront_guard.webhooks.errors import (
    DEFAULT_RETRY_AFTER_SECONDS,
    RateLimitError,
    coerce_upstream_error,
    should_retry_webhook,
)
from storefront_guard.webhooks.replay import ReplayRejection
from storefront_guard.webhooks.security import security_failure_response
from storefront_guard.webhooks.verification import (
    SHIPPO_SIGNATURE_HEADER,
    detect_environment,
    verify_shippo,
)

if TYPE_CHECKING:
    from storefront_guard.serve import WebhookGuards

logger = logging.getLogger(__name__)


def _guards(request: Request) -> WebhookGuards:
    return request.app.state.guards


def _log_webhook(
    guards: WebhookGuards,
    provider: str,
    event_type: str,
    webhook_id: str,
    status: str,
) -> None:
    """Audit log for webhook activity."""
    guards.audit_counts[provider] = guards.audit_counts.get(provider, 0) + 1
    logger.info(
        "WEBHOOK_AUDIT provider=%s event=%s id=%s status=%s count=%d",
        provider,
        event_type,
        webhook_id,
        status,
        guards.audit_counts[provider],
    )


def handler_failure_response(error: Exception, event: WebhookEvent) -> JSONResponse:
    """Map a handler exception to the sender-facing response.

    Typed upstream errors keep their HTTP status and retry policy. An open
    circuit is a transient 503. Anything else is retried only when it looks
    like a dropped connection or timeout.
    """
    retry_after: float | None = None
    typed = None if is_circuit_breaker_error(error) else coerce_upstream_error(error, resource=event.event_id)

    if typed is not None:
        status_code = typed.http_status_code
        body: dict[str, Any] = typed.to_dict()
        if typed.should_retry:
            retry_after = typed.retry_after if isinstance(typed, RateLimitError) else DEFAULT_RETRY_AFTER_SECONDS
    elif is_circuit_breaker_error(error):
        status_code = 503
        body = {"error": "SERVICE_UNAVAILABLE", "message": "Upstream service unavailable", "retry": True}
        retry_after = DEFAULT_RETRY_AFTER_SECONDS
    else:
        retry = should_retry_webhook(error, event.event_type)
        status_code = 503 if retry else 500
        body = {"error": "INTERNAL_ERROR", "message": "Webhook processing failed", "retry": retry}
        if retry:
            retry_after = DEFAULT_RETRY_AFTER_SECONDS

    headers = {"Retry-After": str(int(retry_after))} if retry_after is not None else None
    return JSONResponse(body, status_code=status_code, headers=headers)


async def _handle_square(request: Request) -> JSONResponse:
    """Square webhook endpoint flow."""
    start = time.time()
    guards = _guards(request)
    headers = {k.lower(): v for k, v in request.headers.items()}
    environment = detect_environment(headers)

    # 1. Request checks
    check = guards.security.validate(request, environment)
    if not check.valid:
        status = "rate_limited" if check.rate_limited else "security_failed"
        _log_webhook(guards, "square", "unknown", "unknown", status)
        return security_failure_response(check, now=guards.rate_limiter.limiter_for(environment).now())

    body = await request.body()
    if len(body) > guards.security.max_body_bytes:
        check.valid = False
        check.error = f"Request body too large: {len(body)} bytes > {guards.security.max_body_bytes} bytes"
        _log_webhook(guards, "square", "unknown", "unknown", "security_failed")
        return security_failure_response(check)

    # 2. Signature
    if not guards.verifier.verify(body, headers):
        guards.monitor.report(check.client_ip, "Invalid webhook signature", "medium")
        _log_webhook(guards, "square", "unknown", "unknown", "signature_failed")
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    # 3. Payload
    try:
        payload = SquareWebhookPayload.model_validate_json(body)
    except ValidationError as exc:
        _log_webhook(guards, "square", "unknown", "unknown", "invalid_payload")
        return JSONResponse(
            {"error": "Invalid payload", "details": f"{exc.error_count()} validation error(s)"},
            status_code=400,
        )

    # 4. Replay protection
    replay = await guards.replay_guard.validate(payload.event_id, payload.created_at)
    if not replay.valid:
        reason = replay.reason.value if replay.reason else "unknown"
        _log_webhook(guards, "square", payload.type, payload.event_id, f"replay_{reason}")
        if replay.reason is ReplayRejection.LEDGER_ERROR:
            return JSONResponse(
                {"error": "LEDGER_UNAVAILABLE", "message": replay.error, "retry": True},
                status_code=503,
                headers={"Retry-After": str(int(DEFAULT_RETRY_AFTER_SECONDS))},
            )
        return JSONResponse(
            {"error": "Replay protection", "details": replay.error, "reason": reason},
            status_code=400,
        )

    # 5. Dispatch
    event = WebhookEvent("square", payload.type, payload.event_id, payload)
    try:
        result = await guards.deduplicator.deduplicate(
            f"webhook:{payload.event_id}",
            lambda: guards.dispatcher.dispatch(event),
        )
    except Exception as exc:
        logger.exception("Square webhook handler failed: %s/%s", payload.type, payload.event_id)
        _log_webhook(guards, "square", payload.type, payload.event_id, "handler_failed")
        return handler_failure_response(exc, event)

    # 6. Ledger
    record_id = f"{payload.type}:{payload.resource_id or payload.event_id}"
    try:
        await guards.replay_guard.mark_processed(payload.event_id, record_id)
    except Exception:
        logger.exception("Failed to record processed webhook %s", payload.event_id)

    _log_webhook(
        guards,
        "square",
        payload.type,
        payload.event_id,
        "processed" if result.handled else "unhandled",
    )
    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook processed in %.1fms: square/%s", elapsed_ms, payload.type)

    return JSONResponse(
        {"received": True, "event_id": payload.event_id, "handled": result.handled},
        status_code=200,
    )


async def _handle_shippo(request: Request) -> JSONResponse:
    """Shippo webhook endpoint flow."""
    guards = _guards(request)
    body = await request.body()

    if not verify_shippo(
        guards.settings.shippo_webhook_secret,
        body,
        request.headers.get(SHIPPO_SIGNATURE_HEADER),
    ):
        _log_webhook(guards, "shippo", "unknown", "unknown", "signature_failed")
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    try:
        payload = ShippoWebhookPayload.model_validate_json(body)
    except ValidationError as exc:
        _log_webhook(guards, "shippo", "unknown", "unknown", "invalid_payload")
        return JSONResponse(
            {"error": "Invalid payload", "details": f"{exc.error_count()} validation error(s)"},
            status_code=400,
        )

    if payload.event not in SHIPPO_EVENT_TYPES:
        _log_webhook(guards, "shippo", payload.event, payload.event_id, "unsupported_event")
        return JSONResponse(
            {"error": "Unsupported event type", "details": payload.event},
            status_code=400,
        )

    event = WebhookEvent("shippo", payload.event, payload.event_id, payload)
    try:
        if payload.event_id:
            result = await guards.deduplicator.deduplicate(
                f"shippo:{payload.event}:{payload.event_id}",
                lambda: guards.dispatcher.dispatch(event),
            )
        else:
            result = await guards.dispatcher.dispatch(event)
    except Exception as exc:
        logger.exception("Shippo webhook handler failed: %s/%s", payload.event, payload.event_id)
        _log_webhook(guards, "shippo", payload.event, payload.event_id, "handler_failed")
        return handler_failure_response(exc, event)

    _log_webhook(
        guards,
        "shippo",
        payload.event,
        payload.event_id,
        "processed" if result.handled else "unhandled",
    )
    return JSONResponse({"received": True, "handled": result.handled}, status_code=200)


async def _debug_square_signature(request: Request) -> JSONResponse:
    guards = _guards(request)
    if not guards.settings.webhook_debug_enabled:
        return JSONResponse({"error": "Not found"}, status_code=404)

    body = await request.body()
    diagnostics = guards.verifier.diagnose(body, dict(request.headers), request_url=str(request.url))
    return JSONResponse(diagnostics.to_dict(), status_code=200)


def register_webhook_routes(app: FastAPI) -> None:
    """Register webhook endpoint routes on the FastAPI app.

    Expects app.state.guards to be set before the first request.
    """

    @app.post("/webhooks/square")
    async def square_webhook(request: Request):
        """Receive Square webhooks (signature-verified, replay-protected)."""
        return await _handle_square(request)

    @app.post("/webhooks/square/debug")
    async def square_webhook_debug(request: Request):
        """Signature diagnostics (only when WEBHOOK_DEBUG_ENABLED)."""
        return await _debug_square_signature(request)

    @app.post("/webhooks/shippo")
    async def shippo_webhook(request: Request):
        """Receive Shippo carrier webhooks (signature-verified)."""
        return await _handle_shippo(request)

    @app.get("/webhooks/status")
    async def webhook_status(request: Request):
        """Receive counts, rate limit, breaker and suspicious IP stats."""
        guards = _guards(request)
        return {
            "counts": dict(guards.audit_counts),
            "security": guards.security.stats(),
            "circuit_breakers": guards.breakers.stats(),
            "in_flight_requests": len(guards.deduplicator),
        }

    logger.info("Webhook routes registered: /webhooks/{square,shippo,status}")

