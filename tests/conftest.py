"""Shared fixtures for the storefront guard test suite."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from storefront_guard.config import Settings
from storefront_guard.serve import create_app
from storefront_guard.webhooks.dispatcher import WebhookDispatcher
from storefront_guard.webhooks.replay import InMemoryWebhookLedger

SQUARE_SECRET = "square-test-secret"
SQUARE_SANDBOX_SECRET = "square-sandbox-secret"
SHIPPO_SECRET = "shippo-test-secret"
NOTIFICATION_URL = "https://shop.example.com/api/webhooks/square"


class FakeClock:
    """Manually advanced time source (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def iso(self, offset: float = 0.0) -> str:
        return datetime.fromtimestamp(self.now + offset, tz=timezone.utc).isoformat()


def square_signature(body: bytes, secret: str = SQUARE_SECRET, url: str = NOTIFICATION_URL) -> str:
    """Base64 HMAC-SHA256 over notification URL + body, as Square signs it."""
    digest = hmac.new(secret.encode(), url.encode() + body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def shippo_signature(body: bytes, secret: str = SHIPPO_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> Settings:
    """Settings with test secrets, independent of the process environment."""
    return Settings(
        _env_file=None,
        square_webhook_secret=SQUARE_SECRET,
        square_webhook_secret_sandbox=SQUARE_SANDBOX_SECRET,
        square_webhook_notification_url=NOTIFICATION_URL,
        shippo_webhook_secret=SHIPPO_SECRET,
        redis_url=None,
    )


@pytest.fixture()
def dispatcher() -> WebhookDispatcher:
    return WebhookDispatcher()


@pytest.fixture()
def ledger(clock: FakeClock) -> InMemoryWebhookLedger:
    return InMemoryWebhookLedger(clock=clock)


@pytest.fixture()
def app(settings, dispatcher, ledger, clock):
    return create_app(settings=settings, dispatcher=dispatcher, ledger=ledger, clock=clock)


@pytest.fixture()
def client(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture()
def square_body(clock):
    """Build a Square webhook body dated at the fake clock's current time."""

    def build(
        event_id: str = "evt-1",
        event_type: str = "order.created",
        created_at: str | None = None,
        data: dict | None = None,
    ) -> bytes:
        return json.dumps(
            {
                "merchant_id": "MERCHANT-1",
                "type": event_type,
                "event_id": event_id,
                "created_at": created_at or clock.iso(),
                "data": data if data is not None else {"type": "order", "id": "order-123"},
            }
        ).encode()

    return build


@pytest.fixture()
def post_square(client):
    """POST a signed Square webhook."""

    def post(body: bytes, secret: str = SQUARE_SECRET, headers: dict | None = None):
        all_headers = {
            "Content-Type": "application/json",
            "User-Agent": "Square Connect v2",
            "X-Square-HmacSha256-Signature": square_signature(body, secret),
        }
        all_headers.update(headers or {})
        return client.post("/webhooks/square", content=body, headers=all_headers)

    return post
