"""Webhook event dispatcher: routes verified payloads to registered handlers.

Security contract:
- Only payloads that passed signature and replay checks reach dispatch()
- Handlers are registered per (provider, event type) from a fixed set
- Unhandled event types are logged and acknowledged, never errors
- Handler exceptions propagate so the endpoint can classify them
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

SQUARE_EVENT_TYPES = frozenset(
    {
        "order.created",
        "order.updated",
        "order.fulfillment.updated",
        "payment.created",
        "payment.updated",
        "refund.created",
        "refund.updated",
    }
)

SHIPPO_EVENT_TYPES = frozenset(
    {
        "track_updated",
        "transaction_created",
        "transaction_updated",
    }
)

_PROVIDER_EVENT_TYPES = {
    "square": SQUARE_EVENT_TYPES,
    "shippo": SHIPPO_EVENT_TYPES,
}


class SquareWebhookPayload(BaseModel):
    """Envelope of a Square webhook notification."""

    model_config = ConfigDict(extra="allow")

    merchant_id: str
    type: str
    event_id: str = Field(min_length=1)
    created_at: str
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def resource_id(self) -> str | None:
        value = self.data.get("id")
        return str(value) if value is not None else None


class ShippoWebhookPayload(BaseModel):
    """Envelope of a Shippo webhook notification."""

    model_config = ConfigDict(extra="allow")

    event: str
    test: bool = False
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def event_id(self) -> str:
        data = self.data
        return str(
            data.get("object_id")
            or data.get("tracking_number")
            or data.get("transaction")
            or ""
        )


@dataclass
class WebhookEvent:
    """Verified webhook event ready for dispatch."""

    provider: str
    event_type: str
    event_id: str
    payload: BaseModel


@dataclass
class DispatchResult:
    event_type: str
    handled: bool
    result: Any = None


WebhookHandler = Callable[[WebhookEvent], Awaitable[Any]]


class WebhookDispatcher:
    """Registry of async handlers keyed by provider and event type."""

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], WebhookHandler] = {}

    def register(self, event_type: str, handler: WebhookHandler, provider: str = "square") -> None:
        """Register the handler for an event type.

        Raises:
            ValueError: For unknown providers or event types
        """
        supported = _PROVIDER_EVENT_TYPES.get(provider)
        if supported is None:
            raise ValueError(f"Unknown webhook provider: {provider}")
        if event_type not in supported:
            raise ValueError(f"Unsupported {provider} event type: {event_type}")
        if (provider, event_type) in self._handlers:
            logger.warning("Replacing handler for %s/%s", provider, event_type)
        self._handlers[(provider, event_type)] = handler

    def on(self, event_type: str, provider: str = "square") -> Callable[[WebhookHandler], WebhookHandler]:
        """Decorator form of register()."""

        def decorator(handler: WebhookHandler) -> WebhookHandler:
            self.register(event_type, handler, provider)
            return handler

        return decorator

    def handles(self, event_type: str, provider: str = "square") -> bool:
        return (provider, event_type) in self._handlers

    async def dispatch(self, event: WebhookEvent) -> DispatchResult:
        """Invoke the handler registered for the event."""
        handler = self._handlers.get((event.provider, event.event_type))
        if handler is None:
            logger.info(
                "No handler for %s event %s (%s), acknowledging",
                event.provider,
                event.event_type,
                event.event_id,
            )
            return DispatchResult(event.event_type, handled=False)

        result = await handler(event)
        logger.debug("Dispatched %s/%s (%s)", event.provider, event.event_type, event.event_id)
        return DispatchResult(event.event_type, handled=True, result=result)
