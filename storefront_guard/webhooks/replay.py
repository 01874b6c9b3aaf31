"""Webhook replay protection: duplicate, stale and future-dated deliveries.

Security contract:
- Every event_id is recorded in a ledger after processing (24h TTL in Redis)
- A delivery whose event_id is already recorded is rejected as a duplicate
- Events older than max_event_age (default 300s) are rejected
- Events dated more than clock_skew (default 60s) in the future are rejected
- Unparseable timestamps, ledger failures and ledger timeouts reject (fail-closed)
- Key pattern: webhook:seen:{provider}:{event_id}
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

import redis.asyncio as aioredis

from storefront_guard.resilience.timeout import with_timeout

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENT_AGE_SECONDS = 300.0
DEFAULT_CLOCK_SKEW_SECONDS = 60.0
LEDGER_TTL_SECONDS = 86400  # 24 hours
DEFAULT_LEDGER_TIMEOUT_SECONDS = 2.0

_KEY_PREFIX = "webhook:seen"


class ReplayRejection(str, Enum):
    MISSING_EVENT_ID = "missing_event_id"
    DUPLICATE = "duplicate"
    TOO_OLD = "too_old"
    FUTURE = "future"
    INVALID_TIMESTAMP = "invalid_timestamp"
    LEDGER_ERROR = "ledger_error"


@dataclass(frozen=True)
class ReplayCheck:
    """Result of a replay validation."""

    valid: bool
    error: str | None = None
    reason: ReplayRejection | None = None


class WebhookLedger(Protocol):
    """Durable record of processed webhook events."""

    async def lookup(self, event_id: str) -> str | None:
        """Return the record id an event was processed as, or None."""
        ...

    async def record(self, event_id: str, record_id: str) -> bool:
        """Record an event. Returns False if it was already recorded."""
        ...


class InMemoryWebhookLedger:
    """Process-local ledger for development and tests."""

    def __init__(
        self,
        ttl: float = LEDGER_TTL_SECONDS,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def _now(self) -> float:
        return self._clock() if self._clock else time.time()

    async def lookup(self, event_id: str) -> str | None:
        entry = self._entries.get(event_id)
        if entry is None:
            return None
        record_id, expires_at = entry
        if self._now() >= expires_at:
            del self._entries[event_id]
            return None
        return record_id

    async def record(self, event_id: str, record_id: str) -> bool:
        if await self.lookup(event_id) is not None:
            return False
        self._entries[event_id] = (record_id, self._now() + self._ttl)
        return True

    def __len__(self) -> int:
        return len(self._entries)


class RedisWebhookLedger:
    """Redis-backed ledger shared by every worker.

    Uses SET NX EX so the check-and-mark is atomic across processes.
    """

    def __init__(self, client, provider: str = "square", ttl: int = LEDGER_TTL_SECONDS) -> None:
        self._client = client
        self._provider = provider
        self._ttl = ttl

    @classmethod
    def from_url(
        cls,
        url: str,
        provider: str = "square",
        socket_timeout: float = DEFAULT_LEDGER_TIMEOUT_SECONDS,
    ) -> RedisWebhookLedger:
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, provider=provider)

    def _key(self, event_id: str) -> str:
        return f"{_KEY_PREFIX}:{self._provider}:{event_id}"

    async def lookup(self, event_id: str) -> str | None:
        value = await self._client.get(self._key(event_id))
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    async def record(self, event_id: str, record_id: str) -> bool:
        # SET NX returns None when the key already existed
        was_set = await self._client.set(self._key(event_id), record_id, nx=True, ex=self._ttl)
        return bool(was_set)


def parse_event_time(created_at: str | float | int | datetime) -> float:
    """Convert a webhook created_at value to epoch seconds.

    Accepts ISO-8601 strings (with or without a trailing Z), datetimes and
    epoch seconds. Naive values are taken as UTC.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(created_at, bool):
        raise ValueError(f"Invalid timestamp: {created_at!r}")
    if isinstance(created_at, (int, float)):
        return float(created_at)
    if isinstance(created_at, datetime):
        moment = created_at
    elif isinstance(created_at, str) and created_at.strip():
        moment = datetime.fromisoformat(created_at.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Invalid timestamp: {created_at!r}")

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


class ReplayGuard:
    """Rejects duplicate, stale and future-dated webhook deliveries."""

    def __init__(
        self,
        ledger: WebhookLedger,
        max_event_age: float = DEFAULT_MAX_EVENT_AGE_SECONDS,
        clock_skew: float = DEFAULT_CLOCK_SKEW_SECONDS,
        clock: Callable[[], float] | None = None,
        ledger_timeout: float | None = DEFAULT_LEDGER_TIMEOUT_SECONDS,
    ) -> None:
        self.ledger = ledger
        self.max_event_age = max_event_age
        self.clock_skew = clock_skew
        self.ledger_timeout = ledger_timeout
        self._clock = clock

    def _now(self) -> float:
        return self._clock() if self._clock else time.time()

    async def validate(self, event_id: str, created_at: str | float | int | datetime) -> ReplayCheck:
        """Check a delivery against the ledger and its own timestamp.

        Checks run in order: missing id, duplicate, too old, too far in the
        future. The ledger lookup is bounded by ledger_timeout.

        Args:
            event_id: Provider event id
            created_at: Event creation time from the payload

        Returns:
            ReplayCheck with valid=True, or the first failing reason
        """
        if not event_id:
            return ReplayCheck(False, "Webhook event has no event_id", ReplayRejection.MISSING_EVENT_ID)

        try:
            existing = await with_timeout(
                self.ledger.lookup(event_id),
                self.ledger_timeout,
                operation_name="webhook ledger lookup",
            )
        except Exception:
            logger.warning("Webhook ledger lookup failed for %s, rejecting", event_id, exc_info=True)
            return ReplayCheck(
                False,
                "Unable to verify webhook has not been processed",
                ReplayRejection.LEDGER_ERROR,
            )

        if existing is not None:
            logger.warning("Duplicate webhook rejected: %s (record %s)", event_id, existing)
            return ReplayCheck(
                False,
                f"Duplicate webhook event {event_id} (already processed as {existing})",
                ReplayRejection.DUPLICATE,
            )

        try:
            event_time = parse_event_time(created_at)
        except (TypeError, ValueError):
            logger.warning("Webhook %s has unparseable created_at: %r", event_id, created_at)
            return ReplayCheck(
                False,
                f"Invalid webhook timestamp: {created_at!r}",
                ReplayRejection.INVALID_TIMESTAMP,
            )

        now = self._now()
        age = now - event_time
        if age > self.max_event_age:
            logger.warning("Stale webhook rejected: %s (age %.0fs)", event_id, age)
            return ReplayCheck(
                False,
                f"Webhook event too old: {age:.0f}s exceeds {self.max_event_age:.0f}s",
                ReplayRejection.TOO_OLD,
            )

        if event_time > now + self.clock_skew:
            logger.warning("Future-dated webhook rejected: %s (%.0fs ahead)", event_id, -age)
            return ReplayCheck(
                False,
                f"Webhook event timestamp is {-age:.0f}s in the future",
                ReplayRejection.FUTURE,
            )

        return ReplayCheck(True)

    async def mark_processed(self, event_id: str, record_id: str) -> bool:
        """Record a processed delivery. Returns False if it was already recorded."""
        recorded = await with_timeout(
            self.ledger.record(event_id, record_id),
            self.ledger_timeout,
            operation_name="webhook ledger record",
        )
        if not recorded:
            logger.info("Webhook %s was already recorded", event_id)
        return recorded
