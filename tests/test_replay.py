"""Tests for webhook replay protection.

Tests:
- Duplicate, too-old and future-dated rejections with distinct reasons
- Check order (duplicate first)
- Fail-closed on bad timestamps, ledger errors and slow ledgers
- In-memory and Redis ledgers (Redis mocked)
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from freezegun import freeze_time

from storefront_guard.webhooks.replay import (
    InMemoryWebhookLedger,
    RedisWebhookLedger,
    ReplayGuard,
    ReplayRejection,
    parse_event_time,
)


@pytest.fixture()
def guard(ledger, clock) -> ReplayGuard:
    return ReplayGuard(ledger, clock=clock)


class SlowLedger:
    """Ledger whose lookups never complete in time."""

    async def lookup(self, event_id: str) -> str | None:
        await asyncio.sleep(10)
        return None

    async def record(self, event_id: str, record_id: str) -> bool:
        await asyncio.sleep(10)
        return True


class TestReplayGuard:
    """ReplayGuard.validate() checks."""

    @pytest.mark.asyncio
    async def test_fresh_event_is_valid(self, guard, clock):
        result = await guard.validate("evt-1", clock.iso())
        assert result.valid is True
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_duplicate_names_existing_record(self, guard, clock):
        await guard.mark_processed("evt-1", "order.created:order-9")
        result = await guard.validate("evt-1", clock.iso())
        assert result.valid is False
        assert result.reason is ReplayRejection.DUPLICATE
        assert "order.created:order-9" in result.error

    @pytest.mark.asyncio
    async def test_duplicate_checked_before_age(self, guard, clock):
        await guard.mark_processed("evt-1", "rec")
        result = await guard.validate("evt-1", clock.iso(-3600))
        assert result.reason is ReplayRejection.DUPLICATE

    @pytest.mark.asyncio
    async def test_too_old(self, guard, clock):
        result = await guard.validate("evt-1", clock.iso(-301))
        assert result.valid is False
        assert result.reason is ReplayRejection.TOO_OLD

    @pytest.mark.asyncio
    async def test_exactly_max_age_is_valid(self, guard, clock):
        assert (await guard.validate("evt-1", clock.iso(-300))).valid is True

    @pytest.mark.asyncio
    async def test_future_beyond_skew(self, guard, clock):
        result = await guard.validate("evt-1", clock.iso(61))
        assert result.valid is False
        assert result.reason is ReplayRejection.FUTURE

    @pytest.mark.asyncio
    async def test_future_within_skew(self, guard, clock):
        assert (await guard.validate("evt-1", clock.iso(59))).valid is True

    @pytest.mark.asyncio
    async def test_custom_limits(self, ledger, clock):
        guard = ReplayGuard(ledger, max_event_age=10, clock_skew=0, clock=clock)
        assert (await guard.validate("a", clock.iso(-11))).reason is ReplayRejection.TOO_OLD
        assert (await guard.validate("b", clock.iso(1))).reason is ReplayRejection.FUTURE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("created_at", ["not-a-date", "", None, True])
    async def test_invalid_timestamp_fails_closed(self, guard, created_at):
        result = await guard.validate("evt-1", created_at)
        assert result.valid is False
        assert result.reason is ReplayRejection.INVALID_TIMESTAMP

    @pytest.mark.asyncio
    async def test_missing_event_id(self, guard, clock):
        assert (await guard.validate("", clock.iso())).reason is ReplayRejection.MISSING_EVENT_ID

    @pytest.mark.asyncio
    async def test_ledger_failure_fails_closed(self, clock):
        ledger = MagicMock()
        ledger.lookup = AsyncMock(side_effect=ConnectionError("redis down"))
        result = await ReplayGuard(ledger, clock=clock).validate("evt-1", clock.iso())
        assert result.valid is False
        assert result.reason is ReplayRejection.LEDGER_ERROR

    @pytest.mark.asyncio
    async def test_slow_ledger_fails_closed(self, clock):
        guard = ReplayGuard(SlowLedger(), clock=clock, ledger_timeout=0.01)
        result = await guard.validate("evt-1", clock.iso())
        assert result.valid is False
        assert result.reason is ReplayRejection.LEDGER_ERROR

    @pytest.mark.asyncio
    async def test_slow_ledger_does_not_block_other_work(self, clock):
        guard = ReplayGuard(SlowLedger(), clock=clock, ledger_timeout=0.05)
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.005)
                ticks += 1

        task = asyncio.create_task(ticker())
        await guard.validate("evt-1", clock.iso())
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert ticks > 0

    @pytest.mark.asyncio
    async def test_mark_processed_twice(self, guard):
        assert await guard.mark_processed("evt-1", "rec") is True
        assert await guard.mark_processed("evt-1", "rec") is False

    @pytest.mark.asyncio
    async def test_wall_clock_when_no_clock_injected(self):
        guard = ReplayGuard(InMemoryWebhookLedger(), ledger_timeout=None)
        with freeze_time("2024-06-01 12:00:00"):
            assert (await guard.validate("a", "2024-06-01T11:58:00Z")).valid is True
            assert (await guard.validate("b", "2024-06-01T11:50:00Z")).reason is ReplayRejection.TOO_OLD
            assert (await guard.validate("c", "2024-06-01T12:05:00Z")).reason is ReplayRejection.FUTURE


class TestParseEventTime:
    def test_zulu_suffix(self):
        expected = datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp()
        assert parse_event_time("2024-01-01T00:00:00Z") == expected

    def test_naive_is_utc(self):
        expected = datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp()
        assert parse_event_time("2024-01-01T00:00:00") == expected

    def test_epoch_seconds(self):
        assert parse_event_time(1_700_000_000) == 1_700_000_000.0

    def test_datetime(self):
        moment = datetime(2024, 1, 1, 8, tzinfo=timezone.utc)
        assert parse_event_time(moment) == moment.timestamp()

    def test_garbage(self):
        with pytest.raises(ValueError):
            parse_event_time("yesterday")


class TestInMemoryLedger:
    @pytest.mark.asyncio
    async def test_record_and_lookup(self, ledger):
        assert await ledger.lookup("e") is None
        assert await ledger.record("e", "rec-1") is True
        assert await ledger.lookup("e") == "rec-1"
        assert await ledger.record("e", "rec-2") is False
        assert len(ledger) == 1

    @pytest.mark.asyncio
    async def test_entries_expire(self, clock):
        ledger = InMemoryWebhookLedger(ttl=100, clock=clock)
        await ledger.record("e", "rec")
        clock.advance(100)
        assert await ledger.lookup("e") is None
        assert await ledger.record("e", "rec-2") is True


class TestRedisLedger:
    """Redis ledger uses SET NX EX under webhook:seen:{provider}:{event_id}."""

    @pytest.mark.asyncio
    async def test_record_sets_key_with_ttl(self):
        client = AsyncMock()
        client.set.return_value = True
        ledger = RedisWebhookLedger(client)
        assert await ledger.record("evt-1", "rec") is True
        client.set.assert_awaited_once_with("webhook:seen:square:evt-1", "rec", nx=True, ex=86400)

    @pytest.mark.asyncio
    async def test_record_existing_key(self):
        client = AsyncMock()
        client.set.return_value = None
        assert await RedisWebhookLedger(client, provider="shippo").record("evt-1", "rec") is False

    @pytest.mark.asyncio
    async def test_lookup(self):
        client = AsyncMock()
        client.get.return_value = b"rec-1"
        assert await RedisWebhookLedger(client).lookup("evt-1") == "rec-1"
        client.get.assert_awaited_once_with("webhook:seen:square:evt-1")

    @pytest.mark.asyncio
    async def test_lookup_missing(self):
        client = AsyncMock()
        client.get.return_value = None
        assert await RedisWebhookLedger(client).lookup("evt-1") is None

    def test_from_url_sets_socket_timeouts(self):
        with patch("storefront_guard.webhooks.replay.aioredis.from_url") as from_url:
            RedisWebhookLedger.from_url("redis://localhost:6379/0", socket_timeout=1.5)
        from_url.assert_called_once_with(
            "redis://localhost:6379/0",
            decode_responses=True,
            socket_timeout=1.5,
            socket_connect_timeout=1.5,
        )
