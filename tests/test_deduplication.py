"""Tests for in-flight request deduplication."""

from __future__ import annotations

import asyncio

import pytest

from storefront_guard.resilience.deduplication import RequestDeduplicator


class Work:
    """Counts executions and blocks until released."""

    def __init__(self, result="done", error: Exception | None = None) -> None:
        self.calls = 0
        self.gate = asyncio.Event()
        self.result = result
        self.error = error

    async def __call__(self):
        self.calls += 1
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


class TestDeduplicate:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_execution(self):
        dedup = RequestDeduplicator(ttl=5)
        work = Work()
        first = asyncio.create_task(dedup.deduplicate("checkout:cart-1", work))
        second = asyncio.create_task(dedup.deduplicate("checkout:cart-1", work))
        await asyncio.sleep(0)
        work.gate.set()
        assert await asyncio.gather(first, second) == ["done", "done"]
        assert work.calls == 1

    @pytest.mark.asyncio
    async def test_registered_before_completion(self):
        dedup = RequestDeduplicator()
        work = Work()
        task = asyncio.create_task(dedup.deduplicate("k", work))
        await asyncio.sleep(0)
        assert "k" in dedup
        assert len(dedup) == 1
        work.gate.set()
        await task

    @pytest.mark.asyncio
    async def test_different_keys_run_separately(self):
        dedup = RequestDeduplicator()
        work = Work()
        work.gate.set()
        await asyncio.gather(dedup.deduplicate("a", work), dedup.deduplicate("b", work))
        assert work.calls == 2

    @pytest.mark.asyncio
    async def test_failure_shared_and_forgotten(self):
        dedup = RequestDeduplicator(ttl=5)
        work = Work(error=ValueError("declined"))
        first = asyncio.create_task(dedup.deduplicate("k", work))
        second = asyncio.create_task(dedup.deduplicate("k", work))
        await asyncio.sleep(0)
        work.gate.set()
        results = await asyncio.gather(first, second, return_exceptions=True)
        assert all(isinstance(r, ValueError) for r in results)
        assert "k" not in dedup

        work.error = None
        assert await dedup.deduplicate("k", work) == "done"
        assert work.calls == 2

    @pytest.mark.asyncio
    async def test_success_kept_for_ttl(self):
        dedup = RequestDeduplicator(ttl=0.05)
        work = Work()
        work.gate.set()
        assert await dedup.deduplicate("k", work) == "done"
        assert "k" in dedup
        assert await dedup.deduplicate("k", work) == "done"
        assert work.calls == 1

        await asyncio.sleep(0.1)
        assert "k" not in dedup
        await dedup.deduplicate("k", work)
        assert work.calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_work(self):
        dedup = RequestDeduplicator()
        work = Work()
        first = asyncio.create_task(dedup.deduplicate("k", work))
        second = asyncio.create_task(dedup.deduplicate("k", work))
        await asyncio.sleep(0)
        first.cancel()
        await asyncio.sleep(0)
        work.gate.set()
        assert await second == "done"
        assert first.cancelled()
        assert work.calls == 1

    @pytest.mark.asyncio
    async def test_clear(self):
        dedup = RequestDeduplicator()
        work = Work()
        work.gate.set()
        await dedup.deduplicate("k", work)
        dedup.clear()
        assert len(dedup) == 0
