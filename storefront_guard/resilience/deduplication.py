"""In-flight request deduplication.

Concurrent callers using the same key share one execution and observe the
same result or exception. The shared task is registered before it is awaited,
so a second caller arriving during the first await joins it.

- A failed or cancelled execution is forgotten immediately, so the next call
  with that key runs again.
- A successful execution stays registered for ttl seconds after it settles.
  Callers that need a fresh run inside that window must use a different key.
- Cancelling one caller does not cancel the shared work.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestDeduplicator:
    """Shares one in-flight execution per key."""

    def __init__(self, ttl: float = 5.0) -> None:
        self.ttl = ttl
        self._pending: dict[str, asyncio.Future[Any]] = {}

    async def deduplicate(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run fn once per key among concurrent callers.

        Args:
            key: Identity of the operation (e.g. "checkout:<cart id>")
            fn: Zero-argument coroutine function performing the work

        Returns:
            The shared result of fn
        """
        task = self._pending.get(key)
        if task is not None:
            logger.debug("Joining in-flight request %s", key)
            return await asyncio.shield(task)

        task = asyncio.ensure_future(fn())
        self._pending[key] = task
        task.add_done_callback(functools.partial(self._settled, key))
        return await asyncio.shield(task)

    def _settled(self, key: str, task: asyncio.Future[Any]) -> None:
        if task.cancelled() or task.exception() is not None:
            self._forget(key, task)
            return
        task.get_loop().call_later(self.ttl, self._forget, key, task)

    def _forget(self, key: str, task: asyncio.Future[Any]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    def clear(self) -> None:
        self._pending.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)
