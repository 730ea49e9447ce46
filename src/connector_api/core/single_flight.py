"""Keyed single-flight: concurrent callers for one key share one in-flight call."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable


class SingleFlight:
    """Deduplicates concurrent async calls per key.

    The first caller for a key starts the call; callers arriving while it is
    running await the same task. The entry is dropped as soon as the task
    settles (success or failure), so a later call starts fresh.
    """

    def __init__(self):
        self._inflight: Dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))

        # Shield so a cancelled caller does not cancel the shared call
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()
