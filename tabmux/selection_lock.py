"""Per-conversation dedupe of in-flight tab selections.

Two requests for the same conversation arriving together must not both open
a tab. The first caller starts the operation; later callers await its result
instead of starting their own. The slot is released once the operation
settles, whether it succeeded or raised.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

T = TypeVar("T")


class SelectionLock(Generic[T]):
    def __init__(self) -> None:
        self._in_flight: dict[Hashable, asyncio.Task[T]] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        # Shielded so one cancelled waiter does not cancel the shared operation.
        return await asyncio.shield(task)

    def _release(self, key: Hashable, task: asyncio.Task[T]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark the exception retrieved; every waiter already received it.
            task.exception()

    async def wait_idle(self) -> None:
        """Wait for every in-flight operation to settle."""
        while self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)
