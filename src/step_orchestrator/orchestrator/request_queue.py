"""FIFO async mutex for model requests that must not interleave."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


class SerializedRequestQueue:
    """Run at most one enqueued operation at a time, in arrival order.

    ``asyncio.Lock`` wakes waiters in FIFO order and is released when the
    operation raises, so one failed request never blocks the next one.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._waiting = 0

    @property
    def pending(self) -> int:
        """Callers waiting for the lock, excluding the one running."""

        return self._waiting

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def enqueue(self, operation: Callable[[], Awaitable[T] | T]) -> T:
        self._waiting += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiting -= 1
        try:
            outcome = operation()
            if inspect.isawaitable(outcome):
                return await outcome
            return outcome
        finally:
            self._lock.release()
