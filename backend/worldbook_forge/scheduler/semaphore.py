"""Abortable FIFO counting semaphore for cooperative asyncio tasks."""

from __future__ import annotations

import asyncio
from collections import deque

from worldbook_forge.core.errors import AbortedError


class Semaphore:
    """Admit at most ``capacity`` holders; queue the rest in arrival order.

    ``release`` hands the freed slot straight to the head waiter without
    touching ``active``, so no third party can slip into the slot between the
    release and the waiter resuming. ``abort`` fails every queued acquirer;
    holders that were already admitted keep their slot until they release.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.active = 0
        self.aborted = False
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if self.aborted:
            raise AbortedError("semaphore aborted")
        if self.active < self.capacity:
            self.active += 1
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # slot was handed over just before cancellation; pass it on
                self.release()
            else:
                self._discard(waiter)
            raise

    def release(self) -> None:
        while self._waiters and not self.aborted:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self.active > 0:
            self.active -= 1

    def abort(self) -> None:
        self.aborted = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(AbortedError("semaphore aborted"))

    def reset(self) -> None:
        """Clear the abort flag, counters and queue between independent batches."""
        self.aborted = False
        self.active = 0
        for waiter in self._waiters:
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()

    def _discard(self, waiter: asyncio.Future[None]) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

    async def __aenter__(self) -> "Semaphore":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


__all__ = ["Semaphore"]
