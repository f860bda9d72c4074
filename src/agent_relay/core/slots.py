from __future__ import annotations

import asyncio
import collections
import contextlib
from typing import AsyncIterator

DEFAULT_MAX_CONCURRENT = 20


class SlotLimiter:
    """Bounded pool of executor slots with FIFO hand-off.

    ``release`` passes a freed slot straight to the longest waiter, so the
    in-use count never dips while callers are queued.
    """

    def __init__(self, max_slots: int = DEFAULT_MAX_CONCURRENT) -> None:
        if max_slots <= 0:
            raise ValueError("max_slots must be > 0")
        self._max = max_slots
        self._in_use = 0
        self._waiters: collections.deque[asyncio.Future[None]] = collections.deque()

    @property
    def capacity(self) -> int:
        return self._max

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if self._in_use < self._max and not self._waiters:
            self._in_use += 1
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation landed.
                self.release()
            else:
                with contextlib.suppress(ValueError):
                    self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._in_use <= 0:
            raise RuntimeError("release() called without a held slot")
        self._in_use -= 1

    @contextlib.asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()


__all__ = ["DEFAULT_MAX_CONCURRENT", "SlotLimiter"]
