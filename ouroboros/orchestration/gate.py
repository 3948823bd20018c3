from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator

from ..core.cancellation import CancellationToken
from ..core.errors import RunCancelledError
from ..core.logging import get_logger
from ..core.metrics import set_gate_occupancy

logger = get_logger(name=__name__)


class ConcurrencyGate:
    """Counting semaphore with strict FIFO hand-off and a mutable capacity.

    Raising ``max`` admits queued waiters immediately; lowering it never
    evicts current holders, it only delays new admissions until enough
    releases bring ``in_use`` under the new bound.
    """

    def __init__(self, max_concurrency: int) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._max = max_concurrency
        self._in_use = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def max(self) -> int:
        return self._max

    @max.setter
    def max(self, value: int) -> None:
        if value < 1:
            raise ValueError("max_concurrency must be at least 1")
        previous, self._max = self._max, value
        logger.info("gate_capacity_changed", previous=previous, current=value, in_use=self._in_use)
        self._wake()

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self, cancel: CancellationToken | None = None) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()
        if self._in_use < self._max and not self.waiting:
            self._in_use += 1
            self._publish()
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._publish()
        cancel_task: asyncio.Task[None] | None = None
        try:
            if cancel is None:
                await waiter
                return
            cancel_task = asyncio.ensure_future(cancel.wait())
            await asyncio.wait({waiter, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
            if waiter.done():
                return
            raise RunCancelledError("cancelled while waiting for a concurrency slot")
        except BaseException:
            self._abandon(waiter)
            raise
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()
            self._publish()

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release() called more times than acquire()")
        self._in_use -= 1
        self._wake()
        self._publish()

    @asynccontextmanager
    async def slot(self, cancel: CancellationToken | None = None) -> AsyncIterator[None]:
        await self.acquire(cancel)
        try:
            yield
        finally:
            self.release()

    def _wake(self) -> None:
        while self._waiters and self._in_use < self._max:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._in_use += 1
            waiter.set_result(None)

    def _abandon(self, waiter: asyncio.Future[None]) -> None:
        if waiter.done() and not waiter.cancelled():
            # slot was handed over before the caller gave up; pass it on
            self.release()
            return
        waiter.cancel()
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

    def _publish(self) -> None:
        set_gate_occupancy(self._in_use, self.waiting)


__all__ = ["ConcurrencyGate"]
