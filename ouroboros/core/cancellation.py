from __future__ import annotations

import asyncio
from contextlib import suppress

from .errors import RunCancelledError


class CancellationToken:
    """Run-wide abort signal observed at every suspension point."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError("run cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, raising ``RunCancelledError`` as soon as the run is aborted."""
        self.raise_if_cancelled()
        if delay <= 0:
            await asyncio.sleep(0)
            self.raise_if_cancelled()
            return
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        self.raise_if_cancelled()
