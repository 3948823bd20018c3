from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from .cancellation import CancellationToken
from .config import RateLimitSettings
from .logging import get_logger
from .metrics import record_rate_limit_wait

logger = get_logger(name=__name__)

MINUTE_SECONDS = 60.0
DAY_SECONDS = 86_400.0


@dataclass(slots=True)
class RateLimitStatus:
    enabled: bool
    requests_this_minute: int
    requests_today: int
    max_per_minute: int
    max_per_day: int
    seconds_until_minute_reset: float
    seconds_until_day_reset: float

    def as_dict(self) -> dict[str, object]:
        return {
            "enabled": self.enabled,
            "requests_this_minute": self.requests_this_minute,
            "requests_today": self.requests_today,
            "max_per_minute": self.max_per_minute,
            "max_per_day": self.max_per_day,
            "seconds_until_minute_reset": round(self.seconds_until_minute_reset, 3),
            "seconds_until_day_reset": round(self.seconds_until_day_reset, 3),
        }


class RequestRateLimiter:
    """Fixed-window limiter for provider calls (per minute and per day).

    ``acquire`` waits for a free slot and records the request under a FIFO
    lock, so concurrent callers never push either window past its cap.
    Limit changes apply to the next acquisition; in-flight calls are not
    affected.
    """

    def __init__(
        self,
        *,
        max_per_minute: int,
        max_per_day: int,
        enabled: bool = True,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        if max_per_minute < 1 or max_per_day < 1:
            raise ValueError("rate limits must be positive")
        self._max_per_minute = max_per_minute
        self._max_per_day = max_per_day
        self._enabled = enabled
        self._poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        now = clock()
        self._minute_count = 0
        self._day_count = 0
        self._minute_reset_at = now + MINUTE_SECONDS
        self._day_reset_at = now + DAY_SECONDS

    @classmethod
    def from_settings(cls, settings: RateLimitSettings, **kwargs: object) -> "RequestRateLimiter":
        return cls(
            max_per_minute=settings.requests_per_minute,
            max_per_day=settings.requests_per_day,
            enabled=settings.enabled,
            poll_interval=settings.poll_interval_seconds,
            **kwargs,  # type: ignore[arg-type]
        )

    @property
    def max_per_minute(self) -> int:
        return self._max_per_minute

    @property
    def max_per_day(self) -> int:
        return self._max_per_day

    def update_limits(
        self,
        *,
        max_per_minute: int | None = None,
        max_per_day: int | None = None,
        enabled: bool | None = None,
    ) -> None:
        if max_per_minute is not None:
            if max_per_minute < 1:
                raise ValueError("max_per_minute must be positive")
            self._max_per_minute = max_per_minute
        if max_per_day is not None:
            if max_per_day < 1:
                raise ValueError("max_per_day must be positive")
            self._max_per_day = max_per_day
        if enabled is not None:
            self._enabled = enabled
        logger.info(
            "rate_limits_updated",
            max_per_minute=self._max_per_minute,
            max_per_day=self._max_per_day,
            enabled=self._enabled,
        )

    def _roll_windows(self) -> float:
        now = self._clock()
        if now >= self._minute_reset_at:
            self._minute_count = 0
            self._minute_reset_at = now + MINUTE_SECONDS
        if now >= self._day_reset_at:
            self._day_count = 0
            self._day_reset_at = now + DAY_SECONDS
        return now

    def can_acquire(self) -> bool:
        if not self._enabled:
            return True
        self._roll_windows()
        return self._minute_count < self._max_per_minute and self._day_count < self._max_per_day

    def wait_time(self) -> float:
        """Seconds until the blocking window resets, 0 when a slot is free."""
        if not self._enabled:
            return 0.0
        now = self._roll_windows()
        if self._day_count >= self._max_per_day:
            return max(self._day_reset_at - now, 0.0)
        if self._minute_count >= self._max_per_minute:
            return max(self._minute_reset_at - now, 0.0)
        return 0.0

    def record_request(self) -> None:
        self._roll_windows()
        self._minute_count += 1
        self._day_count += 1

    async def wait_for_slot(self, cancel: CancellationToken | None = None) -> None:
        waited = False
        while not self.can_acquire():
            delay = min(self.wait_time(), self._poll_interval)
            if not waited:
                window = "day" if self._day_count >= self._max_per_day else "minute"
                record_rate_limit_wait(window)
                logger.info("rate_limit_wait", window=window, wait_seconds=round(self.wait_time(), 3))
                waited = True
            await self._pause(delay, cancel)
        if cancel is not None:
            cancel.raise_if_cancelled()

    async def acquire(self, cancel: CancellationToken | None = None) -> None:
        async with self._lock:
            await self.wait_for_slot(cancel)
            self.record_request()

    async def _pause(self, delay: float, cancel: CancellationToken | None) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
            if cancel is not None:
                cancel.raise_if_cancelled()
        elif cancel is not None:
            await cancel.sleep(delay)
        else:
            await asyncio.sleep(delay)

    def status(self) -> RateLimitStatus:
        now = self._roll_windows()
        return RateLimitStatus(
            enabled=self._enabled,
            requests_this_minute=self._minute_count,
            requests_today=self._day_count,
            max_per_minute=self._max_per_minute,
            max_per_day=self._max_per_day,
            seconds_until_minute_reset=max(self._minute_reset_at - now, 0.0),
            seconds_until_day_reset=max(self._day_reset_at - now, 0.0),
        )

    def reset(self) -> None:
        now = self._clock()
        self._minute_count = 0
        self._day_count = 0
        self._minute_reset_at = now + MINUTE_SECONDS
        self._day_reset_at = now + DAY_SECONDS


__all__ = ["RateLimitStatus", "RequestRateLimiter"]
