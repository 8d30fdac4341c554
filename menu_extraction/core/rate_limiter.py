"""Per model-tier admission control for Gemini calls."""

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

from menu_extraction.config.settings import ExtractionSettings
from menu_extraction.models.menu_models import ModelTier
from menu_extraction.utils.logging import get_logger

LOGGER = get_logger(__name__)

T = TypeVar("T")

WINDOW_SECONDS = 60.0


class RateLimiter:
    """FIFO admission queue enforcing requests-per-minute and in-flight limits.

    Callers are admitted strictly in arrival order. Each admission waits for
    a free in-flight slot, then for the minimum spacing of ``60 / rpm``
    seconds since the previous admission, and never lets more than ``rpm``
    admissions fall inside a rolling one-minute window.
    """

    def __init__(
        self,
        tier: ModelTier,
        requests_per_minute: int,
        max_concurrent: int = 10,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")

        self.tier = tier
        self.requests_per_minute = requests_per_minute
        self.max_concurrent = max_concurrent
        self.min_interval = WINDOW_SECONDS / requests_per_minute
        self._clock = clock
        self._sleep = sleep

        self._admission_lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(max_concurrent)
        self._last_admitted: Optional[float] = None
        self._window: Deque[float] = deque()
        self._queued = 0
        self._in_flight = 0
        self.total_admitted = 0

    @asynccontextmanager
    async def acquire(self):
        """Hold an admission for the duration of the block."""
        self._queued += 1
        try:
            # asyncio.Lock wakes waiters in FIFO order
            async with self._admission_lock:
                await self._slots.acquire()
                try:
                    await self._wait_for_spacing()
                except BaseException:
                    self._slots.release()
                    raise
        finally:
            self._queued -= 1

        self._in_flight += 1
        try:
            yield
        finally:
            self._in_flight -= 1
            self._slots.release()

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn(*args, **kwargs)`` once admitted."""
        async with self.acquire():
            return await fn(*args, **kwargs)

    async def _wait_for_spacing(self) -> None:
        now = self._clock()
        while self._window and now - self._window[0] >= WINDOW_SECONDS:
            self._window.popleft()

        wait = 0.0
        if self._last_admitted is not None:
            wait = max(wait, self._last_admitted + self.min_interval - now)
        if len(self._window) >= self.requests_per_minute:
            wait = max(wait, self._window[0] + WINDOW_SECONDS - now)

        if wait > 0:
            LOGGER.debug(f"Rate limiter [{self.tier.value}] waiting {wait:.3f}s")
            await self._sleep(wait)

        admitted_at = self._clock()
        self._last_admitted = admitted_at
        self._window.append(admitted_at)
        self.total_admitted += 1

    def stats(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "requests_in_window": len(self._window),
            "in_flight": self._in_flight,
            "queued": self._queued,
            "total_admitted": self.total_admitted,
            "limits": {
                "requests_per_minute": self.requests_per_minute,
                "max_concurrent": self.max_concurrent,
            },
        }


def create_rate_limiters(settings: ExtractionSettings) -> Dict[ModelTier, RateLimiter]:
    """Build one limiter per model tier from settings."""
    return {
        ModelTier.PRO: RateLimiter(
            ModelTier.PRO,
            settings.pro_requests_per_minute,
            settings.pro_max_concurrent,
        ),
        ModelTier.FLASH: RateLimiter(
            ModelTier.FLASH,
            settings.flash_requests_per_minute,
            settings.flash_max_concurrent,
        ),
        ModelTier.FLASH_LITE: RateLimiter(
            ModelTier.FLASH_LITE,
            settings.flash_lite_requests_per_minute,
            settings.flash_lite_max_concurrent,
        ),
    }
