"""Process-wide minimum spacing between outbound API requests."""
import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Enforces a fixed minimum gap between consecutive requests.

    One instance is owned by the request executor and shared by every caller
    that talks to the API, so all requests are serialized on a single clock.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = max(min_interval, 0.0)
        self._clock = clock
        self._sleep = sleep
        self._last_request = None
        self._lock = asyncio.Lock()
        self.total_wait = 0.0

    async def acquire(self) -> None:
        """Wait if necessary to respect the spacing, then stamp the clock."""
        async with self._lock:
            if self._last_request is not None:
                elapsed = self._clock() - self._last_request
                if elapsed < self.min_interval:
                    wait_time = self.min_interval - elapsed
                    self.total_wait += wait_time
                    await self._sleep(wait_time)

            self._last_request = self._clock()
