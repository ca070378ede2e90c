import asyncio, time
from typing import Callable, Optional

class FixedDelayPacer:
    """Spaces consecutive requests at least ``delay`` seconds apart."""
    def __init__(self, delay: float, clock: Optional[Callable[[], float]] = None):
        self.delay = max(0.0, delay)
        self.clock = clock or time.monotonic
        self.last: Optional[float] = None
        self.lock = asyncio.Lock()

    async def wait(self):
        async with self.lock:
            if self.last is not None:
                remaining = self.delay - (self.clock() - self.last)
                if remaining > 0:
                    await asyncio.sleep(remaining)
            self.last = self.clock()
