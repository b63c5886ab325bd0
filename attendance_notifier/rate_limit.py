"""Delivery pacing and provider throttling detection."""

import asyncio
import random
from typing import Awaitable, Callable, List, Optional

RATE_LIMIT_MARKERS = (
    "rate-overlimit",
    "too-many-messages",
    "too many messages",
)


def is_rate_limit_error(exc: BaseException) -> bool:
    """Return ``True`` when the provider rejected the send for throttling reasons."""
    text = str(exc).lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


class DeliveryPacer:
    """Randomised pause inserted between consecutive deliveries."""

    def __init__(
        self,
        min_delay: float = 1.0,
        max_delay: float = 3.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ):
        """Store the delay window; ``sleep`` is replaceable for tests."""
        if min_delay < 0 or max_delay < min_delay:
            raise ValueError("delay window must satisfy 0 <= min_delay <= max_delay")
        self.min_delay = float(min_delay)
        self.max_delay = float(max_delay)
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self.history: List[float] = []

    def next_delay(self) -> float:
        """Return the next delay in seconds, uniformly drawn from the window."""
        return self._rng.uniform(self.min_delay, self.max_delay)

    async def wait(self) -> float:
        """Sleep for one randomised delay and return its length."""
        delay = self.next_delay()
        self.history.append(delay)
        del self.history[:-100]
        await self._sleep(delay)
        return delay
