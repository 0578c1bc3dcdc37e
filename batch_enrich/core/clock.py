"""Time source used by the rate limiter, progress tracker and runner.

All timestamps are epoch milliseconds. Sleeping is async so that pacing
delays are always awaited by the caller rather than fired and forgotten.
"""

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Minimal clock interface; tests substitute a virtual implementation."""

    def now_ms(self) -> float:
        """Current wall-clock time in epoch milliseconds."""
        ...

    async def sleep_ms(self, delay_ms: float) -> None:
        """Suspend for the given number of milliseconds."""
        ...


class SystemClock:
    """Clock backed by the real system time."""

    def now_ms(self) -> float:
        return time.time() * 1000.0

    async def sleep_ms(self, delay_ms: float) -> None:
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000.0)


_default_clock = SystemClock()


def get_clock() -> Clock:
    """Get the default system clock."""
    return _default_clock
