"""Time source and cooperative suspension used by rules and the coordinator.

Rules read ``now()`` inside their critical section; the coordinator uses
``sleep()`` to wait for a window to free up without holding any lock.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod


class Clock(ABC):
    """Interface for time sources.

    Tests inject a controllable implementation; production code uses
    ``MonotonicClock``.
    """

    @abstractmethod
    def now(self) -> float:
        """Return the current instant in seconds on a monotonic scale."""
        raise NotImplementedError

    @abstractmethod
    async def sleep(self, delay: float, cancel_event: asyncio.Event | None = None) -> None:
        """Suspend for ``delay`` seconds.

        Must return early, without raising, as soon as ``cancel_event`` is set.

        Args:
            delay: Seconds to suspend for.
            cancel_event: Optional event that interrupts the suspension.
        """
        raise NotImplementedError


class MonotonicClock(Clock):
    """Clock backed by ``time.monotonic`` and the running event loop."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, delay: float, cancel_event: asyncio.Event | None = None) -> None:
        if cancel_event is None:
            await asyncio.sleep(delay)
            return

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return


default_clock = MonotonicClock()
