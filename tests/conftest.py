"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It sets the TESTING environment variable so settings never read a local
.env file, and provides a controllable clock.
"""

from __future__ import annotations

import asyncio
import os
from typing import Callable

import pytest

# Set this before any imports that might load settings
os.environ["TESTING"] = "true"
os.environ.setdefault("APP_ENV", "testing")

from windowgate.core.clock import Clock  # noqa: E402


class ManualClock(Clock):
    """Clock whose time only moves when a test or a sleeper moves it.

    ``sleep`` jumps the clock forward to the sleeper's deadline (never
    backwards) and yields once to the event loop. When ``gate`` is set to an
    ``asyncio.Event``, sleepers block on it first, so a test can hold a waiter
    in place while other calls run.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self.sleeps: list[float] = []
        self.on_sleep: Callable[[float], None] | None = None
        self.gate: asyncio.Event | None = None

    def now(self) -> float:
        return self._now

    def set(self, instant: float) -> None:
        self._now = instant

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, delay: float, cancel_event: asyncio.Event | None = None) -> None:
        self.sleeps.append(delay)
        deadline = self._now + delay
        if self.on_sleep is not None:
            self.on_sleep(delay)
        if self.gate is not None:
            await self.gate.wait()
        if cancel_event is None or not cancel_event.is_set():
            self._now = max(self._now, deadline)
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> ManualClock:
    """Provide a manual clock starting at t=0."""

    return ManualClock()
