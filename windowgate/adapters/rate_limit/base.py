"""Rate limit rule interfaces.

The coordinator depends on this abstraction (not the concrete implementation)
so rules can be substituted in tests or extended later.

A rule answers two separate questions under its own lock:
- ``try_admit``: is there capacity right now? (never writes)
- ``commit``: record an admitted instant (never re-checks)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class AdmitResult:
    """Result of a single admission check.

    Attributes:
        available: Whether the rule has spare capacity at ``checked_at``.
        limit: Max admissions per window.
        in_window: Admissions still inside the window after eviction.
        checked_at: Instant the decision was made, read inside the rule lock.
        ready_at: Earliest instant the oldest blocking entry expires (None when available).
    """

    available: bool
    limit: int
    in_window: int
    checked_at: float
    ready_at: float | None = None

    @property
    def retry_after_seconds(self) -> float | None:
        """Seconds until ``ready_at``, or None when the rule is available."""
        if self.ready_at is None:
            return None
        return max(0.0, self.ready_at - self.checked_at)


class AbstractRule(ABC):
    """Interface for rate limit rules."""

    name: str
    limit: int
    window_seconds: float

    @abstractmethod
    def try_admit(self, now: float | None = None) -> AdmitResult:
        """Evict expired entries and report whether capacity is available.

        Args:
            now: Instant to evaluate at; read from the rule's clock when omitted.

        Returns:
            AdmitResult describing availability. No entry is recorded.
        """
        raise NotImplementedError

    @abstractmethod
    def commit(self, timestamp: float) -> None:
        """Record an admitted instant unconditionally.

        Args:
            timestamp: Instant returned as ``checked_at`` by a prior ``try_admit``.
        """
        raise NotImplementedError

    @abstractmethod
    def snapshot(self) -> tuple[float, ...]:
        """Return a copy of the recorded instants, oldest first."""
        raise NotImplementedError
