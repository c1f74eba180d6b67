"""In-memory sliding-window rule.

Notes:
- Per-instance only: two processes (or two rule objects) never share history.
- Thread-safe: every read and write of the history happens under one lock.
- The window is the half-open interval ``(now - window, now]``; an entry that
  is exactly ``window`` old has expired.
"""

from __future__ import annotations

import bisect
import logging
import numbers
import threading
from collections import deque

from windowgate.adapters.rate_limit.base import AbstractRule, AdmitResult
from windowgate.core.clock import Clock, default_clock
from windowgate.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class SlidingWindowRule(AbstractRule):
    """At most ``limit`` admissions within any trailing ``window_seconds``.

    Admission is split in two steps so a coordinator can confirm capacity on
    several rules before recording anything:

    1. ``try_admit`` evicts expired entries and compares the count to the
       limit in one critical section.
    2. ``commit`` appends the granted instant in a second critical section.

    Between the two steps another caller may also be told the rule is
    available, so the history can briefly hold one entry more than ``limit``
    per racing commit. The next eviction pass brings it back under the limit;
    ``commit`` deliberately never re-validates.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        *,
        clock: Clock | None = None,
        name: str | None = None,
    ) -> None:
        """Initialize the rule.

        Args:
            limit: Maximum number of admissions per window.
            window_seconds: Length of the trailing window in seconds.
            clock: Time source; defaults to the monotonic clock.
            name: Label used in logs; defaults to ``"<limit>/<window>s"``.

        Raises:
            ConfigurationError: If limit or window_seconds are invalid.
        """
        if isinstance(limit, bool) or not isinstance(limit, numbers.Integral) or limit <= 0:
            raise ConfigurationError(
                code="invalid_limit",
                message="limit must be a positive integer",
                details={"field": "limit", "actual_value": limit},
            )
        if (
            isinstance(window_seconds, bool)
            or not isinstance(window_seconds, numbers.Real)
            or not window_seconds > 0
        ):
            raise ConfigurationError(
                code="invalid_window",
                message="window_seconds must be a positive number",
                details={"field": "window_seconds", "actual_value": window_seconds},
            )

        self.limit = int(limit)
        self.window_seconds = float(window_seconds)
        self.name = name or f"{self.limit}/{self.window_seconds:g}s"
        self._clock = clock or default_clock
        self._lock = threading.Lock()
        self._history: deque[float] = deque()
        self._admitted = 0
        self._rejected = 0
        self._evicted = 0

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"SlidingWindowRule(limit={self.limit}, window_seconds={self.window_seconds}, "
            f"name={self.name!r}, entries={len(self._history)})"
        )

    def try_admit(self, now: float | None = None) -> AdmitResult:
        """Evict expired entries, then check capacity.

        Eviction and the count check run in one critical section, so no
        concurrent caller can observe a half-evicted history.
        """

        with self._lock:
            if now is None:
                now = self._clock.now()
            self._evict_expired_locked(now)
            count = len(self._history)

            if count < self.limit:
                return AdmitResult(
                    available=True,
                    limit=self.limit,
                    in_window=count,
                    checked_at=now,
                )

            self._rejected += 1
            ready_at = self._history[0] + self.window_seconds

        logger.debug(
            "rule.busy",
            extra={
                "rule": self.name,
                "in_window": count,
                "limit": self.limit,
                "retry_after_s": round(ready_at - now, 6),
            },
        )
        return AdmitResult(
            available=False,
            limit=self.limit,
            in_window=count,
            checked_at=now,
            ready_at=ready_at,
        )

    def commit(self, timestamp: float) -> None:
        """Append ``timestamp`` to the history without re-checking capacity."""

        with self._lock:
            if self._history and timestamp < self._history[-1]:
                # Commits racing in from other threads may arrive out of order.
                self._history.insert(bisect.bisect_right(self._history, timestamp), timestamp)
            else:
                self._history.append(timestamp)
            self._admitted += 1
            size = len(self._history)

        if size > self.limit:
            logger.debug(
                "rule.overcommitted",
                extra={"rule": self.name, "entries": size, "limit": self.limit},
            )

    def snapshot(self) -> tuple[float, ...]:
        with self._lock:
            return tuple(self._history)

    def stats(self) -> dict[str, int | float | str]:
        """Return lightweight rule metrics without exposing timestamps."""

        with self._lock:
            return {
                "name": self.name,
                "limit": self.limit,
                "window_seconds": self.window_seconds,
                "entries": len(self._history),
                "admitted": self._admitted,
                "rejected": self._rejected,
                "evicted": self._evicted,
            }

    def _evict_expired_locked(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._history and self._history[0] <= cutoff:
            self._history.popleft()
            self._evicted += 1
