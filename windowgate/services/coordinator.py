"""Coordinator admitting an action only when every rate limit rule has capacity.

A ``perform`` call moves through these states:

    WAITING -> ALL_GRANTED -> COMMITTING -> EXECUTING -> DONE | FAILED
       \\-> CANCELLED

- WAITING: one wait loop per rule runs concurrently. Each loop asks its rule
  for capacity and, while the rule is busy, suspends until the oldest blocking
  entry expires. No rule is written to in this state.
- ALL_GRANTED / COMMITTING: every rule has reported capacity. The coordinator
  confirms all rules in one pass without suspending, then commits the granted
  instant into each of them. If a rule lost its capacity to another caller in
  the meantime, nothing is committed and the call goes back to WAITING.
- EXECUTING: the action runs; its outcome is returned or raised unchanged.

Cancellation is honoured until the commit and ignored afterwards, so an
action is never charged to some rules and not others.

Fairness is best-effort: waiters are not queued, and a newly arriving call can
take a freed slot ahead of an older waiter. Under sustained load a waiter may
starve.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Iterable

from windowgate.adapters.rate_limit.base import AbstractRule, AdmitResult
from windowgate.core.clock import Clock, default_clock
from windowgate.core.errors import AdmissionCancelledError, ConfigurationError
from windowgate.core.logging import reset_perform_id, set_perform_id

logger = logging.getLogger(__name__)

DEFAULT_MIN_YIELD_SECONDS = 0.001


class AdmissionState(str, Enum):
    """Lifecycle of a single ``perform`` call."""

    WAITING = "waiting"
    ALL_GRANTED = "all_granted"
    COMMITTING = "committing"
    EXECUTING = "executing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RateLimitCoordinator:
    """Wrap an action with one or more rate limit rules.

    Attributes:
        rules: Immutable tuple of rules every call must satisfy.
    """

    def __init__(
        self,
        action: Callable[[Any], Any],
        rules: Iterable[AbstractRule],
        *,
        clock: Clock | None = None,
        min_yield_seconds: float = DEFAULT_MIN_YIELD_SECONDS,
    ) -> None:
        """Initialize the coordinator.

        Args:
            action: Callable of one argument; may return an awaitable.
            rules: Non-empty collection of rules. Order is kept but not significant.
            clock: Clock used for suspensions; defaults to the monotonic clock.
            min_yield_seconds: Smallest suspension when a rule's ready time has passed.

        Raises:
            ConfigurationError: If the action, rules or min_yield_seconds are invalid.
        """
        if action is None or not callable(action):
            raise ConfigurationError(
                code="invalid_action",
                message="action must be a callable",
                details={"field": "action"},
            )
        if rules is None:
            raise ConfigurationError(
                code="invalid_rules",
                message="at least one rate limit rule is required",
                details={"field": "rules"},
            )

        rule_tuple = tuple(rules)
        if not rule_tuple:
            raise ConfigurationError(
                code="invalid_rules",
                message="at least one rate limit rule is required",
                details={"field": "rules", "actual_value": 0},
            )
        for rule in rule_tuple:
            if not isinstance(rule, AbstractRule):
                raise ConfigurationError(
                    code="invalid_rules",
                    message="rules must be AbstractRule instances",
                    details={"field": "rules", "actual_value": type(rule).__name__},
                )
        if not min_yield_seconds > 0:
            raise ConfigurationError(
                code="invalid_min_yield",
                message="min_yield_seconds must be positive",
                details={"field": "min_yield_seconds", "actual_value": min_yield_seconds},
            )

        self._action = action
        self._rules = rule_tuple
        self._clock = clock or default_clock
        self._min_yield = float(min_yield_seconds)

    @property
    def rules(self) -> tuple[AbstractRule, ...]:
        return self._rules

    async def perform(self, arg: Any, *, cancel_event: asyncio.Event | None = None) -> Any:
        """Run the action with ``arg`` once every rule has capacity.

        Args:
            arg: Argument forwarded to the action; must not be None.
            cancel_event: Optional event; once set, a call that has not yet
                committed stops waiting and raises AdmissionCancelledError.

        Returns:
            Whatever the action returned (awaited if it was awaitable).

        Raises:
            ConfigurationError: If ``arg`` is None.
            AdmissionCancelledError: If ``cancel_event`` was set before commit.
            Exception: Any error raised by the action, unchanged.
        """
        if arg is None:
            raise ConfigurationError(
                code="invalid_argument",
                message="perform requires a non-None argument",
                details={"field": "arg"},
            )

        token = set_perform_id(uuid.uuid4().hex[:12])
        started_at = self._clock.now()
        state = AdmissionState.WAITING
        try:
            granted = await self._acquire(cancel_event)
            state = AdmissionState.EXECUTING
            logger.info(
                "admission.granted",
                extra={
                    "state": state.value,
                    "rules": len(self._rules),
                    "granted_at": granted[0],
                    "waited_s": round(self._clock.now() - started_at, 6),
                },
            )

            result = self._action(arg)
            if inspect.isawaitable(result):
                result = await result

            state = AdmissionState.DONE
            return result
        except AdmissionCancelledError:
            state = AdmissionState.CANCELLED
            logger.info(
                "admission.cancelled",
                extra={"state": state.value, "waited_s": round(self._clock.now() - started_at, 6)},
            )
            raise
        except Exception as exc:
            if state is not AdmissionState.EXECUTING:
                raise
            state = AdmissionState.FAILED
            logger.warning(
                "action.failed",
                extra={"state": state.value, "error_type": type(exc).__name__},
            )
            raise
        finally:
            reset_perform_id(token)

    async def _acquire(self, cancel_event: asyncio.Event | None) -> list[float]:
        """Wait until all rules grant capacity, then commit to every rule.

        Returns:
            The instant committed to each rule, in rule order.
        """
        while True:
            await self._wait_phase(cancel_event)
            logger.debug("admission.all_granted", extra={"state": AdmissionState.ALL_GRANTED.value})

            # Last point at which cancellation is honoured.
            self._raise_if_cancelled(cancel_event, self._rules)

            granted = self._confirm_all()
            if granted is None:
                logger.debug("admission.contended", extra={"state": AdmissionState.WAITING.value})
                continue

            logger.debug("admission.committing", extra={"state": AdmissionState.COMMITTING.value})
            for rule, timestamp in zip(self._rules, granted):
                rule.commit(timestamp)
            return granted

    async def _wait_phase(self, cancel_event: asyncio.Event | None) -> None:
        """Run one wait loop per rule concurrently until each reports capacity."""

        tasks = [
            asyncio.create_task(self._wait_for_rule(rule, cancel_event))
            for rule in self._rules
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _wait_for_rule(
        self,
        rule: AbstractRule,
        cancel_event: asyncio.Event | None,
    ) -> AdmitResult:
        while True:
            self._raise_if_cancelled(cancel_event, (rule,))

            result = rule.try_admit()
            if result.available:
                return result

            delay = max(result.retry_after_seconds or 0.0, self._min_yield)
            logger.debug(
                "admission.waiting",
                extra={
                    "state": AdmissionState.WAITING.value,
                    "rule": rule.name,
                    "in_window": result.in_window,
                    "retry_after_s": round(delay, 6),
                },
            )
            await self._clock.sleep(delay, cancel_event)

    def _confirm_all(self) -> list[float] | None:
        """Check every rule without suspending.

        Returns:
            Each rule's ``checked_at`` instant, or None if any rule is busy.
            Nothing is written either way.
        """
        granted: list[float] = []
        for rule in self._rules:
            result = rule.try_admit()
            if not result.available:
                return None
            granted.append(result.checked_at)
        return granted

    @staticmethod
    def _raise_if_cancelled(
        cancel_event: asyncio.Event | None,
        pending: Iterable[AbstractRule],
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise AdmissionCancelledError(
                code="admission_cancelled",
                message="perform was cancelled before admission was committed",
                details={"context": {"pending_rules": [rule.name for rule in pending]}},
            )
