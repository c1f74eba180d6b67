"""Unit tests for RateLimitCoordinator."""

import asyncio
import math
from unittest.mock import AsyncMock, Mock

import pytest

from windowgate.adapters.rate_limit.in_memory import SlidingWindowRule
from windowgate.core.errors import ConfigurationError
from windowgate.core.logging import get_perform_id
from windowgate.services.coordinator import AdmissionState, RateLimitCoordinator


class _RecordingRule(SlidingWindowRule):
    """Sliding-window rule that records every check and commit into a shared log."""

    def __init__(self, *args, events: list, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.events = events

    def try_admit(self, now=None):
        result = super().try_admit(now)
        self.events.append(("try_admit", self.name, result.available))
        return result

    def commit(self, timestamp: float) -> None:
        self.events.append(("commit", self.name, timestamp))
        super().commit(timestamp)


def _max_in_trailing_window(instants: list[float], window: float) -> int:
    return max(
        sum(1 for other in instants if instant - window < other <= instant)
        for instant in instants
    )


class TestConstruction:
    """Construction-time validation."""

    def test_requires_callable_action(self) -> None:
        rule = SlidingWindowRule(1, 1)

        with pytest.raises(ConfigurationError) as exc_info:
            RateLimitCoordinator(None, [rule])
        assert exc_info.value.code == "invalid_action"

        with pytest.raises(ConfigurationError):
            RateLimitCoordinator("not callable", [rule])

    @pytest.mark.parametrize("rules", [None, [], ()])
    def test_requires_at_least_one_rule(self, rules) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            RateLimitCoordinator(Mock(), rules)
        assert exc_info.value.code == "invalid_rules"

    def test_rejects_non_rule_objects(self) -> None:
        with pytest.raises(ConfigurationError):
            RateLimitCoordinator(Mock(), [object()])

    def test_rejects_non_positive_min_yield(self) -> None:
        with pytest.raises(ConfigurationError):
            RateLimitCoordinator(Mock(), [SlidingWindowRule(1, 1)], min_yield_seconds=0)

    def test_rules_are_copied_into_a_tuple(self) -> None:
        rules = [SlidingWindowRule(1, 1), SlidingWindowRule(2, 2)]
        coordinator = RateLimitCoordinator(Mock(), rules)
        rules.clear()

        assert isinstance(coordinator.rules, tuple)
        assert len(coordinator.rules) == 2


class TestPerform:
    """Admission, commit and execution behaviour."""

    @pytest.mark.asyncio
    async def test_runs_sync_action_and_returns_result(self, clock) -> None:
        action = Mock(return_value="ok")
        rule = SlidingWindowRule(2, 5, clock=clock)
        coordinator = RateLimitCoordinator(action, [rule], clock=clock)

        assert await coordinator.perform(7) == "ok"
        action.assert_called_once_with(7)
        assert rule.snapshot() == (0.0,)

    @pytest.mark.asyncio
    async def test_awaits_async_action(self, clock) -> None:
        action = AsyncMock(return_value={"status": "done"})
        coordinator = RateLimitCoordinator(
            action, [SlidingWindowRule(1, 5, clock=clock)], clock=clock
        )

        assert await coordinator.perform("payload") == {"status": "done"}
        action.assert_awaited_once_with("payload")

    @pytest.mark.asyncio
    async def test_none_argument_fails_before_waiting(self, clock) -> None:
        action = Mock()
        rule = SlidingWindowRule(1, 5, clock=clock)
        coordinator = RateLimitCoordinator(action, [rule], clock=clock)

        with pytest.raises(ConfigurationError) as exc_info:
            await coordinator.perform(None)

        assert exc_info.value.code == "invalid_argument"
        action.assert_not_called()
        assert rule.snapshot() == ()
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_waits_until_oldest_entry_expires(self, clock) -> None:
        calls: list[tuple[int, float]] = []
        rule = SlidingWindowRule(3, 5, clock=clock)
        coordinator = RateLimitCoordinator(
            lambda arg: calls.append((arg, clock.now())), [rule], clock=clock
        )

        for instant, arg in ((0.0, 1), (1.0, 2), (2.0, 3)):
            clock.set(instant)
            await coordinator.perform(arg)
        assert clock.sleeps == []

        clock.set(2.5)
        await coordinator.perform(4)
        assert clock.sleeps == [2.5]
        assert calls[-1] == (4, 5.0)

        clock.set(6.0)
        await coordinator.perform(5)
        assert clock.sleeps == [2.5]
        assert calls[-1] == (5, 6.0)
        assert rule.snapshot() == (2.0, 5.0, 6.0)

    @pytest.mark.asyncio
    async def test_action_error_propagates_after_commit(self, clock) -> None:
        error = RuntimeError("downstream failed")
        rule = SlidingWindowRule(1, 5, clock=clock)
        coordinator = RateLimitCoordinator(Mock(side_effect=error), [rule], clock=clock)

        with pytest.raises(RuntimeError) as exc_info:
            await coordinator.perform(1)

        assert exc_info.value is error
        # The admission stands even though the action failed.
        assert rule.snapshot() == (0.0,)

    @pytest.mark.asyncio
    async def test_action_is_not_retried(self, clock) -> None:
        action = AsyncMock(side_effect=ValueError("bad"))
        coordinator = RateLimitCoordinator(
            action, [SlidingWindowRule(5, 5, clock=clock)], clock=clock
        )

        with pytest.raises(ValueError):
            await coordinator.perform(1)
        assert action.await_count == 1

    @pytest.mark.asyncio
    async def test_ready_time_in_past_uses_minimal_yield(self, clock) -> None:
        rule = Mock(spec=SlidingWindowRule)
        rule.name = "stale"
        busy = Mock(available=False, retry_after_seconds=0.0, in_window=1)
        free = Mock(available=True, checked_at=0.0)
        rule.try_admit.side_effect = [busy, free, free]
        coordinator = RateLimitCoordinator(
            Mock(), [rule], clock=clock, min_yield_seconds=0.25
        )

        await coordinator.perform(1)

        assert clock.sleeps == [0.25]
        rule.commit.assert_called_once_with(0.0)

    @pytest.mark.asyncio
    async def test_perform_id_is_scoped_to_the_call(self, clock) -> None:
        seen: list[str | None] = []
        coordinator = RateLimitCoordinator(
            lambda _arg: seen.append(get_perform_id()),
            [SlidingWindowRule(5, 5, clock=clock)],
            clock=clock,
        )

        await coordinator.perform(1)
        await coordinator.perform(2)

        assert all(seen)
        assert seen[0] != seen[1]
        assert get_perform_id() is None

    @pytest.mark.asyncio
    async def test_logs_granted_and_failed_states(self, clock, caplog) -> None:
        coordinator = RateLimitCoordinator(
            Mock(side_effect=KeyError("x")),
            [SlidingWindowRule(5, 5, clock=clock)],
            clock=clock,
        )

        with caplog.at_level("INFO", logger="windowgate.services.coordinator"):
            with pytest.raises(KeyError):
                await coordinator.perform(1)

        states = {record.getMessage(): record.state for record in caplog.records}
        assert states["admission.granted"] == AdmissionState.EXECUTING.value
        assert states["action.failed"] == AdmissionState.FAILED.value


class TestMultipleRules:
    """Joint admission across several rules."""

    @pytest.mark.asyncio
    async def test_no_commit_until_every_rule_reported_available(self, clock) -> None:
        events: list = []
        loose = _RecordingRule(10, 60, clock=clock, name="loose", events=events)
        tight = _RecordingRule(1, 5, clock=clock, name="tight", events=events)
        tight.commit(0.0)
        events.clear()
        coordinator = RateLimitCoordinator(Mock(), [loose, tight], clock=clock)

        await coordinator.perform(1)

        first_commit = next(i for i, event in enumerate(events) if event[0] == "commit")
        before_commit = events[:first_commit]
        for name in ("loose", "tight"):
            assert ("try_admit", name, True) in before_commit
        assert ("try_admit", "tight", False) in before_commit
        assert [event for event in events if event[0] == "commit"] == [
            ("commit", "loose", 5.0),
            ("commit", "tight", 5.0),
        ]

    @pytest.mark.asyncio
    async def test_busy_rule_leaves_other_rules_untouched_while_waiting(self, clock) -> None:
        loose = SlidingWindowRule(10, 60, clock=clock)
        tight = SlidingWindowRule(1, 5, clock=clock)
        tight.commit(0.0)
        snapshots: list[tuple] = []
        clock.on_sleep = lambda _delay: snapshots.append(loose.snapshot())
        coordinator = RateLimitCoordinator(Mock(), [loose, tight], clock=clock)

        await coordinator.perform(1)

        assert snapshots == [()]
        assert loose.snapshot() == (5.0,)
        assert tight.snapshot() == (5.0,)

    @pytest.mark.asyncio
    async def test_twenty_calls_respect_both_windows(self, clock) -> None:
        completions: list[float] = []
        rules = [SlidingWindowRule(3, 5, clock=clock), SlidingWindowRule(10, 60, clock=clock)]
        coordinator = RateLimitCoordinator(
            lambda _arg: completions.append(clock.now()), rules, clock=clock
        )

        await asyncio.gather(*(coordinator.perform(i) for i in range(20)))

        assert len(completions) == 20
        assert completions == sorted(completions)
        assert completions[-1] - completions[0] >= math.ceil((20 - 3) / 3) * 5
        assert _max_in_trailing_window(completions, 5) <= 3
        assert _max_in_trailing_window(completions, 60) <= 10


class TestFairness:
    """Waiters are served best-effort, not first-come-first-served."""

    @pytest.mark.asyncio
    async def test_newcomer_can_take_a_freed_slot_before_older_waiter(self, clock) -> None:
        order: list[str] = []
        rule = SlidingWindowRule(1, 5, clock=clock)
        rule.commit(0.0)
        coordinator = RateLimitCoordinator(order.append, [rule], clock=clock)
        clock.gate = asyncio.Event()

        waiter = asyncio.create_task(coordinator.perform("older"))
        while not clock.sleeps:
            await asyncio.sleep(0)

        # The slot frees up while the older call is still suspended.
        clock.advance(5)
        await coordinator.perform("newer")
        assert order == ["newer"]

        clock.gate.set()
        await waiter
        assert order == ["newer", "older"]
        assert rule.snapshot() == (10.0,)
