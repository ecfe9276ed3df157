"""Tests for the monitor loop scheduling and attempt supervision."""

import asyncio
import functools
from unittest.mock import MagicMock

import pytest

from bestbot.errors import DriverTimeout, FatalDriverError
from bestbot.events import MonitorState
from bestbot.monitor import EXIT_CLEAN, EXIT_FATAL, MonitorLoop
from bestbot.purchase_flow import FailureReason, Outcome

from fakes import CHECKOUT_URL, FakeShop, make_target, steps


RUN_TIMEOUT = 5.0


def build_monitor(target, shop, sink, broker, **kwargs):
    async def driver_factory(t):
        return shop

    kwargs.setdefault("dry_run", False)
    monitor = MonitorLoop(target, driver_factory, sink, broker=broker, **kwargs)
    shop.on_exhausted = monitor.stop
    return monitor


async def run(monitor):
    return await asyncio.wait_for(monitor.run(), timeout=RUN_TIMEOUT)


class HangingMachine:
    """Purchase machine whose session never answers."""

    def __init__(self, *args, dispatched=False, **kwargs):
        self.submit_dispatched = dispatched

    async def execute(self, record):
        await asyncio.sleep(60)


class TestPolling:
    @pytest.mark.asyncio
    async def test_no_opportunity_never_starts_attempt(self, target, sink, broker):
        """Test that polls without an in-stock signal never invoke the purchase machine."""
        shop = FakeShop(target, stock=["out", "unknown", "missing", "blocked", "out"])
        machine_factory = MagicMock()
        monitor = build_monitor(target, shop, sink, broker, machine_factory=machine_factory)

        assert await run(monitor) == EXIT_CLEAN
        machine_factory.assert_not_called()
        sink.attempt_finished.assert_not_awaited()
        sink.in_stock.assert_not_awaited()
        assert monitor.polls == 6
        assert monitor.records == []
        assert shop.closed is True
        assert broker.get_state(target.name) == MonitorState.STOPPED

    @pytest.mark.asyncio
    async def test_opportunity_after_misses_runs_one_attempt(self, target, sink, broker):
        """Test that the first in-stock poll produces exactly one attempt record."""
        shop = FakeShop(target, stock=["out", "out", "in"])
        monitor = build_monitor(target, shop, sink, broker)

        assert await run(monitor) == EXIT_CLEAN
        assert monitor.polls == 3
        assert len(monitor.records) == 1
        record = monitor.records[0]
        assert record.outcome == Outcome.SUCCESS
        assert record.price == 699.99
        sink.attempt_finished.assert_awaited_once_with(record)
        assert shop.clicks("#place-order") == 1
        sink.in_stock.assert_awaited_once_with(target.name, 699.99)

    @pytest.mark.asyncio
    async def test_blocked_cooldown_grows_to_ceiling(self, target, sink, broker):
        """Test that repeated challenges grow the cooldown and cap it."""
        shop = FakeShop(target, stock=["blocked"] * 4)
        monitor = build_monitor(target, shop, sink, broker)

        assert await run(monitor) == EXIT_CLEAN
        calls = sink.blocked.await_args_list
        assert [c.args[0] for c in calls] == [target.name] * 4
        assert [c.args[1] for c in calls] == ["#captcha"] * 4
        assert [c.args[2] for c in calls] == pytest.approx([0.002, 0.004, 0.008, 0.008])
        # The sold-out poll after the challenges snaps back to the floor
        assert monitor.backoff.current_interval == pytest.approx(0.001)

    @pytest.mark.asyncio
    async def test_price_over_limit_skips_attempt(self, sink, broker):
        """Test that an in-stock item above the spend limit is not bought."""
        target = make_target(limits={"max_spend": 500.0})
        shop = FakeShop(target, stock=["in"], price="$699.99")
        machine_factory = MagicMock()
        monitor = build_monitor(target, shop, sink, broker, machine_factory=machine_factory)

        assert await run(monitor) == EXIT_CLEAN
        machine_factory.assert_not_called()
        assert "price_over_limit" in await steps(broker)
        sink.in_stock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_probe_failure_is_not_an_opportunity(self, target, sink, broker):
        """Test that a slow product page is logged and polling continues."""
        shop = FakeShop(target, stock=["out"])
        shop.errors[("navigate", target.url)] = DriverTimeout("page load timed out")
        machine_factory = MagicMock()
        monitor = build_monitor(target, shop, sink, broker, machine_factory=machine_factory)

        assert await run(monitor) == EXIT_CLEAN
        machine_factory.assert_not_called()
        assert "probe_failed" in await steps(broker)
        assert monitor.polls == 3

    @pytest.mark.asyncio
    async def test_scheduled_session_recycle(self, sink, broker):
        """Test that the session is reopened every N polls."""
        target = make_target(timing={"recycle_session_every": 2})
        shop = FakeShop(target, stock=["out", "out", "out"])
        opened = []

        async def driver_factory(t):
            opened.append(t.name)
            return shop

        monitor = MonitorLoop(target, driver_factory, sink, broker=broker, dry_run=False)
        shop.on_exhausted = monitor.stop

        assert await run(monitor) == EXIT_CLEAN
        assert monitor.polls == 4
        assert len(opened) == 3
        assert (await steps(broker)).count("session_recycle") == 2

    @pytest.mark.asyncio
    async def test_pause_holds_polling(self, target, sink, broker):
        """Test that a paused monitor does not poll until stopped."""
        shop = FakeShop(target)
        monitor = build_monitor(target, shop, sink, broker)
        monitor.pause()

        task = asyncio.create_task(monitor.run())
        await asyncio.sleep(0.05)
        assert monitor.polls == 0
        assert monitor.state == MonitorState.PAUSED

        monitor.stop()
        assert await asyncio.wait_for(task, timeout=RUN_TIMEOUT) == EXIT_CLEAN
        assert monitor.polls == 0


class TestAttempts:
    @pytest.mark.asyncio
    async def test_attempts_never_overlap(self, sink, broker):
        """Test that attempts run one at a time and stop at the attempt limit."""
        target = make_target(limits={"max_attempts": 2})
        shop = FakeShop(target, stock=["in", "in"])
        active = []
        peak = []

        class FailingMachine:
            def __init__(self, *args, **kwargs):
                self.submit_dispatched = False

            async def execute(self, record):
                active.append(record)
                peak.append(len(active))
                await asyncio.sleep(0.01)
                active.remove(record)
                return record.finalize(Outcome.FAILED, FailureReason.CART_CONFIRM_FAILED, "no cart")

        monitor = build_monitor(target, shop, sink, broker, machine_factory=FailingMachine)

        assert await run(monitor) == EXIT_CLEAN
        assert len(monitor.records) == 2
        assert max(peak) == 1
        first, second = monitor.records
        assert first.finalized_at <= second.started_at
        assert monitor.polls == 2
        assert sink.attempt_finished.await_count == 2

    @pytest.mark.asyncio
    async def test_dry_run_attempt_is_aborted(self, target, sink, broker):
        """Test that dry run records an aborted attempt and never submits."""
        shop = FakeShop(target, stock=["in"])
        monitor = build_monitor(target, shop, sink, broker, dry_run=True)

        assert await run(monitor) == EXIT_CLEAN
        record = monitor.records[0]
        assert record.outcome == Outcome.ABORTED
        assert record.reason == FailureReason.DRY_RUN
        assert shop.clicks("#place-order") == 0

    @pytest.mark.parametrize("dispatched", [False, True])
    @pytest.mark.asyncio
    async def test_attempt_timeout_recycles_session(self, sink, broker, dispatched):
        """Test that a hung attempt is cut off and the session is replaced."""
        target = make_target(timing={"attempt_timeout": 0.05})
        sessions = []

        async def driver_factory(t):
            shop = FakeShop(t, stock=["in"] if not sessions else [])
            sessions.append(shop)
            return shop

        monitor = MonitorLoop(
            target, driver_factory, sink, broker=broker, dry_run=False,
            machine_factory=functools.partial(HangingMachine, dispatched=dispatched)
        )

        assert await run(monitor) == EXIT_CLEAN
        record = monitor.records[0]
        assert record.outcome == Outcome.FAILED
        assert record.reason == FailureReason.ATTEMPT_TIMEOUT
        assert record.requires_manual_verification is dispatched
        assert len(sessions) == 2
        assert all(shop.closed for shop in sessions)
        sink.attempt_finished.assert_awaited_once_with(record)

    @pytest.mark.asyncio
    async def test_cancellation_emits_aborted_record(self, target, sink, broker):
        """Test that cancelling mid-attempt still reports the attempt exactly once."""
        shop = FakeShop(target, stock=["in"])
        monitor = build_monitor(target, shop, sink, broker, machine_factory=HangingMachine)

        task = asyncio.create_task(monitor.run())
        for _ in range(500):
            if monitor.attempts_made:
                break
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(monitor.records) == 1
        record = monitor.records[0]
        assert record.outcome == Outcome.ABORTED
        assert record.reason == FailureReason.CANCELLED
        sink.attempt_finished.assert_awaited_once_with(record)
        assert shop.closed is True


class TestFatal:
    @pytest.mark.asyncio
    async def test_lost_session_while_polling(self, target, sink, broker):
        """Test that a dead browser ends the loop with a non-zero exit code."""
        shop = FakeShop(target, stock=["out"])
        shop.errors[("navigate", target.url)] = FatalDriverError("Browser has been closed")
        monitor = build_monitor(target, shop, sink, broker)

        assert await run(monitor) == EXIT_FATAL
        assert monitor.state == MonitorState.FAILED
        assert broker.get_state(target.name) == MonitorState.FAILED
        sink.fatal_error.assert_awaited_once()
        assert shop.closed is True

    @pytest.mark.asyncio
    async def test_lost_session_during_attempt(self, target, sink, broker):
        """Test that a fatal error mid-attempt reports the attempt, then exits."""
        shop = FakeShop(target, stock=["in"])
        shop.errors[("navigate", CHECKOUT_URL)] = FatalDriverError("Target closed")
        monitor = build_monitor(target, shop, sink, broker)

        assert await run(monitor) == EXIT_FATAL
        assert monitor.records[0].reason == FailureReason.DRIVER_FATAL
        sink.attempt_finished.assert_awaited_once()
        sink.fatal_error.assert_awaited_once()


class TestAlerts:
    @pytest.mark.asyncio
    async def test_failed_alert_does_not_stop_the_attempt(self, target, sink, broker):
        """Test that a broken in-stock alert is logged and the purchase still goes ahead."""
        sink.in_stock.side_effect = RuntimeError("sms gateway down")
        shop = FakeShop(target, stock=["in"])
        monitor = build_monitor(target, shop, sink, broker)

        assert await run(monitor) == EXIT_CLEAN
        assert monitor.records[0].outcome == Outcome.SUCCESS
        assert "notification_failed" in await steps(broker)
