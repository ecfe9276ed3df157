"""
Monitor loop: polls one target, dispatches purchase attempts, applies cooldowns.

Polling and purchasing run in the same task, so they can never overlap for a
target. Several targets run as independent MonitorLoop tasks, each with its
own browser session.
"""

import asyncio
import random
from typing import Awaitable, Callable, List, Optional

from bestbot import config
from bestbot.account import clear_cart, sign_in
from bestbot.backoff import BackoffPolicy
from bestbot.config import Target
from bestbot.driver import SessionDriver
from bestbot.errors import DriverError, FatalDriverError, TransientProbeError
from bestbot.events import EventBroker, EventType, MonitorState, event_broker
from bestbot.notifier import NotificationSink
from bestbot.probe import Availability, AvailabilitySignal, PageProbe
from bestbot.purchase_flow import AttemptRecord, FailureReason, Outcome, PurchaseStateMachine


EXIT_CLEAN = 0
EXIT_FATAL = 1

DriverFactory = Callable[[Target], Awaitable[SessionDriver]]
MachineFactory = Callable[..., PurchaseStateMachine]


class MonitorLoop:
    """Top-level scheduler for one target."""

    def __init__(
        self,
        target: Target,
        driver_factory: DriverFactory,
        sink: NotificationSink,
        probe: Optional[PageProbe] = None,
        stop_event: Optional[asyncio.Event] = None,
        dry_run: bool = config.DRY_RUN,
        broker: EventBroker = event_broker,
        rng: Optional[random.Random] = None,
        machine_factory: MachineFactory = PurchaseStateMachine
    ):
        self.target = target
        self.sink = sink
        self.probe = probe or PageProbe()
        self.dry_run = dry_run
        self.backoff = BackoffPolicy(target.timing, rng=rng)
        self.driver: Optional[SessionDriver] = None
        self.records: List[AttemptRecord] = []
        self.polls = 0
        self.attempts_made = 0

        self._driver_factory = driver_factory
        self._machine_factory = machine_factory
        self._stop_event = stop_event or asyncio.Event()
        self._broker = broker
        self._is_paused = False
        self._attempt_in_progress = False
        self._state = MonitorState.IDLE

    @property
    def name(self) -> str:
        return self.target.name

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    def stop(self) -> None:
        self._stop_event.set()

    def pause(self) -> None:
        self._is_paused = True

    def resume(self) -> None:
        self._is_paused = False

    def _set_state(self, state: MonitorState) -> None:
        self._state = state
        self._broker.set_state(self.name, state)

    async def _emit(self, event_type: EventType, step: str, **details) -> None:
        await self._broker.emit(event_type, step, target=self.name, **details)

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True if a stop was requested."""
        if seconds <= 0:
            return self.stopped
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.stopped

    async def _wait_if_paused(self) -> None:
        if self._is_paused:
            self._set_state(MonitorState.PAUSED)
        while self._is_paused and not self.stopped:
            await self._sleep(1.0)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def _open_session(self) -> None:
        self.driver = await self._driver_factory(self.target)
        try:
            await sign_in(self.driver, self.target, broker=self._broker)
            if self.target.limits.clear_cart_on_start:
                await clear_cart(self.driver, self.target, broker=self._broker)
        except FatalDriverError:
            raise
        except DriverError as e:
            # Polling still works signed out; the attempt will surface real problems
            await self._emit(EventType.ERROR, "session_setup_failed", error=str(e))

    async def _close_session(self) -> None:
        if self.driver is not None:
            await self.driver.close()
            self.driver = None

    async def _recycle_session(self, reason: str) -> None:
        await self._emit(EventType.STEP, "session_recycle", reason=reason)
        await self._close_session()
        await self._open_session()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """Monitor until stopped, finished, or the session dies. Returns an exit code."""
        self._set_state(MonitorState.IDLE)
        await self._emit(
            EventType.STATE_CHANGE, "monitor_started",
            url=self.target.url, product_id=self.target.product_id, dry_run=self.dry_run
        )

        try:
            await self._open_session()

            while not self.stopped:
                await self._wait_if_paused()
                if self.stopped:
                    break

                self._set_state(MonitorState.POLLING)
                if await self._sleep(self.backoff.next_delay()):
                    break

                signal = await self._poll_once()
                if await self._dispatch(signal):
                    break

            return EXIT_CLEAN

        except FatalDriverError as e:
            self._set_state(MonitorState.FAILED)
            await self._emit(EventType.ERROR, "fatal_driver_error", error=str(e))
            await self._notify(self.sink.fatal_error(self.name, str(e)))
            return EXIT_FATAL

        finally:
            if self._state != MonitorState.FAILED:
                self._set_state(MonitorState.STOPPED)
            await self._close_session()
            await self._emit(EventType.STATE_CHANGE, "monitor_stopped", state=self._state.value)

    async def _poll_once(self) -> AvailabilitySignal:
        self.polls += 1
        recycle_every = self.target.timing.recycle_session_every
        if recycle_every and self.polls % recycle_every == 0:
            await self._recycle_session("scheduled")

        try:
            await self.probe.refresh(self.driver, self.target)
        except TransientProbeError as e:
            await self._emit(EventType.PROBE, "probe_failed", error=str(e))
            self.backoff.on_idle(Availability.UNKNOWN, failed=True)
            return AvailabilitySignal.unknown(str(e))

        signal = await self.probe.check_availability(self.driver, self.target)
        await self._emit(
            EventType.PROBE, "probe", availability=signal.kind.value,
            reason=signal.reason, price=signal.price
        )
        return self._apply_backoff(signal)

    def _apply_backoff(self, signal: AvailabilitySignal) -> AvailabilitySignal:
        if signal.kind == Availability.BLOCKED:
            self.backoff.on_blocked()
        elif signal.kind in (Availability.OUT_OF_STOCK, Availability.UNKNOWN):
            self.backoff.on_idle(signal.kind)
        return signal

    async def _dispatch(self, signal: AvailabilitySignal) -> bool:
        """Act on a probe result. Returns True when the loop should finish."""
        if signal.kind == Availability.BLOCKED:
            self._set_state(MonitorState.BLOCKED)
            cooldown = self.backoff.current_interval
            await self._emit(EventType.BLOCKED, "blocked", reason=signal.reason, cooldown_seconds=cooldown)
            await self._notify(self.sink.blocked(self.name, signal.reason, cooldown))
            return False

        if not signal.is_opportunity:
            return False

        if not self._within_spend(signal):
            await self._emit(
                EventType.STEP, "price_over_limit",
                price=signal.price, max_spend=self.target.limits.max_spend
            )
            self.backoff.on_idle(Availability.OUT_OF_STOCK)
            return False

        # The alert goes out while the attempt is already running
        alert = asyncio.create_task(self._notify(self.sink.in_stock(self.name, signal.price)))
        try:
            record = await self._attempt(signal)
        finally:
            await alert

        if record.reason == FailureReason.DRIVER_FATAL:
            raise FatalDriverError(record.message)
        if self._finished(record):
            return True

        self._set_state(MonitorState.COOLDOWN)
        await self._emit(EventType.STEP, "attempt_cooldown", seconds=self.target.timing.attempt_cooldown)
        stopped = await self._sleep(self.target.timing.attempt_cooldown)
        self.backoff.reset()
        return stopped

    def _within_spend(self, signal: AvailabilitySignal) -> bool:
        max_spend = self.target.limits.max_spend
        if max_spend is None:
            return True
        return signal.price is not None and signal.price <= max_spend

    def _finished(self, record: AttemptRecord) -> bool:
        limits = self.target.limits
        if record.outcome == Outcome.SUCCESS and limits.stop_after_purchase:
            return True
        return self.attempts_made >= limits.max_attempts

    # ------------------------------------------------------------------
    # Purchase attempts
    # ------------------------------------------------------------------

    async def _attempt(self, signal: AvailabilitySignal) -> AttemptRecord:
        """Run one purchase attempt under the hard per-attempt ceiling."""
        if self._attempt_in_progress:
            raise RuntimeError(f"Purchase attempt already in progress for {self.name}")
        self._attempt_in_progress = True
        self.attempts_made += 1
        self._set_state(MonitorState.OPPORTUNITY_DETECTED)

        record = AttemptRecord(target=self.name, price=signal.price)
        machine = self._machine_factory(
            self.target, self.driver, self.probe,
            cancel_event=self._stop_event, dry_run=self.dry_run, broker=self._broker
        )
        timeout = self.target.timing.attempt_timeout
        timed_out = False
        try:
            await self._emit(
                EventType.ATTEMPT_STARTED, "attempt_started",
                attempt=self.attempts_made, price=signal.price
            )
            await asyncio.wait_for(machine.execute(record), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            if not record.finalized:
                record.finalize(
                    Outcome.FAILED, FailureReason.ATTEMPT_TIMEOUT,
                    f"Attempt exceeded {timeout:.0f}s ceiling",
                    manual_verification=machine.submit_dispatched
                )
        except asyncio.CancelledError:
            if not record.finalized:
                record.finalize(
                    Outcome.ABORTED, FailureReason.CANCELLED, "Attempt cancelled by shutdown",
                    manual_verification=machine.submit_dispatched
                )
            await self._emit_record(record)
            raise
        finally:
            self._attempt_in_progress = False

        await self._emit_record(record)

        if timed_out:
            # A hung session cannot be trusted for the next poll
            await self._recycle_session("attempt_timeout")
        return record

    async def _emit_record(self, record: AttemptRecord) -> None:
        self.records.append(record)
        await self._notify(self.sink.attempt_finished(record))

    async def _notify(self, delivery: Awaitable[None]) -> None:
        """Deliver to the sink; failures are logged and never stop the loop."""
        try:
            await delivery
        except Exception as e:
            await self._emit(EventType.ERROR, "notification_failed", error=str(e))
