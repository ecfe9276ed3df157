"""
Purchase flow state machine.
Handles: Add to Cart → Fill Checkout → Place Order → Order Confirmation

All transitions live in one table. Cart and checkout steps are safely
re-checkable and may be retried; the place-order click happens at most once
per attempt.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from bestbot import config
from bestbot.config import CheckoutField, Target
from bestbot.driver import Deadline, SessionDriver
from bestbot.errors import (
    AmbiguousElement,
    AmbiguousSubmitError,
    BlockedError,
    DriverError,
    DriverTimeout,
    ElementNotFound,
    FatalDriverError,
)
from bestbot.events import EventBroker, EventType, event_broker
from bestbot.probe import PageProbe


class PurchaseState(str, Enum):
    """States in the purchase flow."""
    START = "start"
    ADDED_TO_CART = "added_to_cart"
    CHECKOUT_FILLED = "checkout_filled"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ABORTED = "aborted"


class FailureReason(str, Enum):
    CART_CONFIRM_FAILED = "cart_confirm_failed"
    CHECKOUT_UNREACHABLE = "checkout_unreachable"
    FIELD_MISSING = "field_missing"
    FIELD_VERIFY_FAILED = "field_verify_failed"
    SUBMIT_UNAVAILABLE = "submit_unavailable"
    SUBMIT_AMBIGUOUS = "submit_ambiguous"
    CONFIRM_TIMEOUT = "confirm_timeout"
    ATTEMPT_TIMEOUT = "attempt_timeout"
    BLOCKED = "blocked"
    DRIVER_ERROR = "driver_error"
    DRIVER_FATAL = "driver_fatal"
    CANCELLED = "cancelled"
    DRY_RUN = "dry_run"


# Reasons that end an attempt without it having failed
ABORT_REASONS = {FailureReason.CANCELLED, FailureReason.DRY_RUN}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AttemptRecord:
    """One end-to-end purchase attempt against a target. Finalized exactly once."""
    target: str
    started_at: datetime = field(default_factory=_utcnow)
    steps_completed: List[PurchaseState] = field(default_factory=list)
    outcome: Optional[Outcome] = None
    reason: Optional[FailureReason] = None
    order_ref: Optional[str] = None
    requires_manual_verification: bool = False
    message: str = ""
    price: Optional[float] = None
    finalized_at: Optional[datetime] = None

    @property
    def finalized(self) -> bool:
        return self.outcome is not None

    @property
    def last_step(self) -> PurchaseState:
        return self.steps_completed[-1] if self.steps_completed else PurchaseState.START

    def finalize(
        self,
        outcome: Outcome,
        reason: Optional[FailureReason] = None,
        message: str = "",
        order_ref: Optional[str] = None,
        manual_verification: bool = False
    ) -> "AttemptRecord":
        if self.finalized:
            raise RuntimeError(f"Attempt for {self.target} already finalized as {self.outcome.value}")
        self.outcome = outcome
        self.reason = reason
        self.message = message
        self.order_ref = order_ref
        self.requires_manual_verification = manual_verification
        self.finalized_at = _utcnow()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "started_at": self.started_at.isoformat(),
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
            "outcome": self.outcome.value if self.outcome else None,
            "reason": self.reason.value if self.reason else None,
            "order_ref": self.order_ref,
            "steps_completed": [s.value for s in self.steps_completed],
            "requires_manual_verification": self.requires_manual_verification,
            "message": self.message,
            "price": self.price,
        }


class StepFailed(Exception):
    """A transition could not be completed."""

    def __init__(self, reason: FailureReason, message: str, retryable: bool = False):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.retryable = retryable


class PurchaseStateMachine:
    """
    Drives one purchase attempt through the retailer's checkout.

    Flow:
    1. Click "Add to Cart", confirm the cart really holds the item
    2. Open checkout, populate fields, read each one back
    3. Click "Place Order" exactly once
    4. Wait for the order confirmation marker
    """

    # state -> (next state, handler)
    TRANSITIONS = {
        PurchaseState.START: (PurchaseState.ADDED_TO_CART, "_add_to_cart"),
        PurchaseState.ADDED_TO_CART: (PurchaseState.CHECKOUT_FILLED, "_fill_checkout"),
        PurchaseState.CHECKOUT_FILLED: (PurchaseState.SUBMITTED, "_submit_order"),
        PurchaseState.SUBMITTED: (PurchaseState.CONFIRMED, "_await_confirmation"),
    }

    def __init__(
        self,
        target: Target,
        driver: SessionDriver,
        probe: Optional[PageProbe] = None,
        cancel_event: Optional[asyncio.Event] = None,
        dry_run: bool = config.DRY_RUN,
        broker: EventBroker = event_broker,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.target = target
        self.driver = driver
        self.probe = probe or PageProbe()
        self.dry_run = dry_run
        self._cancel_event = cancel_event or asyncio.Event()
        self._broker = broker
        self._sleep = sleep

        self.state = PurchaseState.START
        self.submit_dispatched = False
        self.record: Optional[AttemptRecord] = None
        self._order_ref: Optional[str] = None

    def max_tries(self, state: PurchaseState) -> int:
        """How many times the transition out of `state` may be attempted."""
        timing = self.target.timing
        if state == PurchaseState.START:
            return timing.cart_confirm_attempts
        if state == PurchaseState.ADDED_TO_CART:
            return timing.checkout_attempts
        return 1

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def _log_step(self, step: str, message: str, event_type: EventType = EventType.STEP, **details: Any) -> None:
        await self._broker.emit(
            event_type, step, target=self.target.name,
            message=message, state=self.state.value, **details
        )

    async def execute(self, record: AttemptRecord) -> AttemptRecord:
        """
        Run the flow to a terminal state and return the finalized record.

        If the task is cancelled (attempt ceiling, shutdown) the record is left
        open for the owner to finalize; a hung session must not be touched again.
        """
        self.record = record
        await self._log_step("flow_started", "Starting purchase flow", url=self.target.url)
        await self.driver.start_tracing()

        try:
            while self.state in self.TRANSITIONS:
                if self.cancelled:
                    raise StepFailed(FailureReason.CANCELLED, "Cancelled by operator")
                next_state, handler_name = self.TRANSITIONS[self.state]
                await self._run_step(getattr(self, handler_name), self.max_tries(self.state))
                await self._advance(next_state)

            record.finalize(Outcome.SUCCESS, message="Order placed", order_ref=self._order_ref)
            await self._log_step("order_placed", "Order placed successfully", order_ref=self._order_ref)

        except StepFailed as e:
            await self._fail(e)
        except FatalDriverError as e:
            await self._fail(StepFailed(FailureReason.DRIVER_FATAL, f"Browser session lost: {e}"))

        await self.driver.stop_tracing(f"attempt_{record.outcome.value}")
        return record

    async def _run_step(self, handler: Callable[[int], Awaitable[None]], tries: int) -> None:
        """Run one transition handler, retrying within its bound with fresh probes."""
        for attempt in range(1, tries + 1):
            try:
                await self._ensure_not_blocked()
                await handler(attempt)
                return
            except StepFailed as e:
                if not e.retryable or attempt == tries:
                    raise
                error = e.message
            except BlockedError as e:
                raise StepFailed(FailureReason.BLOCKED, str(e)) from e
            except AmbiguousSubmitError as e:
                raise StepFailed(FailureReason.SUBMIT_AMBIGUOUS, str(e)) from e
            except FatalDriverError:
                raise
            except DriverError as e:
                if attempt == tries:
                    raise StepFailed(FailureReason.DRIVER_ERROR, str(e)) from e
                error = str(e)

            await self._log_step(
                "step_retry", f"Retrying after: {error}",
                attempt=attempt, max_tries=tries
            )
            if self.cancelled:
                raise StepFailed(FailureReason.CANCELLED, "Cancelled by operator")
            await self._sleep(self.target.timing.retry_delay)

    async def _ensure_not_blocked(self) -> None:
        reason = await self.probe.detect_blocked(self.driver, self.target)
        if reason:
            raise BlockedError(reason)

    async def _advance(self, next_state: PurchaseState) -> None:
        previous = self.state
        self.state = next_state
        self.record.steps_completed.append(next_state)
        await self._log_step(
            "state_change", f"{previous.value} -> {next_state.value}",
            event_type=EventType.STATE_CHANGE
        )

    async def _fail(self, error: StepFailed) -> None:
        outcome = Outcome.ABORTED if error.reason in ABORT_REASONS else Outcome.FAILED
        manual = self.submit_dispatched
        self.state = PurchaseState.FAILED

        details: Dict[str, Any] = {"reason": error.reason.value}
        if outcome == Outcome.FAILED and error.reason != FailureReason.DRIVER_FATAL:
            details["screenshot"] = await self.driver.screenshot(error.reason.value)

        self.record.finalize(outcome, error.reason, error.message, manual_verification=manual)
        await self._log_step(
            "flow_failed" if outcome == Outcome.FAILED else "flow_aborted",
            error.message, event_type=EventType.ERROR if outcome == Outcome.FAILED else EventType.STEP,
            **details
        )
        if manual:
            await self._log_step(
                "manual_verification_required",
                "Order may have been placed - verify on the retailer's site",
                event_type=EventType.MANUAL_VERIFICATION,
                reason=error.reason.value
            )

    # ------------------------------------------------------------------
    # Transition handlers
    # ------------------------------------------------------------------

    async def _item_already_in_cart(self) -> bool:
        """Re-probe whether an earlier add-to-cart click took effect."""
        if self.target.cart_url:
            await self.driver.navigate(self.target.cart_url, Deadline(self.target.timing.page_load_timeout))
        return await self.probe.cart_contains(self.driver, self.target)

    async def _add_to_cart(self, attempt: int) -> None:
        """START -> ADDED_TO_CART."""
        target, timing = self.target, self.target.timing

        if attempt > 1:
            # The previous click may have landed even though confirmation never showed
            if await self._item_already_in_cart():
                await self._log_step("cart_already_contains", "Item found in cart on re-check")
                return
            await self.driver.navigate(target.url, Deadline(timing.page_load_timeout))

        deadline = Deadline(timing.element_timeout + timing.cart_confirm_timeout)
        try:
            button = await self.driver.find(target.selectors.add_to_cart, deadline)
        except ElementNotFound as e:
            raise StepFailed(FailureReason.CART_CONFIRM_FAILED, "Add to Cart button not found", retryable=True) from e

        await self.driver.click(button, deadline)
        await self._log_step("add_to_cart_clicked", "Clicked Add to Cart", attempt=attempt)

        try:
            await self.driver.wait_until(
                lambda: self.probe.cart_contains(self.driver, target),
                timing.cart_confirm_timeout,
                deadline
            )
        except DriverTimeout as e:
            raise StepFailed(
                FailureReason.CART_CONFIRM_FAILED, "Cart confirmation did not appear", retryable=True
            ) from e

        await self._log_step("cart_confirmed", "Cart confirmation received")

    async def _on_checkout_page(self) -> bool:
        """Whether checkout rendered: place-order or a checkout field is showing."""
        target = self.target
        markers = list(target.selectors.place_order)
        for checkout_field in target.checkout_fields:
            markers.extend(checkout_field.selectors)
        try:
            await self.driver.wait_until(
                lambda: self.driver.is_present(markers),
                target.timing.element_timeout,
                Deadline(target.timing.page_load_timeout)
            )
        except DriverTimeout:
            return False
        return True

    async def _open_checkout(self, attempt: int) -> None:
        target, timing = self.target, self.target.timing
        if target.checkout_url:
            await self.driver.navigate(target.checkout_url, Deadline(timing.page_load_timeout))
        elif target.selectors.proceed_to_checkout:
            proceed = target.selectors.proceed_to_checkout
            # The checkout button lives on the cart page
            if target.cart_url and not await self.driver.is_present(proceed, Deadline(timing.element_timeout)):
                await self.driver.navigate(target.cart_url, Deadline(timing.page_load_timeout))
            try:
                button = await self.driver.find(proceed, Deadline(timing.element_timeout))
            except ElementNotFound as e:
                raise StepFailed(
                    FailureReason.CHECKOUT_UNREACHABLE, "Proceed to checkout button not found", retryable=True
                ) from e
            await self.driver.click(button, Deadline(timing.element_timeout))

        if not await self._on_checkout_page():
            raise StepFailed(FailureReason.CHECKOUT_UNREACHABLE, "Checkout page did not load", retryable=True)
        await self._log_step("on_checkout_page", "On checkout page", attempt=attempt)

    async def _write_field(self, checkout_field: CheckoutField) -> None:
        timing = self.target.timing
        deadline = Deadline(timing.element_timeout)
        try:
            element = await self.driver.find(checkout_field.selectors, deadline)
        except ElementNotFound as e:
            raise StepFailed(
                FailureReason.FIELD_MISSING, f"Checkout field '{checkout_field.name}' not found"
            ) from e

        if checkout_field.action == "check":
            if not await self.driver.is_checked(element, deadline):
                await self.driver.check(element, deadline)
            verified = await self.driver.is_checked(element, deadline)
        else:
            value = checkout_field.resolve_value()
            if not value:
                raise StepFailed(
                    FailureReason.FIELD_MISSING, f"Checkout field '{checkout_field.name}' has no value to enter"
                )
            # Leave fields the retailer already pre-filled correctly untouched
            if await self.driver.read_value(element, deadline) != value:
                await self.driver.type_text(element, value, deadline)
            verified = await self.driver.read_value(element, deadline) == value

        if not verified:
            raise StepFailed(
                FailureReason.FIELD_VERIFY_FAILED,
                f"Checkout field '{checkout_field.name}' did not hold its value",
                retryable=True
            )
        # Values are not logged: some come from secrets in the environment
        await self._log_step("field_written", f"Populated {checkout_field.name}", field=checkout_field.name)

    async def _fill_checkout(self, attempt: int) -> None:
        """ADDED_TO_CART -> CHECKOUT_FILLED."""
        await self._open_checkout(attempt)
        for checkout_field in self.target.checkout_fields:
            await self._write_field(checkout_field)

    async def _submit_order(self, attempt: int) -> None:
        """CHECKOUT_FILLED -> SUBMITTED. Never repeated."""
        if self.submit_dispatched:
            raise RuntimeError("Place order already dispatched for this attempt")

        deadline = Deadline(self.target.timing.element_timeout)
        try:
            button = await self.driver.find(self.target.selectors.place_order, deadline, unique=True)
        except (ElementNotFound, AmbiguousElement) as e:
            raise StepFailed(FailureReason.SUBMIT_UNAVAILABLE, f"Place Order button unusable: {e}") from e

        if self.dry_run:
            raise StepFailed(FailureReason.DRY_RUN, "Dry run: stopped before placing the order")

        self.submit_dispatched = True
        await self._log_step("placing_order", "Clicking Place Order")
        try:
            await self.driver.click(button, deadline)
        except DriverError as e:
            raise AmbiguousSubmitError(f"Place Order click outcome unknown: {e}") from e

    async def _await_confirmation(self, attempt: int) -> None:
        """SUBMITTED -> CONFIRMED."""
        target = self.target
        try:
            await self.driver.wait_until(
                lambda: self.probe.order_confirmed(self.driver, target),
                target.timing.confirm_timeout,
                Deadline(target.timing.confirm_timeout)
            )
        except DriverTimeout as e:
            raise StepFailed(
                FailureReason.CONFIRM_TIMEOUT,
                f"No order confirmation within {target.timing.confirm_timeout:.0f}s"
            ) from e
        except FatalDriverError:
            raise
        except DriverError as e:
            raise AmbiguousSubmitError(f"Page state unknown after Place Order: {e}") from e

        self._order_ref = await self.probe.read_order_ref(self.driver, target)
