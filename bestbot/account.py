"""
Retailer account preparation done once per session: sign in, empty the cart.
"""

from bestbot import config
from bestbot.config import Target
from bestbot.driver import Deadline, SessionDriver
from bestbot.errors import DriverError, DriverTimeout, ElementNotFound, FatalDriverError
from bestbot.events import EventBroker, EventType, event_broker


# How long an operator gets to type an emailed verification code
VERIFICATION_WAIT_SECONDS = 300
MAX_CART_REMOVALS = 20


async def sign_in(
    driver: SessionDriver,
    target: Target,
    username: str = config.BESTBOT_USERNAME,
    password: str = config.BESTBOT_PASSWORD,
    broker: EventBroker = event_broker
) -> bool:
    """
    Sign in with the account credentials. Returns True when signed in.

    Skipped (returns False) when the target has no sign-in page or no
    credentials are configured; the persistent profile from bootstrap mode is
    then expected to hold a session already.
    """
    selectors, timing = target.selectors, target.timing
    if not (target.sign_in_url and username and password and selectors.sign_in_username):
        return False

    await driver.navigate(target.sign_in_url, Deadline(timing.page_load_timeout))

    if selectors.signed_in and await driver.is_present(selectors.signed_in):
        await broker.emit(EventType.STEP, "already_signed_in", target=target.name)
        return True

    deadline = Deadline(timing.element_timeout * 3)
    try:
        username_input = await driver.find(selectors.sign_in_username, deadline)
        password_input = await driver.find(selectors.sign_in_password, deadline)
        submit = await driver.find(selectors.sign_in_submit, deadline)
    except ElementNotFound as e:
        await broker.emit(EventType.ERROR, "sign_in_form_missing", target=target.name, error=str(e))
        return False

    await driver.type_text(username_input, username, deadline)
    await driver.type_text(password_input, password, deadline)
    await driver.click(submit, deadline)

    # Emailed verification codes are typed by the operator in the headed browser
    if selectors.verification_code and await _verification_requested(driver, target):
        await broker.emit(
            EventType.ACTION_REQUIRED, "verification_code_required", target=target.name,
            message="Enter the emailed verification code in the browser",
            wait_seconds=VERIFICATION_WAIT_SECONDS
        )
        try:
            await driver.wait_until(
                _not_present(driver, selectors.verification_code), VERIFICATION_WAIT_SECONDS, interval=2.0
            )
        except DriverTimeout:
            await broker.emit(EventType.ERROR, "verification_timeout", target=target.name)
            return False

    if selectors.signed_in:
        try:
            await driver.wait_until(
                lambda: driver.is_present(selectors.signed_in), timing.page_load_timeout
            )
        except DriverTimeout:
            await broker.emit(EventType.ERROR, "sign_in_unconfirmed", target=target.name)
            return False

    await broker.emit(EventType.STEP, "signed_in", target=target.name, message="Signed in successfully")
    return True


async def _verification_requested(driver: SessionDriver, target: Target) -> bool:
    try:
        await driver.wait_until(
            lambda: driver.is_present(target.selectors.verification_code), target.timing.element_timeout
        )
    except DriverTimeout:
        return False
    return True


def _not_present(driver: SessionDriver, selectors):
    async def predicate() -> bool:
        return not await driver.is_present(selectors)
    return predicate


async def clear_cart(driver: SessionDriver, target: Target, broker: EventBroker = event_broker) -> int:
    """
    Remove everything from the cart so a stale item cannot satisfy the
    add-to-cart confirmation. Returns the number of items removed.
    """
    if not (target.cart_url and target.selectors.cart_remove):
        return 0

    timing = target.timing
    await driver.navigate(target.cart_url, Deadline(timing.page_load_timeout))

    removed = 0
    while removed < MAX_CART_REMOVALS and await driver.is_present(target.selectors.cart_remove):
        try:
            button = await driver.find(target.selectors.cart_remove, Deadline(timing.element_timeout))
            await driver.click(button, Deadline(timing.element_timeout))
        except FatalDriverError:
            raise
        except DriverError as e:
            await broker.emit(EventType.ERROR, "cart_clear_failed", target=target.name, error=str(e))
            break
        removed += 1
        # Reload so the removed line is gone before looking again
        await driver.navigate(target.cart_url, Deadline(timing.page_load_timeout))

    if removed:
        await broker.emit(EventType.STEP, "cart_cleared", target=target.name, removed=removed)
    return removed
