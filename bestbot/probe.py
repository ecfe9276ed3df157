"""
Read-only page classification.

Nothing in this module clicks or types. Absence and ambiguity of page
elements are returned as signal values, never raised.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from bestbot.config import Target
from bestbot.driver import Deadline, SessionDriver, Selectors
from bestbot.errors import AmbiguousElement, DriverError, ElementNotFound, FatalDriverError, TransientProbeError


PRICE_PATTERN = re.compile(r"\$?\s*([\d,]+(?:\.\d+)?)")


class Availability(str, Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    UNKNOWN = "unknown"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class AvailabilitySignal:
    """Result of one probe. Recomputed every poll, never stored."""
    kind: Availability
    reason: str = ""
    price: Optional[float] = None

    @classmethod
    def in_stock(cls, price: Optional[float] = None) -> "AvailabilitySignal":
        return cls(Availability.IN_STOCK, price=price)

    @classmethod
    def out_of_stock(cls, reason: str = "") -> "AvailabilitySignal":
        return cls(Availability.OUT_OF_STOCK, reason)

    @classmethod
    def unknown(cls, reason: str = "") -> "AvailabilitySignal":
        return cls(Availability.UNKNOWN, reason)

    @classmethod
    def blocked(cls, reason: str) -> "AvailabilitySignal":
        return cls(Availability.BLOCKED, reason)

    @property
    def is_opportunity(self) -> bool:
        return self.kind == Availability.IN_STOCK


def parse_price(text: str) -> Optional[float]:
    """Parse "$1,299.99" style text. Returns None if there is no number."""
    match = PRICE_PATTERN.search(text or "")
    if not match:
        return None
    try:
        return float(match.group(1).replace(",", ""))
    except ValueError:
        return None


def _contains_any(text: str, needles) -> bool:
    text = text.lower()
    return any(needle.lower() in text for needle in needles)


class PageProbe:
    """Determines page state from DOM signals using the configured selectors."""

    def __init__(self, timeout: float = 5.0):
        # Upper bound for a single read during a probe
        self.timeout = timeout

    async def refresh(self, driver: SessionDriver, target: Target) -> None:
        """Reload the product page. Non-fatal failures become TransientProbeError."""
        try:
            await driver.navigate(target.url, Deadline(target.timing.page_load_timeout))
        except FatalDriverError:
            raise
        except DriverError as e:
            raise TransientProbeError(f"Product page did not load: {e}") from e

    async def detect_blocked(self, driver: SessionDriver, target: Target) -> Optional[str]:
        """Return the matching challenge selector if a CAPTCHA/bot check is showing."""
        for selector in target.selectors.blocked:
            if await driver.is_present(selector):
                return selector
        return None

    async def check_availability(self, driver: SessionDriver, target: Target) -> AvailabilitySignal:
        blocked = await self.detect_blocked(driver, target)
        if blocked:
            return AvailabilitySignal.blocked(blocked)

        deadline = Deadline(self.timeout)
        try:
            indicator = await driver.find(target.selectors.availability, deadline, unique=True)
            text = await driver.read_text(indicator, deadline)
        except ElementNotFound:
            return AvailabilitySignal.unknown("availability indicator not found")
        except AmbiguousElement:
            return AvailabilitySignal.unknown("availability indicator ambiguous")
        except FatalDriverError:
            raise
        except DriverError as e:
            return AvailabilitySignal.unknown(str(e))

        # Sold-out wording wins: some retailers keep "Add to Cart" in a hidden label
        if _contains_any(text, target.selectors.out_of_stock_text):
            return AvailabilitySignal.out_of_stock(text)
        if not _contains_any(text, target.selectors.in_stock_text):
            return AvailabilitySignal.unknown(f"unrecognised indicator text: {text!r}")

        return AvailabilitySignal.in_stock(await self.read_price(driver, target))

    async def read_price(self, driver: SessionDriver, target: Target) -> Optional[float]:
        if not target.selectors.price:
            return None
        return await self._read_optional(driver, target.selectors.price, parse_price)

    async def cart_contains(self, driver: SessionDriver, target: Target) -> bool:
        return await driver.is_present(target.selectors.cart_confirmation)

    async def order_confirmed(self, driver: SessionDriver, target: Target) -> bool:
        return await driver.is_present(target.selectors.order_confirmation)

    async def read_order_ref(self, driver: SessionDriver, target: Target) -> Optional[str]:
        if not target.selectors.order_number:
            return None
        return await self._read_optional(driver, target.selectors.order_number, lambda text: text or None)

    async def _read_optional(self, driver: SessionDriver, selectors: Selectors, convert):
        if not await driver.is_present(selectors):
            return None
        try:
            element = await driver.find(selectors, Deadline(self.timeout))
            return convert(await driver.read_text(element, Deadline(self.timeout)))
        except FatalDriverError:
            raise
        except DriverError:
            return None
