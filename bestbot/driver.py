"""
Browser session contract consumed by the probe and the purchase flow.

Every operation takes an optional Deadline so the caller can bound the worst
case latency of a whole step, not just a single call.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from bestbot.errors import DriverTimeout


# Opaque handle to an element in the remote page (a Playwright Locator in production)
ElementRef = Any

Selectors = Union[str, Sequence[str]]


def as_selector_list(selectors: Selectors) -> List[str]:
    if isinstance(selectors, str):
        return [selectors]
    return list(selectors)


class Deadline:
    """Absolute point in monotonic time after which work must stop."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def clamp(self, timeout: float) -> float:
        """Shrink a per-call timeout (seconds) so it never outlives the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)

    def check(self, what: str = "operation") -> None:
        if self.expired:
            raise DriverTimeout(f"Deadline exceeded before {what}")


class SessionDriver(ABC):
    """
    One remote browser session.

    Mutating calls (navigate, click, type_text, check) change remote state
    irreversibly. Callers must re-probe before repeating them.
    """

    # Bounded implicit wait used by find() when the caller gives no deadline
    implicit_wait: float = 10.0

    @abstractmethod
    async def navigate(self, url: str, deadline: Optional[Deadline] = None) -> None:
        ...

    @abstractmethod
    async def find(
        self,
        selectors: Selectors,
        deadline: Optional[Deadline] = None,
        unique: bool = False
    ) -> ElementRef:
        """
        Locate the first visible match among fallback selectors.

        Raises ElementNotFound if nothing appears within the implicit wait,
        AmbiguousElement if unique=True and a selector matches several elements.
        """

    @abstractmethod
    async def is_present(self, selectors: Selectors, deadline: Optional[Deadline] = None) -> bool:
        """Non-waiting presence check. Never raises for absence."""

    @abstractmethod
    async def click(self, element: ElementRef, deadline: Optional[Deadline] = None) -> None:
        ...

    @abstractmethod
    async def type_text(self, element: ElementRef, text: str, deadline: Optional[Deadline] = None) -> None:
        ...

    @abstractmethod
    async def check(self, element: ElementRef, deadline: Optional[Deadline] = None) -> None:
        ...

    @abstractmethod
    async def read_text(self, element: ElementRef, deadline: Optional[Deadline] = None) -> str:
        ...

    @abstractmethod
    async def read_value(self, element: ElementRef, deadline: Optional[Deadline] = None) -> str:
        ...

    @abstractmethod
    async def is_checked(self, element: ElementRef, deadline: Optional[Deadline] = None) -> bool:
        ...

    @abstractmethod
    async def current_url(self) -> str:
        ...

    async def screenshot(self, stage: str) -> str:
        """Save a screenshot for debugging. Returns the path, or "" if unsupported."""
        return ""

    async def start_tracing(self) -> None:
        return None

    async def stop_tracing(self, stage: str) -> str:
        return ""

    async def close(self) -> None:
        return None

    async def wait_until(
        self,
        predicate: Callable[[], Awaitable[bool]],
        timeout: float,
        deadline: Optional[Deadline] = None,
        interval: float = 0.25
    ) -> None:
        """Poll an async predicate until it is true. Raises DriverTimeout."""
        deadline = deadline or Deadline.unbounded()
        loop = asyncio.get_running_loop()
        end_time = loop.time() + deadline.clamp(timeout)

        while True:
            if await predicate():
                return
            if loop.time() >= end_time:
                raise DriverTimeout(f"Condition not met within {timeout:.1f}s")
            await asyncio.sleep(interval)
