"""
Exception taxonomy for the monitor, the purchase flow and the browser driver.

Expected negative page conditions (element not there yet, item sold out) are
signal values, not exceptions. Only infrastructure failures escalate.
"""

from typing import Optional


class BotError(Exception):
    """Base class for all bot errors."""


class ConfigError(BotError):
    """Target file or environment settings are invalid."""


class DriverError(BotError):
    """A browser operation failed."""

    def __init__(self, message: str, selector: Optional[str] = None):
        super().__init__(message)
        self.selector = selector


class ElementNotFound(DriverError):
    """No element matched within the bounded implicit wait."""


class AmbiguousElement(DriverError):
    """More than one element matched where a unique match was required."""


class DriverTimeout(DriverError):
    """A wait condition or the caller's deadline ran out."""


class FatalDriverError(DriverError):
    """Transport unreachable or session unrecoverable."""


class TransientProbeError(BotError):
    """A probe could not be taken this round (network blip, slow load)."""


class BlockedError(BotError):
    """A CAPTCHA or bot challenge is on the page."""

    def __init__(self, reason: str):
        super().__init__(f"Blocked: {reason}")
        self.reason = reason


class AmbiguousSubmitError(BotError):
    """The order submit click may or may not have gone through."""
