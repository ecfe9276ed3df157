"""
Poll interval policy for the monitor loop.

Non-actionable polls stretch the interval gently toward the poll ceiling;
blocked polls stretch it exponentially toward the cooldown ceiling. Any other
classification snaps it back to the floor.
"""

import random
import time
from dataclasses import dataclass
from typing import Callable, Optional

from bestbot.config import TimingConfig
from bestbot.probe import Availability


@dataclass
class BackoffState:
    current_interval: float
    consecutive_failures: int = 0
    last_poll_at: Optional[float] = None
    last_signal: Optional[Availability] = None


class BackoffPolicy:
    """Owns the BackoffState for one target. Only the monitor loop calls it."""

    def __init__(
        self,
        timing: TimingConfig,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.timing = timing
        self._rng = rng or random.Random()
        self._clock = clock
        self.state = BackoffState(current_interval=timing.poll_interval_min)

    @property
    def current_interval(self) -> float:
        return self.state.current_interval

    @property
    def ceiling(self) -> float:
        if self.state.last_signal == Availability.BLOCKED:
            return self.timing.blocked_cooldown_max
        return self.timing.poll_interval_max

    def _record(self, signal: Availability) -> None:
        self.state.last_signal = signal
        self.state.last_poll_at = self._clock()

    def on_idle(self, signal: Availability = Availability.OUT_OF_STOCK, failed: bool = False) -> float:
        """Out of stock, unknown, or a transient probe failure."""
        timing = self.timing
        if self.state.last_signal in (Availability.OUT_OF_STOCK, Availability.UNKNOWN):
            self.state.current_interval = min(
                self.state.current_interval * timing.poll_multiplier, timing.poll_interval_max
            )
        else:
            self.state.current_interval = timing.poll_interval_min

        if failed:
            self.state.consecutive_failures += 1
        else:
            self.state.consecutive_failures = 0
        self._record(signal)
        return self.state.current_interval

    def on_blocked(self) -> float:
        """CAPTCHA or challenge: exponential cooldown, capped."""
        timing = self.timing
        if self.state.last_signal == Availability.BLOCKED:
            interval = self.state.current_interval * timing.blocked_multiplier
        else:
            interval = timing.blocked_cooldown_base
        self.state.current_interval = min(interval, timing.blocked_cooldown_max)
        self.state.consecutive_failures += 1
        self._record(Availability.BLOCKED)
        return self.state.current_interval

    def reset(self) -> float:
        """Back to the floor after an opportunity or a finished attempt."""
        self.state.current_interval = self.timing.poll_interval_min
        self.state.consecutive_failures = 0
        self._record(Availability.IN_STOCK)
        return self.state.current_interval

    def next_delay(self) -> float:
        """Interval with jitter applied, never above the active ceiling."""
        interval = self.state.current_interval
        jitter = self.timing.jitter
        if jitter:
            interval *= self._rng.uniform(1.0 - jitter, 1.0 + jitter)
        return min(max(interval, 0.0), self.ceiling)
