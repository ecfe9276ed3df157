"""
SSE Event Broker for broadcasting monitor and purchase events to connected clients.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict
from enum import Enum


class EventType(str, Enum):
    STEP = "step"
    PROBE = "probe"
    STATE_CHANGE = "state_change"
    BLOCKED = "blocked"
    ERROR = "error"
    ACTION_REQUIRED = "action_required"
    ATTEMPT_STARTED = "attempt_started"
    ATTEMPT_FINISHED = "attempt_finished"
    MANUAL_VERIFICATION = "manual_verification"
    SCREENSHOT = "screenshot"


class MonitorState(str, Enum):
    IDLE = "idle"
    BOOTSTRAP = "bootstrap"
    POLLING = "polling"
    OPPORTUNITY_DETECTED = "opportunity_detected"
    BLOCKED = "blocked"
    COOLDOWN = "cooldown"
    PAUSED = "paused"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class Event:
    ts: str
    type: EventType
    step: str
    target: str = ""
    url: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        data = asdict(self)
        data["type"] = self.type.value
        return json.dumps(data, default=str)

    def to_log_line(self) -> str:
        return self.to_json()


class EventBroker:
    """Manages SSE subscriptions and event broadcasting."""

    def __init__(self, max_history: int = 200, echo: bool = True):
        self._subscribers: List[asyncio.Queue] = []
        self._history: List[Event] = []
        self._max_history = max_history
        self._echo = echo
        self._lock = asyncio.Lock()

        # Current state tracking, per target name
        self._target_states: Dict[str, MonitorState] = {}
        self._last_attempts: Dict[str, Dict[str, Any]] = {}
        self._start_time: datetime = datetime.now(timezone.utc)

    @property
    def target_states(self) -> Dict[str, MonitorState]:
        return dict(self._target_states)

    def set_state(self, target: str, state: MonitorState) -> None:
        self._target_states[target] = state

    def get_state(self, target: str) -> Optional[MonitorState]:
        return self._target_states.get(target)

    def set_last_attempt(self, target: str, attempt: Dict[str, Any]) -> None:
        self._last_attempts[target] = attempt

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self._start_time).total_seconds()

    def create_event(
        self,
        event_type: EventType,
        step: str,
        target: str = "",
        url: str = "",
        details: Dict[str, Any] = None
    ) -> Event:
        return Event(
            ts=datetime.now(timezone.utc).isoformat(),
            type=event_type,
            step=step,
            target=target,
            url=url,
            details=details or {}
        )

    async def publish(self, event: Event) -> None:
        """Publish an event to all subscribers and log it."""
        # Log to stdout as structured JSON
        if self._echo:
            print(event.to_log_line(), flush=True)

        async with self._lock:
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]

            dead_subscribers = []
            for queue in self._subscribers:
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    dead_subscribers.append(queue)

            for queue in dead_subscribers:
                self._subscribers.remove(queue)

    async def emit(
        self,
        event_type: EventType,
        step: str,
        target: str = "",
        url: str = "",
        **details: Any
    ) -> Event:
        """Shorthand for create_event + publish."""
        event = self.create_event(event_type, step, target=target, url=url, details=details)
        await self.publish(event)
        return event

    async def subscribe(self) -> AsyncGenerator[Event, None]:
        """Subscribe to events. Returns an async generator."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=100)

        async with self._lock:
            self._subscribers.append(queue)

        try:
            while True:
                event = await queue.get()
                yield event
        finally:
            async with self._lock:
                if queue in self._subscribers:
                    self._subscribers.remove(queue)

    async def get_history(self, limit: int = 50, target: Optional[str] = None) -> List[Event]:
        """Get recent event history, optionally for one target."""
        async with self._lock:
            events = self._history
            if target:
                events = [e for e in events if e.target == target]
            return events[-limit:]

    def get_status(self) -> Dict[str, Any]:
        """Get current status for /status endpoint."""
        return {
            "targets": {name: state.value for name, state in self._target_states.items()},
            "last_attempts": dict(self._last_attempts),
            "uptime_seconds": self.uptime_seconds,
            "subscriber_count": len(self._subscribers)
        }


# Global event broker instance
event_broker = EventBroker()
