"""
Operator notifications: stock alerts, finished attempts, blocked cooldowns and fatal errors.

Every sink may be called from several target loops at once. HTTP sinks
serialize their own deliveries; the hub isolates failures so one broken
transport never stops a monitor loop.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

import aiohttp

from bestbot import config
from bestbot.attempt_store import add_attempt
from bestbot.events import EventBroker, EventType, event_broker
from bestbot.purchase_flow import AttemptRecord, Outcome


HTTP_TIMEOUT_SECONDS = 10


def format_in_stock_message(target: str, price: Optional[float]) -> str:
    if price is None:
        return f"In Stock: {target}"
    return f"In Stock: {target} for ${price:.2f}"


def format_attempt_message(record: AttemptRecord) -> str:
    price = f" for ${record.price:.2f}" if record.price is not None else ""
    if record.outcome == Outcome.SUCCESS:
        order = f" (order {record.order_ref})" if record.order_ref else ""
        return f"Purchased: {record.target}{price}{order}"
    if record.requires_manual_verification:
        return (
            f"VERIFY MANUALLY: {record.target}{price} - order may have been placed "
            f"({record.reason.value}: {record.message})"
        )
    if record.outcome == Outcome.ABORTED:
        return f"Purchase aborted: {record.target} ({record.reason.value})"
    return f"Purchase failed: {record.target} ({record.reason.value}: {record.message})"


class NotificationSink(ABC):
    """Receives stock alerts and terminal events for delivery to the operator."""

    @abstractmethod
    async def attempt_finished(self, record: AttemptRecord) -> None:
        ...

    async def in_stock(self, target: str, price: Optional[float]) -> None:
        return None

    async def blocked(self, target: str, reason: str, cooldown: float) -> None:
        return None

    async def fatal_error(self, target: str, error: str) -> None:
        return None


class EventSink(NotificationSink):
    """Publishes notifications on the event stream (stdout + SSE)."""

    def __init__(self, broker: EventBroker = event_broker):
        self._broker = broker

    async def attempt_finished(self, record: AttemptRecord) -> None:
        summary = record.to_dict()
        self._broker.set_last_attempt(record.target, summary)
        details = {key: value for key, value in summary.items() if key not in ("target", "message")}
        await self._broker.emit(
            EventType.ATTEMPT_FINISHED, "attempt_finished", target=record.target,
            message=format_attempt_message(record), detail=record.message, **details
        )

    async def in_stock(self, target: str, price: Optional[float]) -> None:
        await self._broker.emit(
            EventType.STEP, "in_stock_alert", target=target,
            message=format_in_stock_message(target, price), price=price
        )

    async def blocked(self, target: str, reason: str, cooldown: float) -> None:
        await self._broker.emit(
            EventType.BLOCKED, "blocked_cooldown", target=target,
            reason=reason, cooldown_seconds=round(cooldown, 1)
        )

    async def fatal_error(self, target: str, error: str) -> None:
        await self._broker.emit(EventType.ERROR, "target_terminated", target=target, error=error)


class AttemptLogSink(NotificationSink):
    """Appends every finished attempt to the JSON attempt log."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path

    async def attempt_finished(self, record: AttemptRecord) -> None:
        add_attempt(record.to_dict(), self.path)


class HttpSink(NotificationSink):
    """Base for text-message transports. Deliveries are serialized per sink."""

    def __init__(self):
        self._lock = asyncio.Lock()

    @abstractmethod
    async def _post(self, session: aiohttp.ClientSession, text: str) -> None:
        ...

    async def send(self, text: str) -> None:
        timeout = aiohttp.ClientTimeout(total=HTTP_TIMEOUT_SECONDS)
        async with self._lock:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                await self._post(session, text)

    async def attempt_finished(self, record: AttemptRecord) -> None:
        await self.send(format_attempt_message(record))

    async def in_stock(self, target: str, price: Optional[float]) -> None:
        await self.send(format_in_stock_message(target, price))

    async def blocked(self, target: str, reason: str, cooldown: float) -> None:
        await self.send(f"Blocked: {target} hit a bot check ({reason}), pausing {cooldown:.0f}s")

    async def fatal_error(self, target: str, error: str) -> None:
        await self.send(f"Stopped: {target} - {error}. Restart required.")


class DiscordWebhookSink(HttpSink):
    def __init__(self, webhook_url: str):
        super().__init__()
        self.webhook_url = webhook_url

    async def _post(self, session: aiohttp.ClientSession, text: str) -> None:
        async with session.post(self.webhook_url, json={"content": text}) as response:
            response.raise_for_status()


class TwilioSmsSink(HttpSink):
    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(self, sid: str, auth_token: str, from_number: str, to_number: str):
        super().__init__()
        self.sid = sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.to_number = to_number

    @property
    def url(self) -> str:
        return f"{self.BASE_URL}/{self.sid}/Messages.json"

    async def _post(self, session: aiohttp.ClientSession, text: str) -> None:
        async with session.post(
            self.url,
            data={"Body": text, "To": self.to_number, "From": self.from_number},
            auth=aiohttp.BasicAuth(self.sid, self.auth_token),
        ) as response:
            response.raise_for_status()


class NotificationHub(NotificationSink):
    """Fans each notification out to all sinks; failures are logged, never raised."""

    def __init__(self, sinks: List[NotificationSink], broker: EventBroker = event_broker):
        self.sinks = list(sinks)
        self._broker = broker

    async def _deliver(self, kind: str, target: str, calls) -> None:
        results = await asyncio.gather(*calls, return_exceptions=True)
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                await self._broker.emit(
                    EventType.ERROR, "notification_failed", target=target,
                    sink=type(sink).__name__, kind=kind, error=str(result)
                )

    async def attempt_finished(self, record: AttemptRecord) -> None:
        await self._deliver(
            "attempt_finished", record.target,
            [sink.attempt_finished(record) for sink in self.sinks]
        )

    async def in_stock(self, target: str, price: Optional[float]) -> None:
        await self._deliver("in_stock", target, [sink.in_stock(target, price) for sink in self.sinks])

    async def blocked(self, target: str, reason: str, cooldown: float) -> None:
        await self._deliver("blocked", target, [sink.blocked(target, reason, cooldown) for sink in self.sinks])

    async def fatal_error(self, target: str, error: str) -> None:
        await self._deliver("fatal_error", target, [sink.fatal_error(target, error) for sink in self.sinks])


def build_notification_hub(broker: EventBroker = event_broker) -> NotificationHub:
    """Event stream and attempt log always; Discord and Twilio when configured."""
    sinks: List[NotificationSink] = [EventSink(broker), AttemptLogSink()]
    if config.DISCORD_WEBHOOK_URL:
        sinks.append(DiscordWebhookSink(config.DISCORD_WEBHOOK_URL))
    twilio = (config.TWILIO_SID, config.TWILIO_AUTH_TOKEN, config.TWILIO_FROM_NUMBER, config.TWILIO_TO_NUMBER)
    if all(twilio):
        sinks.append(TwilioSmsSink(*twilio))
    return NotificationHub(sinks, broker)
