"""Pytest configuration and shared fixtures for bestbot tests."""

import random
from unittest.mock import AsyncMock

import pytest
from aioresponses import aioresponses

from bestbot.config import Target
from bestbot.events import EventBroker
from bestbot.notifier import NotificationSink

from fakes import FakeShop, make_target


@pytest.fixture
def broker() -> EventBroker:
    """Fresh, silent event broker so tests never share history."""
    return EventBroker(max_history=10_000, echo=False)


@pytest.fixture
def target() -> Target:
    return make_target()


@pytest.fixture
def shop(target: Target) -> FakeShop:
    """A retailer page that currently shows the item in stock."""
    shop = FakeShop(target, stock=["in"])
    shop.load_product()
    return shop


@pytest.fixture
def sink() -> AsyncMock:
    return AsyncMock(spec=NotificationSink)


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def mock_aioresponses():
    """Mock HTTP responses for testing."""
    with aioresponses() as m:
        yield m
