"""Tests for Playwright error translation and session guards."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from bestbot.browser import PlaywrightDriver, _translate
from bestbot.driver import Deadline
from bestbot.errors import DriverError, DriverTimeout, FatalDriverError


class TestTranslate:
    def test_timeout(self):
        error = _translate(PlaywrightTimeout("Timeout 5000ms exceeded"), "click", "#place-order")
        assert isinstance(error, DriverTimeout)
        assert error.selector == "#place-order"

    def test_closed_session_is_fatal(self):
        error = _translate(PlaywrightError("Target page, context or browser has been closed"), "navigate")
        assert isinstance(error, FatalDriverError)

    def test_other_errors(self):
        error = _translate(PlaywrightError("net::ERR_NAME_NOT_RESOLVED"), "navigate")
        assert type(error) is DriverError
        assert "ERR_NAME_NOT_RESOLVED" in str(error)


class TestUnopenedDriver:
    @pytest.mark.asyncio
    async def test_calls_before_open_are_fatal(self, tmp_path, broker):
        driver = PlaywrightDriver("rtx-3080", profile_root=tmp_path, artifacts_dir=tmp_path, broker=broker)

        assert driver.is_open is False
        with pytest.raises(FatalDriverError):
            await driver.navigate("https://shop.example.com")
        assert await driver.screenshot("probe") == ""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, tmp_path, broker):
        driver = PlaywrightDriver("rtx-3080", profile_root=tmp_path, artifacts_dir=tmp_path, broker=broker)
        await driver.close()
        await driver.close()

        assert driver.profile_dir == tmp_path / "rtx-3080"


class TestPresenceDeadline:
    def open_driver(self, tmp_path, broker, visible=True):
        driver = PlaywrightDriver("rtx-3080", profile_root=tmp_path, artifacts_dir=tmp_path, broker=broker)
        page = MagicMock()
        page.is_closed.return_value = False
        page.locator.return_value.first.is_visible = AsyncMock(return_value=visible)
        driver._page = page
        return driver, page

    @pytest.mark.asyncio
    async def test_visible_within_deadline(self, tmp_path, broker):
        driver, page = self.open_driver(tmp_path, broker)

        assert await driver.is_present(["#place-order"], Deadline(5.0)) is True
        timeout = page.locator.return_value.first.is_visible.await_args.kwargs["timeout"]
        assert 1 <= timeout <= 150

    @pytest.mark.asyncio
    async def test_expired_deadline_checks_nothing(self, tmp_path, broker):
        """Test that a spent deadline reports absence without touching the page."""
        driver, page = self.open_driver(tmp_path, broker)

        assert await driver.is_present(["#place-order", "#submit"], Deadline(0)) is False
        page.locator.assert_not_called()
