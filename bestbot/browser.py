"""
Playwright browser session with persistent profile support.

Each target gets its own PlaywrightDriver: its own profile directory (or its
own context on a shared CDP endpoint) and its own page. Nothing here is
process-global.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional

from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeout,
)

from bestbot import config
from bestbot.driver import Deadline, ElementRef, SessionDriver, Selectors, as_selector_list
from bestbot.errors import (
    AmbiguousElement,
    DriverError,
    DriverTimeout,
    ElementNotFound,
    FatalDriverError,
)
from bestbot.events import EventBroker, EventType, event_broker


LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
    "--window-size=1920,1080",
    "--start-maximized",
    # Basic fingerprint reduction
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--no-first-run",
    "--no-default-browser-check",
]

HIDE_WEBDRIVER_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => undefined
    });
"""

# Playwright error messages that mean the session cannot be used any more
FATAL_MARKERS = (
    "Target page, context or browser has been closed",
    "Target closed",
    "Browser has been closed",
    "Connection closed",
    "ECONNREFUSED",
    "Page crashed",
)

# Per-selector visibility probe, kept short so missing fallbacks are skipped quickly
SELECTOR_CHECK_MS = 150
POLL_SECONDS = 0.3


def _translate(error: Exception, what: str, selector: Optional[str] = None) -> DriverError:
    """Map a Playwright exception onto the driver error taxonomy."""
    if isinstance(error, PlaywrightTimeout):
        return DriverTimeout(f"{what} timed out: {error}", selector)
    message = str(error)
    if any(marker in message for marker in FATAL_MARKERS):
        return FatalDriverError(f"{what} failed, session lost: {message}", selector)
    return DriverError(f"{what} failed: {message}", selector)


class PlaywrightDriver(SessionDriver):
    """SessionDriver over Playwright's async API."""

    def __init__(
        self,
        name: str,
        headless: bool = config.HEADLESS,
        cdp_endpoint: str = config.BROWSER_CDP_ENDPOINT,
        profile_root: Path = config.PROFILE_DIR,
        artifacts_dir: Path = config.ARTIFACTS_DIR,
        implicit_wait: float = 10.0,
        broker: EventBroker = event_broker
    ):
        self.name = name
        self.headless = headless
        self.cdp_endpoint = cdp_endpoint
        self.profile_dir = Path(profile_root) / name
        self.artifacts_dir = Path(artifacts_dir)
        self.implicit_wait = implicit_wait
        self._broker = broker

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._tracing = False

    @property
    def is_open(self) -> bool:
        return self._page is not None and not self._page.is_closed()

    async def open(self) -> "PlaywrightDriver":
        """Start Playwright and create this session's context and page."""
        await self._broker.emit(
            EventType.STEP, "browser_init", target=self.name,
            message="Initializing Playwright browser",
            cdp_endpoint=self.cdp_endpoint or None
        )

        self.artifacts_dir.mkdir(parents=True, exist_ok=True)

        try:
            self._playwright = await async_playwright().start()

            if self.cdp_endpoint:
                # Remote browser on a fixed local endpoint; one context per target
                self._browser = await self._playwright.chromium.connect_over_cdp(self.cdp_endpoint)
                self._context = await self._browser.new_context(
                    viewport={"width": 1920, "height": 1080},
                    ignore_https_errors=True,
                )
            else:
                self.profile_dir.mkdir(parents=True, exist_ok=True)
                self._context = await self._playwright.chromium.launch_persistent_context(
                    user_data_dir=str(self.profile_dir),
                    headless=self.headless,
                    args=LAUNCH_ARGS,
                    viewport={"width": 1920, "height": 1080},
                    ignore_https_errors=True,
                )

            await self._context.add_init_script(HIDE_WEBDRIVER_SCRIPT)

            pages = self._context.pages
            self._page = pages[0] if pages else await self._context.new_page()
        except PlaywrightError as e:
            await self.close()
            raise FatalDriverError(f"Could not start browser session: {e}") from e

        await self._broker.emit(
            EventType.STEP, "browser_ready", target=self.name,
            message="Browser initialized successfully"
        )
        return self

    def _require_page(self) -> Page:
        if not self.is_open:
            raise FatalDriverError("Browser session is not open")
        return self._page

    def _ms(self, seconds: float, deadline: Optional[Deadline]) -> int:
        if deadline is not None:
            seconds = deadline.clamp(seconds)
        return max(1, int(seconds * 1000))

    async def navigate(self, url: str, deadline: Optional[Deadline] = None) -> None:
        page = self._require_page()
        if deadline:
            deadline.check("navigate")
        try:
            # DOM ready is enough; slow images must not stall a poll
            await page.goto(url, wait_until="domcontentloaded", timeout=self._ms(30.0, deadline))
        except PlaywrightError as e:
            raise _translate(e, f"navigate to {url}") from e

    async def _first_visible(
        self,
        selectors: Selectors,
        unique: bool,
        deadline: Optional[Deadline] = None
    ) -> Optional[ElementRef]:
        page = self._require_page()
        for selector in as_selector_list(selectors):
            if deadline is not None and deadline.expired:
                break
            try:
                locator = page.locator(selector)
                if not await locator.first.is_visible(timeout=self._ms(SELECTOR_CHECK_MS / 1000, deadline)):
                    continue
                if unique and await locator.count() > 1:
                    raise AmbiguousElement(f"{selector} matched multiple elements", selector)
                return locator.first
            except PlaywrightError as e:
                error = _translate(e, "locate", selector)
                if isinstance(error, FatalDriverError):
                    raise error from e
                # Invalid or detached selector: try the next fallback
                continue
        return None

    async def find(
        self,
        selectors: Selectors,
        deadline: Optional[Deadline] = None,
        unique: bool = False
    ) -> ElementRef:
        deadline = deadline or Deadline.unbounded()
        deadline.check("find")
        element = None

        async def located() -> bool:
            nonlocal element
            element = await self._first_visible(selectors, unique, deadline)
            return element is not None

        try:
            await self.wait_until(located, self.implicit_wait, deadline, interval=POLL_SECONDS)
        except DriverTimeout as e:
            raise ElementNotFound(
                f"None of {as_selector_list(selectors)} appeared", as_selector_list(selectors)[0]
            ) from e
        return element

    async def is_present(self, selectors: Selectors, deadline: Optional[Deadline] = None) -> bool:
        return await self._first_visible(selectors, unique=False, deadline=deadline) is not None

    async def click(self, element: ElementRef, deadline: Optional[Deadline] = None) -> None:
        try:
            await element.click(timeout=self._ms(self.implicit_wait, deadline))
        except PlaywrightError as e:
            raise _translate(e, "click") from e

    async def type_text(self, element: ElementRef, text: str, deadline: Optional[Deadline] = None) -> None:
        try:
            await element.fill(text, timeout=self._ms(self.implicit_wait, deadline))
        except PlaywrightError as e:
            raise _translate(e, "type_text") from e

    async def check(self, element: ElementRef, deadline: Optional[Deadline] = None) -> None:
        try:
            await element.check(timeout=self._ms(self.implicit_wait, deadline))
        except PlaywrightError as e:
            raise _translate(e, "check") from e

    async def read_text(self, element: ElementRef, deadline: Optional[Deadline] = None) -> str:
        try:
            return (await element.inner_text(timeout=self._ms(self.implicit_wait, deadline))).strip()
        except PlaywrightError as e:
            raise _translate(e, "read_text") from e

    async def read_value(self, element: ElementRef, deadline: Optional[Deadline] = None) -> str:
        try:
            return await element.input_value(timeout=self._ms(self.implicit_wait, deadline))
        except PlaywrightError as e:
            raise _translate(e, "read_value") from e

    async def is_checked(self, element: ElementRef, deadline: Optional[Deadline] = None) -> bool:
        try:
            return await element.is_checked(timeout=self._ms(self.implicit_wait, deadline))
        except PlaywrightError as e:
            raise _translate(e, "is_checked") from e

    async def current_url(self) -> str:
        return self._require_page().url

    async def screenshot(self, stage: str) -> str:
        """Take a screenshot and save to artifacts directory."""
        if not self.is_open:
            return ""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filepath = self.artifacts_dir / f"{timestamp}_{self.name}_{stage}.png"
        try:
            await self._page.screenshot(path=str(filepath), full_page=False)
        except PlaywrightError as e:
            await self._broker.emit(
                EventType.ERROR, "screenshot_failed", target=self.name, stage=stage, error=str(e)
            )
            return ""

        await self._broker.emit(
            EventType.SCREENSHOT, "screenshot_saved", target=self.name,
            path=str(filepath), stage=stage
        )
        return str(filepath)

    async def start_tracing(self) -> None:
        """Start tracing for debugging."""
        if self._context and not self._tracing:
            try:
                await self._context.tracing.start(screenshots=True, snapshots=True, sources=True)
                self._tracing = True
            except PlaywrightError:
                pass  # Tracing might already be started

    async def stop_tracing(self, stage: str) -> str:
        """Stop tracing and save to artifacts directory."""
        if not (self._context and self._tracing):
            return ""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filepath = self.artifacts_dir / f"{timestamp}_{self.name}_{stage}.zip"
        self._tracing = False
        try:
            await self._context.tracing.stop(path=str(filepath))
        except PlaywrightError:
            return ""
        return str(filepath)

    async def close(self) -> None:
        """Gracefully shut down the context, browser and Playwright."""
        if self._context:
            try:
                await self._context.close()
            except PlaywrightError:
                pass
            self._context = None

        if self._browser:
            try:
                await self._browser.close()
            except PlaywrightError:
                pass
            self._browser = None

        if self._playwright:
            try:
                await self._playwright.stop()
            except PlaywrightError:
                pass
            self._playwright = None

        self._page = None
        self._tracing = False


async def open_playwright_driver(target_name: str, implicit_wait: float = 10.0) -> PlaywrightDriver:
    """Driver factory used by the monitor to create (and re-create) sessions."""
    driver = PlaywrightDriver(target_name, implicit_wait=implicit_wait)
    return await driver.open()
