"""
Browser automation capability: open a page, run scripted actions, tear down.

The mix pipeline only needs "a session is open on the configured page"; it does
not extract tab audio. The default implementation drives headless Chromium via
Playwright, imported lazily so the rest of the service runs without browsers
installed.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from livemix.config import settings
from livemix.schemas.pipeline import BrowserAction

logger = logging.getLogger(__name__)

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--autoplay-policy=no-user-gesture-required",
    "--use-fake-ui-for-media-stream",
    "--use-fake-device-for-media-stream",
]

SELECTOR_TIMEOUT_MS = 10_000
WAIT_ACTION_TIMEOUT_MS = 30_000


def action_budget(action: BrowserAction) -> float:
    """Longest time in seconds one scripted action can take before it is skipped."""
    seconds = action.delay / 1000
    if not action.selector:
        return seconds
    if action.type == "wait":
        return seconds + WAIT_ACTION_TIMEOUT_MS / 1000
    if action.type in ("click", "type"):
        return seconds + SELECTOR_TIMEOUT_MS / 1000
    return seconds


def session_budget(navigation_timeout: float, actions: Iterable[BrowserAction] = ()) -> float:
    """Upper bound for ``init``: page load plus the allowance of every action."""
    return navigation_timeout + sum(action_budget(action) for action in actions)


class BrowserAutomation(Protocol):
    async def init(
        self,
        url: str,
        viewport: tuple[int, int],
        actions: Iterable[BrowserAction] = (),
        custom_js: str | None = None,
        timeout: float | None = None,
    ) -> Any: ...

    async def execute_action(self, session: Any, action: BrowserAction) -> None: ...

    async def teardown(self, session: Any) -> None: ...


@dataclass
class BrowserSession:
    url: str
    playwright: Any = None
    browser: Any = None
    page: Any = None

    @property
    def is_open(self) -> bool:
        return self.page is not None


class PlaywrightBrowser:
    """Headless Chromium driven through Playwright's async API."""

    def __init__(self, headless: bool | None = None):
        self.headless = settings.BROWSER_HEADLESS if headless is None else headless

    async def init(
        self,
        url: str,
        viewport: tuple[int, int],
        actions: Iterable[BrowserAction] = (),
        custom_js: str | None = None,
        timeout: float | None = None,
    ) -> BrowserSession:
        from playwright.async_api import async_playwright

        timeout = timeout or settings.BROWSER_NAVIGATION_TIMEOUT_SEC
        session = BrowserSession(url=url)
        try:
            logger.info("Launching browser...")
            session.playwright = await async_playwright().start()
            session.browser = await session.playwright.chromium.launch(
                headless=self.headless, args=CHROMIUM_ARGS,
            )
            width, height = viewport
            session.page = await session.browser.new_page(viewport={"width": width, "height": height})

            logger.info("Navigating to %s...", url)
            await session.page.goto(url, wait_until="networkidle", timeout=timeout * 1000)

            if custom_js:
                logger.info("Injecting custom JavaScript...")
                await session.page.evaluate(custom_js)

            actions = list(actions)
            if actions:
                logger.info("Executing %d browser actions...", len(actions))
                for action in actions:
                    await self.execute_action(session, action)
        except BaseException:
            await self.teardown(session)
            raise

        logger.info("Browser session ready on %s", url)
        return session

    async def execute_action(self, session: BrowserSession, action: BrowserAction) -> None:
        """Run one action. A failing action is logged and skipped."""
        page = session.page
        try:
            if action.delay:
                await asyncio.sleep(action.delay / 1000)

            if action.type == "click":
                if action.selector:
                    logger.info("Clicking element: %s", action.selector)
                    await page.wait_for_selector(action.selector, timeout=SELECTOR_TIMEOUT_MS)
                    await page.click(action.selector)
                elif action.x is not None and action.y is not None:
                    logger.info("Clicking at coordinates: (%s, %s)", action.x, action.y)
                    await page.mouse.click(action.x, action.y)
            elif action.type == "wait":
                if action.selector:
                    logger.info("Waiting for element: %s", action.selector)
                    await page.wait_for_selector(action.selector, timeout=WAIT_ACTION_TIMEOUT_MS)
            elif action.type == "type":
                if action.selector and action.code:
                    logger.info("Typing into element: %s", action.selector)
                    await page.wait_for_selector(action.selector, timeout=SELECTOR_TIMEOUT_MS)
                    await page.locator(action.selector).press_sequentially(action.code)
            elif action.type == "script":
                if action.code:
                    logger.info("Executing custom script")
                    await page.evaluate(action.code)
            else:
                logger.warning("Unknown browser action type: %s", action.type)
        except Exception as e:
            logger.error("Failed to execute browser action %s: %s", action.type, e)

    async def teardown(self, session: BrowserSession) -> None:
        if session is None:
            return
        if session.page is not None:
            try:
                await session.page.close()
            except Exception as e:
                logger.error("Error closing page: %s", e)
            session.page = None
        if session.browser is not None:
            try:
                await session.browser.close()
            except Exception as e:
                logger.error("Error closing browser: %s", e)
            session.browser = None
        if session.playwright is not None:
            try:
                await session.playwright.stop()
            except Exception as e:
                logger.error("Error stopping playwright: %s", e)
            session.playwright = None
