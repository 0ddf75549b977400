"""
Browser lifecycle for provider lookups.

One headless browser is opened per batch and closed afterwards; a fresh
browser starts with no cookies or history the site can use against it.
"""

from __future__ import annotations

from typing import Any, List, Optional, Protocol, runtime_checkable

import structlog
from playwright.async_api import Browser, Playwright, async_playwright

logger = structlog.get_logger(__name__)

CHROMIUM_ARGS: List[str] = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
]


@runtime_checkable
class BrowserSession(Protocol):
    """An open browser that can hand out pages."""

    async def new_page(self) -> Any:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class BrowserFactory(Protocol):
    """Opens a new, isolated browser session."""

    async def open(self) -> BrowserSession:
        ...


class PlaywrightBrowserSession:
    """A launched Chromium instance plus the Playwright driver that owns it."""

    def __init__(self, playwright: Playwright, browser: Browser):
        self._playwright = playwright
        self._browser = browser

    async def new_page(self) -> Any:
        return await self._browser.new_page()

    async def close(self) -> None:
        try:
            await self._browser.close()
        finally:
            await self._playwright.stop()
        logger.debug("Browser closed")


class PlaywrightBrowserFactory:
    """Launches headless Chromium with sandbox-friendly flags."""

    def __init__(self, headless: bool = True, args: Optional[List[str]] = None):
        self.headless = headless
        self.args = list(args) if args is not None else list(CHROMIUM_ARGS)

    async def open(self) -> PlaywrightBrowserSession:
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(headless=self.headless, args=self.args)
        except Exception:
            logger.error("Failed to launch browser", exc_info=True)
            await playwright.stop()
            raise
        logger.debug("Browser launched", headless=self.headless)
        return PlaywrightBrowserSession(playwright, browser)
