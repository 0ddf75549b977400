"""
Playwright adapter for the PageInspector protocol.
"""

from __future__ import annotations

from typing import Optional

import httpx
import structlog
from playwright.async_api import Page

logger = structlog.get_logger(__name__)


class PlaywrightPageInspector:
    """
    Exposes a live Playwright page to the bot-signal classifier.

    The status re-check goes through ``http_client`` when one is given so the
    page itself is not navigated away; otherwise the page reloads the URL.
    """

    def __init__(self, page: Page, http_client: Optional[httpx.AsyncClient] = None):
        self.page = page
        self.http_client = http_client

    def current_url(self) -> str:
        return self.page.url

    async def full_text_content(self) -> str:
        return await self.page.content()

    async def element_exists(self, selector: str) -> bool:
        element = await self.page.query_selector(selector)
        return element is not None

    async def reissue_and_get_status(self, url: str, timeout_ms: int) -> Optional[int]:
        if not url:
            return None
        try:
            if self.http_client is not None:
                response = await self.http_client.get(url, timeout=timeout_ms / 1000)
                return response.status_code

            page_response = await self.page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            return page_response.status if page_response is not None else None
        except Exception as e:
            logger.debug("Status re-check failed", url=url, error=str(e))
            return None
