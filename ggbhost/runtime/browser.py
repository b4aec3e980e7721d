"""
Playwright-backed hosting runtime.

A :class:`BrowserHandle` owns the Playwright driver, one Chromium process and
the single page the applet lives in.  The engine instance only talks to the
page (``evaluate``/``set_content``/``pdf``) and to the two close steps, which
keeps the handle easy to replace with a double in tests.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List, Optional

from playwright.async_api import Browser, Page, Playwright, async_playwright

from ..config import InstanceConfig

LOG = logging.getLogger(__name__)


class BrowserHandle:
    def __init__(self, playwright: Optional[Playwright], browser: Optional[Browser], page: Page) -> None:
        self._playwright = playwright
        self._browser = browser
        self.page = page

    @property
    def page_closed(self) -> bool:
        return self.page.is_closed()

    async def close_page(self) -> None:
        if not self.page.is_closed():
            await self.page.close()

    async def close_browser(self) -> None:
        browser, self._browser = self._browser, None
        playwright, self._playwright = self._playwright, None
        try:
            if browser is not None:
                await browser.close()
        finally:
            if playwright is not None:
                await playwright.stop()


BrowserLauncher = Callable[..., Awaitable[Any]]


async def launch_chromium(
    config: InstanceConfig,
    *,
    headless: bool,
    args: List[str],
) -> BrowserHandle:
    """Start Chromium with one page sized to the instance viewport."""

    playwright = await async_playwright().start()
    browser: Optional[Browser] = None
    try:
        browser = await playwright.chromium.launch(headless=headless, args=args)
        context = await browser.new_context(
            viewport={"width": int(config.width), "height": int(config.height)},
            locale=config.language,
        )
        page = await context.new_page()
    except BaseException:
        if browser is not None:
            try:
                await browser.close()
            except Exception:  # pragma: no cover - defensive
                LOG.debug("Failed to close browser after launch failure.", exc_info=True)
        await playwright.stop()
        raise
    return BrowserHandle(playwright, browser, page)
