"""Playwright page capture for live protection scans."""

import asyncio
import itertools
import logging
import random
from typing import Any, Callable, Iterable, Optional

from playwright.async_api import Browser, BrowserContext, Page, Response, async_playwright
from playwright.async_api import Error as PlaywrightError

from ..pipeline.models import StructuralChange
from .page import PageSnapshot

logger = logging.getLogger(__name__)

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

# Reports added nodes as {tag, text} batches to the exposed binding.
# window[key] holds the observer so it can be disconnected later.
OBSERVER_SCRIPT = """
([binding, key]) => {
    if (window[key]) { return; }
    const observer = new MutationObserver((mutations) => {
        const changes = [];
        for (const mutation of mutations) {
            for (const node of mutation.addedNodes) {
                if (node.nodeType !== Node.ELEMENT_NODE) { continue; }
                changes.push({
                    tag: (node.tagName || '').toLowerCase(),
                    text: (node.textContent || '').slice(0, 2000),
                });
            }
        }
        if (changes.length) { window[binding](changes); }
    });
    observer.observe(document.documentElement || document, { childList: true, subtree: true });
    window[key] = observer;
}
"""

DISCONNECT_SCRIPT = """
(key) => {
    if (window[key]) { window[key].disconnect(); delete window[key]; }
}
"""

_binding_ids = itertools.count(1)


class PageCapture:
    """A loaded page that can be snapshotted and observed."""

    def __init__(self, page: Page, response: Optional[Response], context: Optional[BrowserContext] = None):
        self.page = page
        self.response = response
        self.context = context
        self._headers: Optional[dict[str, str]] = None

    async def _response_headers(self) -> dict[str, str]:
        if self._headers is None:
            self._headers = {}
            if self.response is not None:
                try:
                    self._headers = await self.response.all_headers()
                except PlaywrightError as exc:
                    logger.debug("Could not read response headers: %s", exc)
        return self._headers

    async def snapshot(self) -> PageSnapshot:
        """Capture the current rendered document."""
        html = await self.page.content()
        try:
            referrer = await self.page.evaluate("() => document.referrer || ''")
        except PlaywrightError:
            referrer = ""
        return PageSnapshot.from_html(
            url=self.page.url,
            html=html,
            referrer=referrer,
            headers=await self._response_headers(),
        )

    async def subscribe_to_structural_changes(
        self, callback: Callable[[Iterable[Any]], Any]
    ) -> Callable[[], Any]:
        """Forward added-node batches to ``callback``; returns an unsubscribe."""
        binding = f"__m365guard_changes_{next(_binding_ids)}"
        key = f"{binding}_observer"
        active = True

        def on_changes(changes: list) -> None:
            if not active:
                return
            callback([StructuralChange.from_dict(c) for c in changes or [] if isinstance(c, dict)])

        await self.page.expose_function(binding, on_changes)
        await self.page.evaluate(OBSERVER_SCRIPT, [binding, key])

        async def unsubscribe() -> None:
            nonlocal active
            active = False
            try:
                await self.page.evaluate(DISCONNECT_SCRIPT, key)
            except PlaywrightError as exc:
                logger.debug("Observer disconnect failed: %s", exc)

        return unsubscribe

    async def close(self) -> None:
        if self.context is not None:
            await self.context.close()


class BrowserSession:
    """Owns the headless browser used to load pages for scanning."""

    def __init__(self, timeout: int = 30, headless: bool = True):
        self.timeout = timeout * 1000  # Convert to ms
        self.headless = headless
        self._playwright = None
        self._browser: Optional[Browser] = None

    async def start(self):
        """Start the browser instance."""
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=[
                "--disable-dev-shm-usage",
                "--no-sandbox",
                "--disable-setuid-sandbox",
                "--disable-gpu",
            ],
        )
        logger.info("Browser started")

    async def stop(self):
        """Stop the browser instance."""
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Browser stopped")

    async def open(self, url: str) -> PageCapture:
        """Load ``url`` in a fresh context and return it for capture."""
        if not self._browser:
            await self.start()

        context = await self._browser.new_context(
            viewport={"width": 1920, "height": 1080},
            user_agent=random.choice(USER_AGENTS),
            ignore_https_errors=True,  # Many phishing sites have bad certs
            locale="en-US",
        )
        page = await context.new_page()
        try:
            response = await page.goto(url, timeout=self.timeout, wait_until="domcontentloaded")
            try:
                await page.wait_for_selector("body", state="visible", timeout=3000)
            except PlaywrightError:
                await asyncio.sleep(1.0)
        except PlaywrightError:
            await context.close()
            raise
        logger.info("Loaded %s (status %s)", page.url, response.status if response else "n/a")
        return PageCapture(page, response, context)
