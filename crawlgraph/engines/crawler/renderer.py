"""
Playwright renderer for JS-heavy pages.

Only used when a crawl is started with js_render=True. The renderer sees the
plain HTTP result first and re-fetches through a headless browser only when
the HTML looks client-rendered.
"""

from __future__ import annotations

import time

import structlog
from bs4 import BeautifulSoup
from playwright.async_api import Browser, Page, Playwright, async_playwright

from crawlgraph.engines.crawler.fetcher import FetchResult

logger = structlog.get_logger(__name__)


class PlaywrightRenderer:
    """Renders pages in headless Chromium. Use as an async context manager."""

    JS_INDICATORS = [
        "__NEXT_DATA__",
        "window.__data",
        "ng-version",
        "data-reactroot",
        "Vue.createApp",
        "nuxt",
    ]

    def __init__(self, timeout_ms: int = 15_000):
        self.timeout_ms = timeout_ms
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None

    async def __aenter__(self) -> PlaywrightRenderer:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=True,
            args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"],
        )
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._browser:
            await self._browser.close()
        if self._playwright:
            await self._playwright.stop()

    def needs_rendering(self, html: str) -> bool:
        """Heuristically determine if page needs JS rendering."""
        if not html:
            return False

        for indicator in self.JS_INDICATORS:
            if indicator in html:
                return True

        # Very thin HTML with no paragraphs is usually an app shell
        soup = BeautifulSoup(html, "lxml")
        return len(html) > 1000 and not soup.find("p")

    async def render(self, result: FetchResult, user_agent: str) -> FetchResult:
        if self._browser is None or not self.needs_rendering(result.body):
            return result

        start = time.perf_counter()
        page: Page | None = None
        try:
            context = await self._browser.new_context(user_agent=user_agent)
            page = await context.new_page()

            # Block unnecessary resources for speed
            await page.route("**/*.{png,jpg,jpeg,gif,webp,svg,ico,woff,woff2}", lambda r: r.abort())

            await page.goto(result.url, wait_until="networkidle", timeout=self.timeout_ms)
            await page.wait_for_load_state("domcontentloaded")
            html = await page.content()

            return result.model_copy(update={
                "body": html,
                "rendered": True,
                "elapsed_ms": result.elapsed_ms + (time.perf_counter() - start) * 1000,
            })

        except Exception as e:
            # The plain HTTP body is still a valid page
            logger.warning("Playwright render failed", url=result.url, error=str(e))
            return result
        finally:
            if page:
                await page.context.close()
