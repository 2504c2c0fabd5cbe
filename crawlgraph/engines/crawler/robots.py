"""
robots.txt and XML sitemap handling.

Both go through PageFetcher so they share the crawl's HTTP client, user agent
and timeout, and so tests can substitute a fake fetcher.
"""

from __future__ import annotations

from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

import structlog
from bs4 import BeautifulSoup

from crawlgraph.engines.crawler.fetcher import FetchError, PageFetcher

logger = structlog.get_logger(__name__)


def site_base(url: str) -> str:
    parsed = urlsplit(url)
    return f"{parsed.scheme}://{parsed.netloc}"


class RobotsHandler:
    """Parse and enforce robots.txt rules."""

    def __init__(self, fetcher: PageFetcher, user_agent: str, timeout: float = 10.0):
        self.fetcher = fetcher
        self.user_agent = user_agent
        self.timeout = timeout
        self._parsers: dict[str, RobotFileParser] = {}
        self._raw: dict[str, str | None] = {}

    async def fetch_and_parse(self, base_url: str) -> bool:
        """Fetch robots.txt for the site. Returns True if one was found."""
        base = site_base(base_url)
        robots_url = f"{base}/robots.txt"
        parser = RobotFileParser(robots_url)
        found = False

        try:
            result = await self.fetcher.fetch(robots_url, self.user_agent, self.timeout)
            if result.status_code == 200:
                parser.parse(result.body.splitlines())
                self._raw[base] = result.body
                found = True
            else:
                # 4xx: no restrictions
                parser.allow_all = True
        except FetchError as e:
            logger.debug("Could not fetch robots.txt", url=robots_url, error=str(e))
            parser.allow_all = True

        self._parsers[base] = parser
        return found

    def can_fetch(self, url: str) -> bool:
        """Check if URL is allowed by robots.txt."""
        parser = self._parsers.get(site_base(url))
        if parser is None:
            return True  # No robots.txt = allow all
        return parser.can_fetch(self.user_agent, url)

    def get_crawl_delay(self, base_url: str) -> float | None:
        """Get crawl-delay directive if specified."""
        parser = self._parsers.get(site_base(base_url))
        if parser:
            delay = parser.crawl_delay(self.user_agent)
            return float(delay) if delay else None
        return None

    def sitemap_urls(self, base_url: str) -> list[str]:
        """Sitemap: lines declared in robots.txt."""
        parser = self._parsers.get(site_base(base_url))
        if parser is None:
            return []
        return list(parser.site_maps() or [])


class SitemapParser:
    """Discover and parse XML sitemaps."""

    MAX_NESTED = 50

    def __init__(self, fetcher: PageFetcher, user_agent: str, timeout: float = 15.0):
        self.fetcher = fetcher
        self.user_agent = user_agent
        self.timeout = timeout

    async def discover(self, root_url: str, declared: list[str] | None = None) -> list[str]:
        """Page URLs from sitemaps declared in robots.txt and common locations."""
        base = site_base(root_url)
        candidates = list(declared or []) + [
            f"{base}/sitemap.xml",
            f"{base}/sitemap_index.xml",
        ]

        page_urls: list[str] = []
        seen: set[str] = set()
        for url in dict.fromkeys(candidates):
            for page_url in await self._fetch_sitemap(url, depth=0):
                if page_url not in seen:
                    seen.add(page_url)
                    page_urls.append(page_url)
        return page_urls

    async def _fetch_sitemap(self, url: str, depth: int) -> list[str]:
        """Fetch and parse a single sitemap."""
        try:
            result = await self.fetcher.fetch(url, self.user_agent, self.timeout)
        except FetchError as e:
            logger.debug("Sitemap fetch failed", url=url, error=str(e))
            return []

        if result.status_code != 200:
            return []

        content = result.body
        urls: list[str] = []

        if "<sitemapindex" in content and depth == 0:
            soup = BeautifulSoup(content, "xml")
            for loc in soup.find_all("loc")[: self.MAX_NESTED]:
                urls.extend(await self._fetch_sitemap(loc.text.strip(), depth + 1))

        elif "<urlset" in content:
            soup = BeautifulSoup(content, "xml")
            urls.extend(loc.text.strip() for loc in soup.find_all("loc"))

        return urls
