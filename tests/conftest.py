"""
Shared fixtures: an in-memory store, a scripted fetcher and a corpus builder.
No test here touches the network or a database.
"""

from __future__ import annotations

import pytest

from crawlgraph.engines.base import (
    PLACEHOLDER_DEPTH,
    CrawlCorpus,
    CrawlSessionData,
    CrawlStatus,
    LinkData,
    LinkType,
    PageData,
)
from crawlgraph.engines.crawler.fetcher import FetchResult
from crawlgraph.store.memory import MemoryCrawlStore


class FakeFetcher:
    """Serves scripted responses by URL; anything unscripted is a 404."""

    def __init__(self):
        self.routes: dict[str, FetchResult | Exception] = {}
        self.calls: list[str] = []
        self.on_fetch = None

    def add_html(self, url: str, body: str, status: int = 200) -> None:
        self.add_text(url, body, "text/html; charset=utf-8", status)

    def add_text(self, url: str, body: str, content_type: str = "text/plain", status: int = 200) -> None:
        self.routes[url] = FetchResult(
            url=url,
            requested_url=url,
            status_code=status,
            content_type=content_type,
            body=body,
        )

    def add_error(self, url: str, exc: Exception) -> None:
        self.routes[url] = exc

    async def fetch(self, url: str, user_agent: str, timeout: float = 10.0) -> FetchResult:
        self.calls.append(url)
        if self.on_fetch is not None:
            await self.on_fetch(url)
        route = self.routes.get(url)
        if isinstance(route, Exception):
            raise route
        if route is None:
            return FetchResult(url=url, requested_url=url, status_code=404, content_type="text/html", body="")
        return route


class CorpusBuilder:
    """Builds a CrawlCorpus by hand for analysis engine tests."""

    def __init__(self, root_domain: str = "example.com", status: CrawlStatus = CrawlStatus.COMPLETED):
        self.session = CrawlSessionData(
            root_domain=root_domain,
            start_url=f"https://{root_domain}/",
            status=status,
        )
        self.pages: list[PageData] = []
        self.edges: list[LinkData] = []

    def page(
        self,
        url: str,
        depth: int = 1,
        status_code: int | None = 200,
        content_type: str | None = "text/html",
        **fields,
    ) -> PageData:
        page = PageData(
            session_id=self.session.id,
            url=url,
            depth=depth,
            status_code=status_code,
            content_type=content_type,
            **fields,
        )
        self.pages.append(page)
        return page

    def placeholder(self, url: str) -> PageData:
        return self.page(url, depth=PLACEHOLDER_DEPTH, status_code=None, content_type=None)

    def link(
        self,
        source: PageData,
        target: PageData,
        link_type: LinkType = LinkType.INTERNAL,
        anchor_text: str | None = None,
        multiplicity: int = 1,
    ) -> LinkData:
        edge = LinkData(
            session_id=self.session.id,
            source_page_id=source.id,
            target_page_id=target.id,
            link_type=link_type,
            anchor_text=anchor_text,
            multiplicity=multiplicity,
        )
        self.edges.append(edge)
        return edge

    def build(self) -> CrawlCorpus:
        return CrawlCorpus(session=self.session, pages=list(self.pages), edges=list(self.edges))


@pytest.fixture
def store() -> MemoryCrawlStore:
    return MemoryCrawlStore()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def corpus_builder() -> CorpusBuilder:
    return CorpusBuilder()


