"""
HTTP page fetcher.

One GET per call, redirects followed (bounded), no retries. A response with
status < 500 is a result the crawler records; 5xx, timeouts, redirect loops
and transport errors raise FetchError carrying the best-known status code
(0 when no response was received).
"""

from __future__ import annotations

import time
from typing import Protocol

import httpx
import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

MAX_REDIRECTS = 5


class FetchResult(BaseModel):
    """A fetched response, normalized for the parser."""
    url: str                       # Final URL after redirects
    requested_url: str
    status_code: int
    content_type: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    body: str = ""
    redirect_hops: int = 0
    elapsed_ms: float = 0.0
    rendered: bool = False

    @property
    def is_html(self) -> bool:
        return "text/html" in self.content_type.lower()


class FetchError(Exception):
    """The page could not be fetched into a recordable response."""

    def __init__(self, url: str, status_code: int = 0, reason: str = ""):
        self.url = url
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"Fetch failed for {url}: {reason or status_code}")


class PageRenderer(Protocol):
    """Optional JS renderer that replaces an HTML body with the rendered DOM."""

    async def render(self, result: FetchResult, user_agent: str) -> FetchResult:
        ...


def create_http_client(max_redirects: int = MAX_REDIRECTS) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        follow_redirects=True,
        max_redirects=max_redirects,
        headers={
            "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        },
    )


class PageFetcher:
    """
    Fetches individual pages via HTTP, optionally handing HTML responses to a
    renderer (Playwright) behind the same interface.
    """

    def __init__(self, http_client: httpx.AsyncClient, renderer: PageRenderer | None = None):
        self.http_client = http_client
        self.renderer = renderer

    async def fetch(self, url: str, user_agent: str, timeout: float = 10.0) -> FetchResult:
        start = time.perf_counter()
        try:
            response = await self.http_client.get(
                url,
                headers={"User-Agent": user_agent},
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise FetchError(url, 0, "timeout") from exc
        except httpx.TooManyRedirects as exc:
            raise FetchError(url, 0, "too many redirects") from exc
        except httpx.HTTPError as exc:
            raise FetchError(url, 0, str(exc) or exc.__class__.__name__) from exc

        elapsed = (time.perf_counter() - start) * 1000

        if response.status_code >= 500:
            raise FetchError(url, response.status_code, f"server error {response.status_code}")

        result = FetchResult(
            url=str(response.url),
            requested_url=url,
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
            headers=dict(response.headers),
            body=response.text,
            redirect_hops=len(response.history),
            elapsed_ms=elapsed,
        )

        if self.renderer is not None and result.is_html and result.status_code == 200:
            logger.debug("JS rendering page", url=url)
            return await self.renderer.render(result, user_agent)

        return result
