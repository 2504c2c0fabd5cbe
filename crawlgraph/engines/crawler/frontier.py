"""
BFS frontier: FIFO queue plus visited set for one crawl.

A URL is marked visited the moment it is enqueued, so it is dequeued at most
once and always at the depth it was first discovered at.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import structlog

logger = structlog.get_logger(__name__)

RESOURCE_EXTENSIONS = {
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".css", ".js",
    ".woff", ".woff2", ".ttf", ".zip", ".tar", ".gz", ".mp4", ".mp3", ".wav", ".xml",
}


@dataclass
class CrawlURL:
    """URL in the crawl queue with metadata."""
    url: str
    depth: int
    parent_url: str | None = None


def normalize_url(url: str, ignore_query_params: bool = True) -> str:
    """
    Canonical form used for dedup: fragment dropped, query dropped when
    ignore_query_params, scheme and host lower-cased, empty path → "/".
    Path case is preserved. Unparseable or relative input is returned unchanged.
    """
    try:
        parsed = urlsplit(url.strip())
        host = parsed.hostname
    except ValueError:
        logger.debug("Unparseable URL left as-is", url=url)
        return url

    if not parsed.scheme or not parsed.netloc or not host:
        logger.debug("Non-absolute URL left as-is", url=url)
        return url

    netloc = parsed.netloc
    userinfo, sep, hostport = netloc.rpartition("@")
    netloc = f"{userinfo}{sep}{hostport.lower()}"

    return urlunsplit((
        parsed.scheme.lower(),
        netloc,
        parsed.path or "/",
        "" if ignore_query_params else parsed.query,
        "",
    ))


def url_hostname(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def is_resource_url(url: str) -> bool:
    try:
        path = urlsplit(url).path.lower()
    except ValueError:
        return False
    return any(path.endswith(ext) for ext in RESOURCE_EXTENSIONS)


class CrawlFrontier:

    def __init__(self, root_domain: str, max_depth: int, ignore_query_params: bool = True):
        self.root_domain = root_domain.lower()
        self.max_depth = max_depth
        self.ignore_query_params = ignore_query_params
        self._queue: deque[CrawlURL] = deque()
        self._visited: set[str] = set()

    def __len__(self) -> int:
        return len(self._queue)

    def __bool__(self) -> bool:
        return bool(self._queue)

    def normalize(self, url: str) -> str:
        return normalize_url(url, self.ignore_query_params)

    def is_visited(self, url: str) -> bool:
        return url in self._visited

    def is_internal(self, url: str) -> bool:
        return url_hostname(url) == self.root_domain

    def enqueue(self, url: str, depth: int, parent_url: str | None = None) -> bool:
        """Add url unless already visited or too deep. Returns True if queued."""
        if url in self._visited or depth > self.max_depth:
            return False
        self._visited.add(url)
        self._queue.append(CrawlURL(url=url, depth=depth, parent_url=parent_url))
        return True

    def dequeue(self) -> CrawlURL | None:
        if not self._queue:
            return None
        return self._queue.popleft()

    @property
    def visited_count(self) -> int:
        return len(self._visited)
