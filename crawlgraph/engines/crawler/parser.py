"""
HTML → PageFacts extraction.

Pure and deterministic: the same (url, content_type, body) always yields the
same facts. Nothing here touches the network or the store.
"""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import urljoin, urlsplit

import structlog
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class OutboundLink(BaseModel):
    url: str                 # Absolute, not yet normalized
    anchor_text: str | None = None


class PageFacts(BaseModel):
    """Everything the crawler keeps from one response body."""
    is_html: bool = False
    title: str | None = None
    meta_description: str | None = None
    h1: str | None = None
    canonical_url: str | None = None
    viewport: str | None = None
    word_count: int | None = None
    links: list[OutboundLink] = Field(default_factory=list)
    structured_data: list[dict[str, Any]] = Field(default_factory=list)


def _clean(text: str | None) -> str | None:
    if text is None:
        return None
    text = " ".join(text.split())
    return text or None


def _meta_content(soup: BeautifulSoup, name: str) -> str | None:
    for tag in soup.find_all("meta"):
        if (tag.get("name") or "").lower() == name:
            return _clean(tag.get("content"))
    return None


def resolve_link(href: str, base_url: str) -> str | None:
    """Resolve href against base_url; None for anything that is not http(s)."""
    href = href.strip()
    if not href or href.startswith("#"):
        return None
    try:
        absolute = urljoin(base_url, href)
        parsed = urlsplit(absolute)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return absolute


class PageParser:
    """Extracts PageFacts from HTML with BeautifulSoup + lxml."""

    def parse(self, url: str, content_type: str | None, body: str) -> PageFacts:
        if not content_type or "text/html" not in content_type.lower():
            return PageFacts()

        try:
            return self._parse_html(url, body)
        except Exception as e:
            logger.warning("HTML parse error", url=url, error=str(e))
            return PageFacts(is_html=True)

    def _parse_html(self, url: str, body: str) -> PageFacts:
        soup = BeautifulSoup(body, "lxml")
        facts = PageFacts(is_html=True)

        title_tag = soup.find("title")
        if title_tag:
            facts.title = _clean(title_tag.get_text())

        facts.meta_description = _meta_content(soup, "description")
        facts.viewport = _meta_content(soup, "viewport")

        h1 = soup.find("h1")
        if h1:
            facts.h1 = _clean(h1.get_text(" "))

        canonical = soup.find("link", rel="canonical")
        if canonical and canonical.get("href"):
            facts.canonical_url = resolve_link(canonical["href"], url)

        # Structured data (JSON-LD)
        for script in soup.find_all("script", type="application/ld+json"):
            try:
                data = json.loads(script.string or "")
            except ValueError:
                logger.debug("Invalid JSON-LD block skipped", url=url)
                continue
            if isinstance(data, list):
                facts.structured_data.extend(d for d in data if isinstance(d, dict))
            elif isinstance(data, dict):
                facts.structured_data.append(data)

        for a in soup.find_all("a", href=True):
            absolute = resolve_link(a["href"], url)
            if absolute is None:
                continue
            facts.links.append(OutboundLink(url=absolute, anchor_text=_clean(a.get_text(" "))))

        text_root = soup.body or soup
        facts.word_count = len(text_root.get_text(separator=" ").split())

        return facts
