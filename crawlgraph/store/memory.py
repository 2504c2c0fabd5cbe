"""
In-process CrawlStore. Used by the test-suite and for embedding the crawler
without a database. Writes per session are serialized with an asyncio.Lock.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any
from uuid import UUID

from crawlgraph.core.exceptions import CrossSessionLinkError, SessionNotFoundError
from crawlgraph.engines.base import (
    PLACEHOLDER_DEPTH,
    CrawlSessionData,
    CrawlStatus,
    DuplicateContentReport,
    IssueReport,
    LinkData,
    LinkGraphReport,
    PageData,
    utcnow,
)
from crawlgraph.store.base import CrawlStore, check_status

SESSION_FIELDS = {"pages_crawled", "started_at", "ended_at", "error_message", "root_domain"}


class MemoryCrawlStore(CrawlStore):

    def __init__(self):
        self._sessions: dict[UUID, CrawlSessionData] = {}
        self._pages: dict[UUID, dict[str, PageData]] = defaultdict(dict)
        self._links: dict[UUID, dict[tuple[UUID, UUID], LinkData]] = defaultdict(dict)
        self._reports: dict[tuple[UUID, str], Any] = {}
        self._locks: dict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _require(self, session_id: UUID) -> CrawlSessionData:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    # ── Sessions ────────────────────────────────

    async def create_session(self, root_domain, start_url=None, project_id=None, options=None):
        session = CrawlSessionData(
            project_id=project_id,
            root_domain=root_domain,
            start_url=start_url,
            options=options or {},
        )
        self._sessions[session.id] = session
        return session.model_copy()

    async def get_session(self, session_id):
        return self._require(session_id).model_copy()

    async def update_session(self, session_id, status=None, expected_status=None, **fields):
        unknown = set(fields) - SESSION_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")

        async with self._locks[session_id]:
            session = self._require(session_id)
            check_status(session_id, session.status, expected_status)
            if status is not None:
                session.status = CrawlStatus(status)
            for key, value in fields.items():
                setattr(session, key, value)
            return session.model_copy()

    # ── Pages and edges ─────────────────────────

    async def save_page(self, page):
        async with self._locks[page.session_id]:
            self._require(page.session_id)
            pages = self._pages[page.session_id]
            existing = pages.get(page.url)
            if existing is not None:
                update = page.model_dump(exclude={"id", "created_at"})
                if not existing.is_placeholder:
                    update["depth"] = min(existing.depth, page.depth)
                update["updated_at"] = utcnow()
                page = existing.model_copy(update=update)
            pages[page.url] = page
            return page.model_copy()

    async def get_page_by_url(self, session_id, url):
        page = self._pages[session_id].get(url)
        return page.model_copy() if page else None

    async def get_or_create_placeholder(self, session_id, url):
        async with self._locks[session_id]:
            self._require(session_id)
            pages = self._pages[session_id]
            page = pages.get(url)
            if page is None:
                page = PageData(session_id=session_id, url=url, depth=PLACEHOLDER_DEPTH)
                pages[url] = page
            return page.model_copy()

    async def save_link(self, link):
        async with self._locks[link.session_id]:
            self._require(link.session_id)
            by_id = {p.id for p in self._pages[link.session_id].values()}
            if link.source_page_id not in by_id or link.target_page_id not in by_id:
                raise CrossSessionLinkError(
                    f"Link {link.source_page_id} -> {link.target_page_id} is not within session {link.session_id}"
                )

            links = self._links[link.session_id]
            key = (link.source_page_id, link.target_page_id)
            existing = links.get(key)
            if existing is not None:
                existing.multiplicity += link.multiplicity
                if existing.anchor_text is None:
                    existing.anchor_text = link.anchor_text
                return existing.model_copy()
            links[key] = link.model_copy()
            return link

    async def list_pages(self, session_id):
        self._require(session_id)
        return [p.model_copy() for p in self._pages[session_id].values()]

    async def list_links(self, session_id):
        self._require(session_id)
        return [link.model_copy() for link in self._links[session_id].values()]

    # ── Reports ─────────────────────────────────

    async def _save_report(self, kind: str, report) -> None:
        async with self._locks[report.session_id]:
            self._require(report.session_id)
            self._reports[(report.session_id, kind)] = report.model_copy(deep=True)

    async def save_link_report(self, report):
        await self._save_report("link_graph", report)

    async def save_duplicate_report(self, report):
        await self._save_report("duplicate_content", report)

    async def save_issue_report(self, report):
        await self._save_report("issues", report)

    async def get_link_report(self, session_id) -> LinkGraphReport | None:
        return self._reports.get((session_id, "link_graph"))

    async def get_duplicate_report(self, session_id) -> DuplicateContentReport | None:
        return self._reports.get((session_id, "duplicate_content"))

    async def get_issue_report(self, session_id) -> IssueReport | None:
        return self._reports.get((session_id, "issues"))
