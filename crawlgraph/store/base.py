"""
Repository interface for crawl sessions, pages, edges and analysis reports.

The crawler and the analysis services depend only on this interface. Two
implementations ship: MemoryCrawlStore (tests, embedding) and SQLCrawlStore
(PostgreSQL via SQLAlchemy async).

Contract shared by every implementation:
- writes for one session are serialized
- save_page upserts by (session_id, url); a placeholder row keeps its id
  when it is later filled in by a real fetch
- save_link is idempotent per (source, target) and bumps multiplicity
- edges never connect pages of different sessions
- save_*_report replaces the previous report of that kind
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Collection
from typing import Any
from uuid import UUID

from crawlgraph.core.exceptions import SessionStatusConflictError
from crawlgraph.engines.base import (
    CrawlCorpus,
    CrawlSessionData,
    CrawlStatus,
    DuplicateContentReport,
    IssueReport,
    LinkData,
    LinkGraphReport,
    PageData,
)


def check_status(
    session_id: UUID,
    current: CrawlStatus | str,
    expected: CrawlStatus | Collection[CrawlStatus] | None,
) -> None:
    if expected is None:
        return
    if isinstance(expected, str):
        expected = [expected]
    allowed = [CrawlStatus(s) for s in expected]
    current = CrawlStatus(current)
    if current not in allowed:
        raise SessionStatusConflictError(session_id, current.value, [s.value for s in allowed])


class CrawlStore(ABC):

    # ── Sessions ────────────────────────────────

    @abstractmethod
    async def create_session(
        self,
        root_domain: str,
        start_url: str | None = None,
        project_id: UUID | None = None,
        options: dict[str, Any] | None = None,
    ) -> CrawlSessionData:
        ...

    @abstractmethod
    async def get_session(self, session_id: UUID) -> CrawlSessionData:
        """Raises SessionNotFoundError."""
        ...

    @abstractmethod
    async def update_session(
        self,
        session_id: UUID,
        status: CrawlStatus | None = None,
        expected_status: CrawlStatus | Collection[CrawlStatus] | None = None,
        **fields: Any,
    ) -> CrawlSessionData:
        """
        Set status and/or any of pages_crawled, started_at, ended_at, error_message.

        With expected_status the write only applies while the session is in
        one of those statuses (checked under the session lock); otherwise
        SessionStatusConflictError is raised and nothing changes.
        """
        ...

    # ── Pages and edges ─────────────────────────

    @abstractmethod
    async def save_page(self, page: PageData) -> PageData:
        ...

    @abstractmethod
    async def get_page_by_url(self, session_id: UUID, url: str) -> PageData | None:
        ...

    @abstractmethod
    async def get_or_create_placeholder(self, session_id: UUID, url: str) -> PageData:
        ...

    @abstractmethod
    async def save_link(self, link: LinkData) -> LinkData:
        ...

    @abstractmethod
    async def list_pages(self, session_id: UUID) -> list[PageData]:
        ...

    @abstractmethod
    async def list_links(self, session_id: UUID) -> list[LinkData]:
        ...

    # ── Reports ─────────────────────────────────

    @abstractmethod
    async def save_link_report(self, report: LinkGraphReport) -> None:
        ...

    @abstractmethod
    async def save_duplicate_report(self, report: DuplicateContentReport) -> None:
        ...

    @abstractmethod
    async def save_issue_report(self, report: IssueReport) -> None:
        ...

    @abstractmethod
    async def get_link_report(self, session_id: UUID) -> LinkGraphReport | None:
        ...

    @abstractmethod
    async def get_duplicate_report(self, session_id: UUID) -> DuplicateContentReport | None:
        ...

    @abstractmethod
    async def get_issue_report(self, session_id: UUID) -> IssueReport | None:
        ...

    async def load_corpus(self, session_id: UUID) -> CrawlCorpus:
        session = await self.get_session(session_id)
        return CrawlCorpus(
            session=session,
            pages=await self.list_pages(session_id),
            edges=await self.list_links(session_id),
        )
