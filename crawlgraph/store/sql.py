"""
PostgreSQL CrawlStore using SQLAlchemy async.

Every write for a session runs in its own transaction and first takes a row
lock on the crawl_sessions row (SELECT ... FOR UPDATE), which serializes
writers of one session across processes. Links are upserted with
ON CONFLICT so repeated anchors only bump multiplicity.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any
from uuid import UUID, uuid4

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from crawlgraph.core.database import session_scope
from crawlgraph.core.exceptions import CrossSessionLinkError, SessionNotFoundError
from crawlgraph.engines.base import (
    PLACEHOLDER_DEPTH,
    CrawlSessionData,
    CrawlStatus,
    DuplicateContentReport,
    IssueReport,
    LinkData,
    LinkGraphReport,
    LinkType,
    PageData,
)
from crawlgraph.models.models import (
    AnalysisReportRecord,
    CrawlSession,
    DuplicateGroupRecord,
    Page,
    PageLink,
    TechnicalIssueRecord,
)
from crawlgraph.store.base import CrawlStore, check_status

logger = structlog.get_logger(__name__)

SESSION_FIELDS = {"pages_crawled", "started_at", "ended_at", "error_message", "root_domain"}
PAGE_FIELDS = {
    "url", "title", "meta_description", "h1", "canonical_url", "viewport",
    "status_code", "content_type", "word_count", "depth", "html", "structured_data",
}


# ─────────────────────────────────────────────
# Row → model conversion
# ─────────────────────────────────────────────

def session_to_data(row: CrawlSession) -> CrawlSessionData:
    return CrawlSessionData(
        id=row.id,
        project_id=row.project_id,
        root_domain=row.root_domain,
        start_url=row.start_url,
        status=CrawlStatus(row.status),
        pages_crawled=row.pages_crawled,
        started_at=row.started_at,
        ended_at=row.ended_at,
        error_message=row.error_message,
        options=row.options or {},
    )


def page_to_data(row: Page) -> PageData:
    return PageData(
        id=row.id,
        session_id=row.session_id,
        url=row.url,
        title=row.title,
        meta_description=row.meta_description,
        h1=row.h1,
        canonical_url=row.canonical_url,
        viewport=row.viewport,
        status_code=row.status_code,
        content_type=row.content_type,
        word_count=row.word_count,
        depth=row.depth,
        html=row.html,
        structured_data=row.structured_data or [],
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def link_to_data(row: PageLink) -> LinkData:
    return LinkData(
        id=row.id,
        session_id=row.session_id,
        source_page_id=row.source_page_id,
        target_page_id=row.target_page_id,
        link_type=LinkType(row.link_type),
        anchor_text=row.anchor_text,
        multiplicity=row.multiplicity,
    )


def link_upsert(link: LinkData):
    """INSERT ... ON CONFLICT for one edge; a repeat (source, target) adds to multiplicity."""
    stmt = pg_insert(PageLink).values(
        id=link.id,
        session_id=link.session_id,
        source_page_id=link.source_page_id,
        target_page_id=link.target_page_id,
        link_type=link.link_type.value,
        anchor_text=link.anchor_text,
        multiplicity=link.multiplicity,
    )
    return stmt.on_conflict_do_update(
        constraint="uq_page_links_source_target",
        set_={
            "multiplicity": PageLink.multiplicity + stmt.excluded.multiplicity,
            "anchor_text": func.coalesce(PageLink.anchor_text, stmt.excluded.anchor_text),
            "updated_at": func.now(),
        },
    ).returning(PageLink)


def merge_page(row: Page, page: PageData) -> None:
    # A placeholder takes the fetched depth; a fetched row keeps its shallowest
    was_placeholder = row.status_code is None and row.depth == PLACEHOLDER_DEPTH
    previous_depth = row.depth
    for key, value in page.model_dump(include=PAGE_FIELDS).items():
        setattr(row, key, value)
    if not was_placeholder:
        row.depth = min(previous_depth, page.depth)


class SQLCrawlStore(CrawlStore):

    def __init__(self, scope: Callable[[], AbstractAsyncContextManager[AsyncSession]] = session_scope):
        self._scope = scope

    async def _lock_session(self, db: AsyncSession, session_id: UUID) -> CrawlSession:
        row = await db.scalar(
            select(CrawlSession).where(CrawlSession.id == session_id).with_for_update()
        )
        if row is None:
            raise SessionNotFoundError(session_id)
        return row

    # ── Sessions ────────────────────────────────

    async def create_session(self, root_domain, start_url=None, project_id=None, options=None):
        async with self._scope() as db:
            row = CrawlSession(
                id=uuid4(),
                project_id=project_id,
                root_domain=root_domain,
                start_url=start_url,
                status=CrawlStatus.PENDING.value,
                options=options or {},
                pages_crawled=0,
            )
            db.add(row)
            await db.flush()
            await db.refresh(row)
            return session_to_data(row)

    async def get_session(self, session_id):
        async with self._scope() as db:
            row = await db.get(CrawlSession, session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            return session_to_data(row)

    async def update_session(self, session_id, status=None, expected_status=None, **fields):
        unknown = set(fields) - SESSION_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")

        async with self._scope() as db:
            row = await self._lock_session(db, session_id)
            check_status(session_id, row.status, expected_status)
            if status is not None:
                row.status = CrawlStatus(status).value
            for key, value in fields.items():
                setattr(row, key, value)
            await db.flush()
            await db.refresh(row)
            return session_to_data(row)

    async def set_celery_task_id(self, session_id: UUID, task_id: str) -> None:
        async with self._scope() as db:
            row = await self._lock_session(db, session_id)
            row.celery_task_id = task_id

    # ── Pages and edges ─────────────────────────

    async def save_page(self, page):
        values = page.model_dump(include=PAGE_FIELDS)
        async with self._scope() as db:
            await self._lock_session(db, page.session_id)
            row = await db.scalar(
                select(Page).where(Page.session_id == page.session_id, Page.url == page.url)
            )
            if row is None:
                row = Page(id=page.id, session_id=page.session_id, **values)
                db.add(row)
            else:
                merge_page(row, page)
            await db.flush()
            await db.refresh(row)
            return page_to_data(row)

    async def get_page_by_url(self, session_id, url):
        async with self._scope() as db:
            row = await db.scalar(
                select(Page).where(Page.session_id == session_id, Page.url == url)
            )
            return page_to_data(row) if row else None

    async def get_or_create_placeholder(self, session_id, url):
        async with self._scope() as db:
            await self._lock_session(db, session_id)
            row = await db.scalar(
                select(Page).where(Page.session_id == session_id, Page.url == url)
            )
            if row is None:
                row = Page(
                    id=uuid4(),
                    session_id=session_id,
                    url=url,
                    depth=PLACEHOLDER_DEPTH,
                    structured_data=[],
                )
                db.add(row)
                await db.flush()
                await db.refresh(row)
            return page_to_data(row)

    async def save_link(self, link):
        async with self._scope() as db:
            await self._lock_session(db, link.session_id)

            page_ids = {link.source_page_id, link.target_page_id}
            found = await db.scalar(
                select(func.count()).select_from(Page).where(
                    Page.id.in_(page_ids),
                    Page.session_id == link.session_id,
                )
            )
            if found != len(page_ids):
                raise CrossSessionLinkError(
                    f"Link {link.source_page_id} -> {link.target_page_id} is not within session {link.session_id}"
                )

            result = await db.scalars(link_upsert(link), execution_options={"populate_existing": True})
            return link_to_data(result.one())

    async def list_pages(self, session_id):
        async with self._scope() as db:
            if await db.get(CrawlSession, session_id) is None:
                raise SessionNotFoundError(session_id)
            rows = await db.scalars(
                select(Page).where(Page.session_id == session_id).order_by(Page.created_at, Page.url)
            )
            return [page_to_data(row) for row in rows]

    async def list_links(self, session_id):
        async with self._scope() as db:
            if await db.get(CrawlSession, session_id) is None:
                raise SessionNotFoundError(session_id)
            rows = await db.scalars(
                select(PageLink).where(PageLink.session_id == session_id).order_by(PageLink.created_at)
            )
            return [link_to_data(row) for row in rows]

    # ── Reports ─────────────────────────────────

    async def _replace_report(
        self,
        db: AsyncSession,
        kind: str,
        report: Any,
        score: float | None = None,
    ) -> None:
        await db.execute(
            delete(AnalysisReportRecord).where(
                AnalysisReportRecord.session_id == report.session_id,
                AnalysisReportRecord.kind == kind,
            )
        )
        db.add(AnalysisReportRecord(
            session_id=report.session_id,
            kind=kind,
            status=report.status.value,
            score=score,
            execution_time_ms=report.execution_time_ms,
            payload=report.model_dump(mode="json"),
            error_message=report.error_message,
        ))

    async def save_link_report(self, report):
        async with self._scope() as db:
            await self._lock_session(db, report.session_id)
            await self._replace_report(db, "link_graph", report, float(report.link_distribution_score))

    async def save_duplicate_report(self, report):
        async with self._scope() as db:
            await self._lock_session(db, report.session_id)
            await db.execute(
                delete(DuplicateGroupRecord).where(DuplicateGroupRecord.session_id == report.session_id)
            )
            for group in report.groups:
                db.add(DuplicateGroupRecord(
                    session_id=report.session_id,
                    group_key=group.id,
                    group_type=group.group_type.value,
                    similarity=group.similarity,
                    members=[m.model_dump(mode="json") for m in group.members],
                ))
            await self._replace_report(db, "duplicate_content", report)

    async def save_issue_report(self, report):
        async with self._scope() as db:
            await self._lock_session(db, report.session_id)
            await db.execute(
                delete(TechnicalIssueRecord).where(TechnicalIssueRecord.session_id == report.session_id)
            )
            for issue in report.issues:
                db.add(TechnicalIssueRecord(
                    id=issue.id,
                    session_id=issue.session_id,
                    issue_type=issue.issue_type.value,
                    severity=issue.severity.value,
                    category=issue.category.value,
                    affected_urls=issue.affected_urls,
                    description=issue.description,
                    recommendation=issue.recommendation,
                    detected_at=issue.detected_at,
                    extra_data=issue.metadata,
                ))
            await self._replace_report(db, "issues", report, report.score)

    async def _get_payload(self, session_id: UUID, kind: str) -> dict | None:
        async with self._scope() as db:
            row = await db.scalar(
                select(AnalysisReportRecord).where(
                    AnalysisReportRecord.session_id == session_id,
                    AnalysisReportRecord.kind == kind,
                )
            )
            return row.payload if row else None

    async def get_link_report(self, session_id):
        payload = await self._get_payload(session_id, "link_graph")
        return LinkGraphReport.model_validate(payload) if payload else None

    async def get_duplicate_report(self, session_id):
        payload = await self._get_payload(session_id, "duplicate_content")
        return DuplicateContentReport.model_validate(payload) if payload else None

    async def get_issue_report(self, session_id):
        payload = await self._get_payload(session_id, "issues")
        return IssueReport.model_validate(payload) if payload else None
