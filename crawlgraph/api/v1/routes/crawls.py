"""
Crawl API Routes

No business logic lives here.
Routes validate input, call the store or services, return responses.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field, HttpUrl
from sqlalchemy import func, select

from crawlgraph.core.config import get_settings
from crawlgraph.core.database import DBSession
from crawlgraph.core.exceptions import SessionStatusConflictError
from crawlgraph.engines.base import (
    CrawlOptions,
    CrawlSessionData,
    CrawlStatus,
    DuplicateContentReport,
    IssueReport,
    LinkGraphReport,
    utcnow,
)
from crawlgraph.engines.crawler.frontier import url_hostname
from crawlgraph.models.models import Page
from crawlgraph.store.sql import SQLCrawlStore
from crawlgraph.workers.crawl_tasks import run_analysis_task, run_crawl_task

logger = structlog.get_logger(__name__)
router = APIRouter()

CANCELLED_MESSAGE = "Cancelled by operator"


# ─────────────────────────────────────────────
# Request / Response Schemas
# ─────────────────────────────────────────────

class CreateCrawlRequest(BaseModel):
    start_url: HttpUrl
    project_id: UUID | None = None
    max_pages: int | None = Field(default=None, ge=1, le=50_000)
    max_depth: int | None = Field(default=None, ge=0, le=50)
    ignore_query_params: bool | None = None
    follow_external_links: bool | None = None
    delay_between_requests: int | None = Field(default=None, ge=0, le=60_000)
    user_agent: str | None = None
    respect_robots_txt: bool | None = None
    timeout: float | None = Field(default=None, gt=0, le=120)
    js_render: bool | None = None


class CrawlResponse(BaseModel):
    id: UUID
    project_id: UUID | None
    root_domain: str
    start_url: str | None
    status: CrawlStatus
    pages_crawled: int
    started_at: datetime | None
    ended_at: datetime | None
    error_message: str | None
    options: dict[str, Any]
    message: str = ""

    @classmethod
    def from_session(cls, session: CrawlSessionData, message: str = "") -> CrawlResponse:
        return cls(**session.model_dump(), message=message)


class PageResponse(BaseModel):
    id: UUID
    url: str
    title: str | None
    meta_description: str | None
    h1: str | None
    canonical_url: str | None
    status_code: int | None
    content_type: str | None
    word_count: int | None
    depth: int


class PaginatedResponse(BaseModel):
    items: list[Any]
    total: int
    page: int
    per_page: int
    pages: int


# ─────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────

@router.post(
    "",
    response_model=CrawlResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a new crawl",
    description="Creates a pending crawl session and dispatches it to the crawl workers.",
)
async def create_crawl(request: CreateCrawlRequest) -> CrawlResponse:
    """
    1. Merge request options over the configured defaults
    2. Create the pending session
    3. Dispatch the crawl task, chained to the analysis task
    4. Return 202 with the session
    """
    start_url = str(request.start_url)
    overrides = request.model_dump(exclude={"start_url", "project_id"})
    options = CrawlOptions.from_settings(get_settings(), **overrides)

    store = SQLCrawlStore()
    session = await store.create_session(
        root_domain=url_hostname(start_url),
        start_url=start_url,
        project_id=request.project_id,
        options=options.model_dump(),
    )

    task = run_crawl_task.apply_async(
        args=[str(session.id), start_url, options.model_dump()],
        task_id=str(session.id),
        link=run_analysis_task.s(),
    )
    await store.set_celery_task_id(session.id, task.id)

    logger.info("Crawl created", session_id=str(session.id), root_domain=session.root_domain)

    return CrawlResponse.from_session(
        session,
        message="Crawl started. Poll /api/v1/crawls/{id} for status.",
    )


@router.get("/{session_id}", response_model=CrawlResponse, summary="Get crawl status")
async def get_crawl(session_id: UUID) -> CrawlResponse:
    session = await SQLCrawlStore().get_session(session_id)
    return CrawlResponse.from_session(session)


@router.post(
    "/{session_id}/cancel",
    response_model=CrawlResponse,
    summary="Cancel a running crawl",
    description="The crawler notices the status change before its next page and stops.",
)
async def cancel_crawl(session_id: UUID) -> CrawlResponse:
    try:
        session = await SQLCrawlStore().update_session(
            session_id,
            status=CrawlStatus.FAILED,
            expected_status=(CrawlStatus.PENDING, CrawlStatus.IN_PROGRESS),
            ended_at=utcnow(),
            error_message=CANCELLED_MESSAGE,
        )
    except SessionStatusConflictError as exc:
        raise HTTPException(
            status_code=409,
            detail=f"Crawl has already finished (status: {exc.actual})",
        ) from exc
    logger.info("Crawl cancelled", session_id=str(session_id))
    return CrawlResponse.from_session(session)


@router.post(
    "/{session_id}/analyze",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-run all analyses for a finished crawl",
)
async def reanalyze_crawl(session_id: UUID) -> dict:
    session = await SQLCrawlStore().get_session(session_id)
    if not session.is_terminal:
        raise HTTPException(
            status_code=409,
            detail=f"Crawl is not finished yet (status: {session.status.value})",
        )

    task = run_analysis_task.delay({"session_id": str(session_id), "completed": True})
    return {"session_id": str(session_id), "task_id": task.id}


@router.get("/{session_id}/pages", response_model=PaginatedResponse, summary="List crawled pages")
async def get_crawl_pages(
    session_id: UUID,
    db: DBSession,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    status_code: int | None = Query(None, description="Filter by HTTP status (0 for failed fetches)"),
    include_placeholders: bool = Query(False, description="Include discovered but unfetched targets"),
) -> PaginatedResponse:
    await SQLCrawlStore().get_session(session_id)

    query = select(Page).where(Page.session_id == session_id)
    if status_code is not None:
        query = query.where(Page.status_code == status_code)
    elif not include_placeholders:
        query = query.where(Page.status_code.is_not(None))

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0

    query = query.order_by(Page.depth, Page.url).offset((page - 1) * per_page).limit(per_page)
    rows = (await db.scalars(query)).all()

    return PaginatedResponse(
        items=[
            PageResponse(
                id=p.id,
                url=p.url,
                title=p.title,
                meta_description=p.meta_description,
                h1=p.h1,
                canonical_url=p.canonical_url,
                status_code=p.status_code,
                content_type=p.content_type,
                word_count=p.word_count,
                depth=p.depth,
            )
            for p in rows
        ],
        total=total,
        page=page,
        per_page=per_page,
        pages=-(-total // per_page),
    )


@router.get("/{session_id}/link-graph", response_model=LinkGraphReport, summary="Link graph report")
async def get_link_graph(session_id: UUID) -> LinkGraphReport:
    store = SQLCrawlStore()
    await store.get_session(session_id)
    report = await store.get_link_report(session_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Link graph report not available")
    return report


@router.get(
    "/{session_id}/duplicates",
    response_model=DuplicateContentReport,
    summary="Duplicate content report",
)
async def get_duplicates(session_id: UUID) -> DuplicateContentReport:
    store = SQLCrawlStore()
    await store.get_session(session_id)
    report = await store.get_duplicate_report(session_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Duplicate content report not available")
    return report


@router.get("/{session_id}/issues", response_model=IssueReport, summary="Technical issue report")
async def get_issues(
    session_id: UUID,
    severity: str | None = Query(None, description="Filter by severity: critical|high|medium|low|info"),
    category: str | None = Query(None, description="Filter by category"),
) -> IssueReport:
    store = SQLCrawlStore()
    await store.get_session(session_id)
    report = await store.get_issue_report(session_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Issue report not available")

    issues = report.issues
    if severity:
        issues = [i for i in issues if i.severity.value == severity]
    if category:
        issues = [i for i in issues if i.category.value == category]
    return report.model_copy(update={"issues": issues})
