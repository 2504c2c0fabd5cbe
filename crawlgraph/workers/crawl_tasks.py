"""
Crawl Tasks - Celery task definitions for crawl sessions and their analyses.

Flow:
1. run_crawl_task()      → Crawls the site into a pending session
2. run_analysis_task()   → Link graph, duplicate content, issue aggregation
3. fail_stale_crawls()   → Periodic: fails sessions whose worker died mid-crawl

Error handling:
- Per-page failures are absorbed by the orchestrator; only infrastructure
  errors (database, broker) reach the task and trigger a retry
- A crawl that ends failed or cancelled is not analyzed automatically
- Each analysis runs through its engine's execute() wrapper, so one failing
  engine does not prevent the others from storing their reports
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

import structlog
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import update

from crawlgraph.core.config import get_settings
from crawlgraph.core.database import dispose_engine, session_scope
from crawlgraph.engines.base import CrawlOptions, CrawlStatus, utcnow
from crawlgraph.engines.crawler.fetcher import PageFetcher, create_http_client
from crawlgraph.engines.duplicates.oracle import OpenAISimilarityOracle
from crawlgraph.engines.technical.probe import SiteProbe
from crawlgraph.models.models import CrawlSession
from crawlgraph.services import crawl_service
from crawlgraph.store.sql import SQLCrawlStore
from crawlgraph.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)
settings = get_settings()


def run_async(coro):
    """Run an async coroutine in a Celery (sync) task context."""

    async def _run():
        try:
            return await coro
        finally:
            # Pooled asyncpg connections are bound to this loop
            await dispose_engine()

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(_run())
    finally:
        loop.close()


# ─────────────────────────────────────────────
# Task: Crawl
# ─────────────────────────────────────────────

@celery_app.task(
    name="crawlgraph.workers.crawl_tasks.run_crawl_task",
    bind=True,
    queue="crawl_queue",
    soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    time_limit=settings.CELERY_TASK_TIME_LIMIT,
    max_retries=settings.CELERY_MAX_RETRIES,
    acks_late=True,
)
def run_crawl_task(self, session_id: str, start_url: str, options: dict[str, Any]) -> dict:
    """Execute the crawler for one session."""
    logger.info("Starting crawl task", session_id=session_id, start_url=start_url)

    try:
        completed = run_async(crawl_service.start_crawl(
            SQLCrawlStore(),
            UUID(session_id),
            start_url,
            CrawlOptions.model_validate(options),
        ))
        return {"session_id": session_id, "completed": completed}

    except SoftTimeLimitExceeded:
        logger.error("Crawl task timed out", session_id=session_id)
        run_async(_fail_session(session_id, "Crawl timed out"))
        raise

    except Exception as exc:
        logger.error("Crawl task failed", session_id=session_id, error=str(exc), exc_info=True)
        countdown = settings.CELERY_RETRY_BACKOFF * (self.request.retries + 1)
        raise self.retry(exc=exc, countdown=countdown)


# ─────────────────────────────────────────────
# Task: Analysis
# ─────────────────────────────────────────────

@celery_app.task(
    name="crawlgraph.workers.crawl_tasks.run_analysis_task",
    bind=True,
    queue="analysis_queue",
    soft_time_limit=1800,
    time_limit=2400,
    max_retries=2,
)
def run_analysis_task(self, prev_result: dict) -> dict:
    """Run all analyses for a completed crawl (chained after run_crawl_task)."""
    session_id = prev_result["session_id"]

    if not prev_result.get("completed"):
        logger.info("Skipping analysis of unfinished crawl", session_id=session_id)
        return {"session_id": session_id, "analyzed": False}

    try:
        summary = run_async(_analyze(UUID(session_id)))
        logger.info("Analysis complete", session_id=session_id, **summary)
        return {"session_id": session_id, "analyzed": True, **summary}

    except SoftTimeLimitExceeded:
        logger.error("Analysis timed out", session_id=session_id)
        return {"session_id": session_id, "analyzed": False, "error": "Analysis timed out"}

    except Exception as exc:
        logger.error("Analysis failed", session_id=session_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc, countdown=30)


# ─────────────────────────────────────────────
# Task: Housekeeping
# ─────────────────────────────────────────────

@celery_app.task(name="crawlgraph.workers.crawl_tasks.fail_stale_crawls")
def fail_stale_crawls() -> dict:
    """Fail sessions stuck in_progress longer than the hard task time limit."""
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=settings.CELERY_TASK_TIME_LIMIT)
    count = run_async(_fail_stale_sessions(cutoff))
    if count:
        logger.warning("Failed stale crawl sessions", count=count)
    return {"failed": count}


# ─────────────────────────────────────────────
# Async helpers
# ─────────────────────────────────────────────

async def _analyze(session_id: UUID) -> dict:
    store = SQLCrawlStore()

    link_report = await crawl_service.analyze_link_graph(store, session_id)

    oracle = OpenAISimilarityOracle.from_settings(settings)
    duplicate_report = await crawl_service.find_duplicate_content(store, session_id, oracle=oracle)

    async with create_http_client(settings.CRAWLER_MAX_REDIRECTS) as http_client:
        probe = SiteProbe(
            PageFetcher(http_client),
            settings.CRAWLER_USER_AGENT,
            timeout=settings.CRAWLER_REQUEST_TIMEOUT,
            tls_expiry_warning_days=settings.TLS_EXPIRY_WARNING_DAYS,
        )
        issue_report = await crawl_service.aggregate_issues(
            store, session_id, probe=probe, link_report=link_report,
        )

    return {
        "link_distribution_score": link_report.link_distribution_score,
        "duplicate_groups": len(duplicate_report.groups),
        "issues": len(issue_report.issues),
        "score": issue_report.score,
    }


async def _fail_session(session_id: str, error: str) -> None:
    async with session_scope() as db:
        await db.execute(
            update(CrawlSession)
            .where(
                CrawlSession.id == UUID(session_id),
                CrawlSession.status.in_([CrawlStatus.PENDING.value, CrawlStatus.IN_PROGRESS.value]),
            )
            .values(status=CrawlStatus.FAILED.value, ended_at=utcnow(), error_message=error)
        )


async def _fail_stale_sessions(cutoff: datetime) -> int:
    async with session_scope() as db:
        result = await db.execute(
            update(CrawlSession)
            .where(
                CrawlSession.status == CrawlStatus.IN_PROGRESS.value,
                CrawlSession.started_at < cutoff,
            )
            .values(
                status=CrawlStatus.FAILED.value,
                ended_at=utcnow(),
                error_message="Crawl worker stopped responding",
            )
        )
        return result.rowcount or 0
