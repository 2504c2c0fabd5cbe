"""
Crawl orchestrator - sequential BFS crawler that builds the page/link graph.

Flow:
1. Load the session, resolve its root domain, mark it in_progress
2. Optionally fetch robots.txt (disallowed URLs are neither fetched nor
   recorded as link targets; crawl-delay honoured)
3. Seed the frontier with the start URL at depth 0
4. Loop: check for cancellation → dequeue → delay → fetch → parse → persist
   page → bump pages_crawled → record edges and enqueue internal links
5. Mark the session completed, or failed on a structural error

Per-page failures never abort the crawl: they are stored as a page row with
the best-known status code. Cancellation is cooperative: another process
marks the session failed and the loop exits before the next dequeue,
leaving everything persisted so far in place. Session writes from the
crawl require in_progress, so a late cancel is never overwritten.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from uuid import UUID

import structlog

from crawlgraph.core.exceptions import SessionNotFoundError, SessionStatusConflictError
from crawlgraph.engines.base import (
    CrawlOptions,
    CrawlStatus,
    LinkData,
    LinkType,
    PageData,
    utcnow,
)
from crawlgraph.engines.crawler.fetcher import FetchError, PageFetcher
from crawlgraph.engines.crawler.frontier import (
    CrawlFrontier,
    CrawlURL,
    is_resource_url,
    url_hostname,
)
from crawlgraph.engines.crawler.parser import PageFacts, PageParser
from crawlgraph.engines.crawler.robots import RobotsHandler
from crawlgraph.store.base import CrawlStore

logger = structlog.get_logger(__name__)


@dataclass
class CrawlStats:
    """Live crawl statistics."""
    total_crawled: int = 0
    total_failed: int = 0
    total_skipped: int = 0
    edges_recorded: int = 0
    links_blocked: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.start_time

    @property
    def pages_per_second(self) -> float:
        elapsed = self.elapsed_seconds
        return self.total_crawled / elapsed if elapsed > 0 else 0


class CrawlOrchestrator:

    PROGRESS_LOG_EVERY = 25

    def __init__(
        self,
        store: CrawlStore,
        fetcher: PageFetcher,
        parser: PageParser | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.fetcher = fetcher
        self.parser = parser or PageParser()
        self._sleep = sleep
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def start_crawl(
        self,
        session_id: UUID,
        start_url: str,
        options: CrawlOptions | None = None,
    ) -> bool:
        """
        Crawl from start_url into the given session.

        Returns True when the session ends completed, False when it ends
        failed or was cancelled.
        """
        options = options or CrawlOptions()
        log = self.logger.bind(session_id=str(session_id))
        stats = CrawlStats()

        try:
            session = await self.store.get_session(session_id)
        except SessionNotFoundError:
            log.error("Crawl session not found")
            return False

        if session.status != CrawlStatus.PENDING:
            log.warning("Crawl session is not pending", status=session.status.value)
            return False

        root_domain = session.root_domain or url_hostname(start_url)
        if not root_domain:
            await self._mark_failed(session_id, f"Invalid start URL: {start_url}", stats, log)
            return False

        log.info("Crawl starting", start_url=start_url, root_domain=root_domain, **options.model_dump())

        try:
            await self.store.update_session(
                session_id,
                CrawlStatus.IN_PROGRESS,
                expected_status=CrawlStatus.PENDING,
                root_domain=root_domain,
                started_at=utcnow(),
                pages_crawled=0,
            )
            if not await self._crawl(session_id, start_url, root_domain, options, stats, log):
                log.info("Crawl cancelled", pages_crawled=stats.total_crawled)
                return False

            # Only an in_progress session may complete; a cancel that lands
            # after the last loop check wins
            await self.store.update_session(
                session_id,
                CrawlStatus.COMPLETED,
                expected_status=CrawlStatus.IN_PROGRESS,
                ended_at=utcnow(),
                pages_crawled=stats.total_crawled,
            )
        except SessionStatusConflictError as exc:
            log.info("Crawl cancelled", status=exc.actual, pages_crawled=stats.total_crawled)
            return False
        except Exception as exc:
            log.error("Crawl failed", error=str(exc), exc_info=True)
            await self._mark_failed(session_id, str(exc), stats, log)
            return False

        log.info(
            "Crawl complete",
            pages_crawled=stats.total_crawled,
            failed=stats.total_failed,
            skipped=stats.total_skipped,
            edges=stats.edges_recorded,
            blocked_links=stats.links_blocked,
            elapsed_seconds=round(stats.elapsed_seconds, 2),
        )
        return True

    # ─────────────────────────────────────────────
    # Main loop
    # ─────────────────────────────────────────────

    async def _crawl(
        self,
        session_id: UUID,
        start_url: str,
        root_domain: str,
        options: CrawlOptions,
        stats: CrawlStats,
        log,
    ) -> bool:
        """Run the BFS loop. Returns False if the session was cancelled."""
        frontier = CrawlFrontier(root_domain, options.max_depth, options.ignore_query_params)
        seed = frontier.normalize(start_url)
        frontier.enqueue(seed, 0)

        delay = options.delay_between_requests / 1000
        robots: RobotsHandler | None = None
        if options.respect_robots_txt:
            robots = RobotsHandler(self.fetcher, options.user_agent, options.timeout)
            await robots.fetch_and_parse(seed)
            crawl_delay = robots.get_crawl_delay(seed)
            if crawl_delay and crawl_delay > delay:
                log.info("Respecting crawl-delay", delay=crawl_delay)
                delay = crawl_delay

        while frontier and stats.total_crawled < options.max_pages:
            if not await self._still_running(session_id):
                return False

            item = frontier.dequeue()
            if item.depth > options.max_depth:
                stats.total_skipped += 1
                continue

            if robots is not None and not robots.can_fetch(item.url):
                stats.total_skipped += 1
                log.debug("Blocked by robots.txt", url=item.url)
                continue

            if stats.total_crawled > 0 and delay > 0:
                await self._sleep(delay)

            page, facts = await self._process_page(session_id, item, options, log)
            if page is None:
                stats.total_failed += 1
                continue

            stats.total_crawled += 1
            await self.store.update_session(
                session_id,
                expected_status=CrawlStatus.IN_PROGRESS,
                pages_crawled=stats.total_crawled,
            )

            if stats.total_crawled % self.PROGRESS_LOG_EVERY == 0:
                log.info(
                    "Crawl progress",
                    crawled=stats.total_crawled,
                    queued=len(frontier),
                    pps=round(stats.pages_per_second, 2),
                )

            if facts is None or not facts.links:
                continue

            # External pages are fetched when following external links, never expanded
            if not frontier.is_internal(item.url):
                continue

            await self._record_links(session_id, page, item, facts, frontier, robots, options, stats, log)

        return True

    async def _still_running(self, session_id: UUID) -> bool:
        session = await self.store.get_session(session_id)
        return session.status == CrawlStatus.IN_PROGRESS

    # ─────────────────────────────────────────────
    # Per-page work
    # ─────────────────────────────────────────────

    async def _process_page(
        self,
        session_id: UUID,
        item: CrawlURL,
        options: CrawlOptions,
        log,
    ) -> tuple[PageData | None, PageFacts | None]:
        try:
            try:
                result = await self.fetcher.fetch(item.url, options.user_agent, options.timeout)
            except FetchError as exc:
                log.warning(
                    "Page fetch failed",
                    url=item.url,
                    status_code=exc.status_code,
                    reason=exc.reason,
                )
                page = await self.store.save_page(PageData(
                    session_id=session_id,
                    url=item.url,
                    status_code=exc.status_code,
                    depth=item.depth,
                ))
                return page, None

            facts = self.parser.parse(result.url, result.content_type, result.body)
            page = await self.store.save_page(PageData(
                session_id=session_id,
                url=item.url,
                title=facts.title,
                meta_description=facts.meta_description,
                h1=facts.h1,
                canonical_url=facts.canonical_url,
                viewport=facts.viewport,
                status_code=result.status_code,
                content_type=result.content_type or None,
                word_count=facts.word_count,
                depth=item.depth,
                html=result.body if facts.is_html else None,
                structured_data=facts.structured_data,
            ))
            return page, facts

        except Exception as exc:
            log.error("Page processing failed", url=item.url, error=str(exc), exc_info=True)
            try:
                page = await self.store.save_page(PageData(
                    session_id=session_id,
                    url=item.url,
                    status_code=0,
                    depth=item.depth,
                ))
            except Exception as store_exc:
                log.error("Could not record failed page", url=item.url, error=str(store_exc))
                return None, None
            return page, None

    async def _record_links(
        self,
        session_id: UUID,
        page: PageData,
        item: CrawlURL,
        facts: PageFacts,
        frontier: CrawlFrontier,
        robots: RobotsHandler | None,
        options: CrawlOptions,
        stats: CrawlStats,
        log,
    ) -> None:
        for link in facts.links:
            target_url = frontier.normalize(link.url)
            internal = frontier.is_internal(target_url)

            # Never fetched, so no page row and no edge (it would read as a broken link)
            if internal and robots is not None and not robots.can_fetch(target_url):
                stats.links_blocked += 1
                continue

            if internal or options.follow_external_links:
                frontier.enqueue(target_url, item.depth + 1, parent_url=item.url)

            if target_url == page.url:
                continue

            if not internal:
                link_type = LinkType.EXTERNAL
            elif is_resource_url(target_url):
                link_type = LinkType.RESOURCE
            else:
                link_type = LinkType.INTERNAL

            try:
                target = await self.store.get_or_create_placeholder(session_id, target_url)
                await self.store.save_link(LinkData(
                    session_id=session_id,
                    source_page_id=page.id,
                    target_page_id=target.id,
                    link_type=link_type,
                    anchor_text=link.anchor_text,
                ))
                stats.edges_recorded += 1
            except Exception as exc:
                log.warning("Could not record link", source=page.url, target=target_url, error=str(exc))

    async def _mark_failed(self, session_id: UUID, error: str, stats: CrawlStats, log) -> None:
        try:
            await self.store.update_session(
                session_id,
                CrawlStatus.FAILED,
                expected_status=(CrawlStatus.PENDING, CrawlStatus.IN_PROGRESS),
                ended_at=utcnow(),
                error_message=error[:1000],
                pages_crawled=stats.total_crawled,
            )
        except SessionStatusConflictError as exc:
            log.info("Session already finished; keeping its status", status=exc.actual)
        except Exception as exc:
            log.error("Could not mark session failed", error=str(exc))
