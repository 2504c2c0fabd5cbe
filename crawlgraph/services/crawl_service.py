"""
Public crawl and analysis operations.

These are the entry points the API and the Celery workers call. Each takes
the store explicitly; network collaborators (fetcher, oracle, probe) are
injected so callers decide what talks to the outside world.

Analyses only run against sessions in a terminal state and each run replaces
the previously stored report of its kind.
"""

from __future__ import annotations

from uuid import UUID

import structlog

from crawlgraph.core.config import get_settings
from crawlgraph.core.exceptions import CrawlNotFinishedError
from crawlgraph.engines.base import (
    CrawlCorpus,
    CrawlOptions,
    DuplicateContentReport,
    IssueReport,
    LinkGraphReport,
)
from crawlgraph.engines.crawler.engine import CrawlOrchestrator
from crawlgraph.engines.crawler.fetcher import PageFetcher, create_http_client
from crawlgraph.engines.crawler.renderer import PlaywrightRenderer
from crawlgraph.engines.duplicates.engine import ContentFingerprintEngine
from crawlgraph.engines.duplicates.oracle import SimilarityOracle
from crawlgraph.engines.issues.engine import IssueAggregator
from crawlgraph.engines.links.engine import LinkGraphAnalyzer
from crawlgraph.engines.technical.probe import SiteProbe
from crawlgraph.store.base import CrawlStore

logger = structlog.get_logger(__name__)


async def start_crawl(
    store: CrawlStore,
    session_id: UUID,
    start_url: str,
    options: CrawlOptions | None = None,
    fetcher: PageFetcher | None = None,
) -> bool:
    """
    Crawl start_url into an existing pending session.
    Returns True if the session completed, False if it failed or was cancelled.
    """
    options = options or CrawlOptions()
    if fetcher is not None:
        return await CrawlOrchestrator(store, fetcher).start_crawl(session_id, start_url, options)

    async with create_http_client(get_settings().CRAWLER_MAX_REDIRECTS) as http_client:
        if options.js_render:
            async with PlaywrightRenderer(get_settings().CRAWLER_JS_RENDER_TIMEOUT) as renderer:
                fetcher = PageFetcher(http_client, renderer=renderer)
                return await CrawlOrchestrator(store, fetcher).start_crawl(session_id, start_url, options)

        fetcher = PageFetcher(http_client)
        return await CrawlOrchestrator(store, fetcher).start_crawl(session_id, start_url, options)


async def load_finished_corpus(store: CrawlStore, session_id: UUID) -> CrawlCorpus:
    """Raises SessionNotFoundError or CrawlNotFinishedError."""
    session = await store.get_session(session_id)
    if not session.is_terminal:
        raise CrawlNotFinishedError(session_id, session.status.value)
    return await store.load_corpus(session_id)


async def analyze_link_graph(store: CrawlStore, session_id: UUID) -> LinkGraphReport:
    corpus = await load_finished_corpus(store, session_id)
    report = await LinkGraphAnalyzer().execute(corpus)
    await store.save_link_report(report)
    return report


async def find_duplicate_content(
    store: CrawlStore,
    session_id: UUID,
    oracle: SimilarityOracle | None = None,
) -> DuplicateContentReport:
    corpus = await load_finished_corpus(store, session_id)
    report = await ContentFingerprintEngine(oracle=oracle).execute(corpus)
    await store.save_duplicate_report(report)
    return report


async def aggregate_issues(
    store: CrawlStore,
    session_id: UUID,
    probe: SiteProbe | None = None,
    link_report: LinkGraphReport | None = None,
) -> IssueReport:
    """
    Aggregate technical issues. Uses the stored link report when none is
    given, computing a fresh one if the session has none yet.
    """
    corpus = await load_finished_corpus(store, session_id)

    if link_report is None:
        link_report = await store.get_link_report(session_id)
    if link_report is None:
        link_report = await LinkGraphAnalyzer().execute(corpus)

    site_checks = []
    start_url = corpus.session.start_url
    if probe is not None and start_url:
        try:
            site_checks = await probe.run(start_url)
        except Exception as e:
            logger.warning("Site probe failed", session_id=str(session_id), error=str(e), exc_info=True)

    report = await IssueAggregator(link_report=link_report, site_checks=site_checks).execute(corpus)
    await store.save_issue_report(report)
    return report
