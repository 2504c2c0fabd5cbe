"""
Base class and type contracts for the crawl graph and its analysis engines.

The crawler produces a corpus (session + pages + edges); every analysis
engine inherits from AnalysisEngine, reads the corpus and returns a report.

Design principles:
- Engines are stateless: all state comes from the corpus
- Engines are independent: no engine imports another
- Engines return a standardized AnalysisReport subclass
- Engines handle their own errors and return an empty report on failure
"""

from __future__ import annotations

import math
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

# Depth assigned to pages created only because something links to them.
PLACEHOLDER_DEPTH = 999


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class Severity(str, Enum):
    CRITICAL = "critical"   # Blocking issue - fix immediately
    HIGH = "high"           # Significant impact - fix soon
    MEDIUM = "medium"       # Moderate impact - fix this sprint
    LOW = "low"             # Minor - fix when convenient
    INFO = "info"           # Informational - no action required


class IssueCategory(str, Enum):
    CRAWLABILITY = "crawlability"
    TECHNICAL = "technical"
    ON_PAGE = "on_page"
    CONTENT = "content"
    MOBILE = "mobile"
    INTERNAL_LINKS = "internal_links"
    SECURITY = "security"


class IssueType(str, Enum):
    MISSING_TITLE = "missing_title"
    DUPLICATE_TITLE = "duplicate_title"
    MISSING_META_DESCRIPTION = "missing_meta_description"
    DUPLICATE_META_DESCRIPTION = "duplicate_meta_description"
    MISSING_H1 = "missing_h1"
    DUPLICATE_H1 = "duplicate_h1"
    LOW_CONTENT = "low_content"
    MISSING_CANONICAL = "missing_canonical"
    CANONICAL_MISMATCH = "canonical_mismatch"
    MISSING_VIEWPORT = "missing_viewport"
    INCORRECT_VIEWPORT = "incorrect_viewport"
    BROKEN_PAGE = "broken_page"
    FETCH_FAILED = "fetch_failed"
    ORPHAN_PAGE = "orphan_page"
    BROKEN_INTERNAL_LINK = "broken_internal_link"
    MISSING_ROBOTS_TXT = "missing_robots_txt"
    MISSING_SITEMAP = "missing_sitemap"
    INSECURE_CONNECTION = "insecure_connection"
    CERTIFICATE_EXPIRING = "certificate_expiring"


class CrawlStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class LinkType(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"
    RESOURCE = "resource"     # Internal link to a static file (pdf, image, ...)


class DuplicateType(str, Enum):
    EXACT = "exact"
    NEAR_DUPLICATE = "near_duplicate"
    SIMILAR = "similar"


class EngineStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({CrawlStatus.COMPLETED, CrawlStatus.FAILED})


# ─────────────────────────────────────────────
# Crawl graph
# ─────────────────────────────────────────────

class CrawlOptions(BaseModel):
    """Per-crawl knobs. Defaults mirror the CRAWLER_* settings."""
    max_pages: int = Field(default=100, ge=1)
    max_depth: int = Field(default=3, ge=0)
    ignore_query_params: bool = True
    follow_external_links: bool = False
    delay_between_requests: int = Field(default=500, ge=0)   # ms
    user_agent: str = "SEOMax Crawler Bot"
    respect_robots_txt: bool = True
    timeout: float = Field(default=10.0, gt=0)
    js_render: bool = False

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> CrawlOptions:
        values = {
            "max_pages": settings.CRAWLER_MAX_PAGES,
            "max_depth": settings.CRAWLER_MAX_DEPTH,
            "ignore_query_params": settings.CRAWLER_IGNORE_QUERY_PARAMS,
            "follow_external_links": settings.CRAWLER_FOLLOW_EXTERNAL_LINKS,
            "delay_between_requests": settings.CRAWLER_DELAY_MS,
            "user_agent": settings.CRAWLER_USER_AGENT,
            "respect_robots_txt": settings.CRAWLER_RESPECT_ROBOTS_TXT,
            "timeout": settings.CRAWLER_REQUEST_TIMEOUT,
            "js_render": settings.CRAWLER_JS_RENDER,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class CrawlSessionData(BaseModel):
    """One crawl run."""
    id: UUID = Field(default_factory=uuid4)
    project_id: UUID | None = None
    root_domain: str = ""
    start_url: str | None = None
    status: CrawlStatus = CrawlStatus.PENDING
    pages_crawled: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error_message: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class PageData(BaseModel):
    """A fetched page, or a placeholder for a link target not yet fetched."""
    id: UUID = Field(default_factory=uuid4)
    session_id: UUID
    url: str
    title: str | None = None
    meta_description: str | None = None
    h1: str | None = None
    canonical_url: str | None = None
    viewport: str | None = None
    status_code: int | None = None
    content_type: str | None = None
    word_count: int | None = None
    depth: int = 0
    html: str | None = None
    structured_data: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_placeholder(self) -> bool:
        return self.status_code is None and self.depth == PLACEHOLDER_DEPTH

    @property
    def is_html(self) -> bool:
        return bool(self.content_type) and "text/html" in self.content_type.lower()


class LinkData(BaseModel):
    """Directed edge between two pages of the same session."""
    id: UUID = Field(default_factory=uuid4)
    session_id: UUID
    source_page_id: UUID
    target_page_id: UUID
    link_type: LinkType
    anchor_text: str | None = None
    multiplicity: int = 1     # Anchors on the source page pointing at the target


class CrawlCorpus(BaseModel):
    """Everything an analysis engine gets to look at."""
    session: CrawlSessionData
    pages: list[PageData] = Field(default_factory=list)
    edges: list[LinkData] = Field(default_factory=list)

    @property
    def session_id(self) -> UUID:
        return self.session.id


# ─────────────────────────────────────────────
# Analysis outputs
# ─────────────────────────────────────────────

class ContentFingerprint(BaseModel):
    page_id: UUID
    url: str
    title: str | None = None
    content_hash: str
    text_content: str = ""
    headings: list[str] = Field(default_factory=list)
    paragraphs: list[str] = Field(default_factory=list)


class DuplicateMember(BaseModel):
    page_id: UUID
    url: str
    title: str | None = None
    similarity: float = Field(ge=0.0, le=1.0, default=1.0)


class DuplicateGroup(BaseModel):
    id: str
    group_type: DuplicateType
    members: list[DuplicateMember] = Field(default_factory=list)
    similarity: float = Field(ge=0.0, le=1.0, default=1.0)


class TechnicalIssue(BaseModel):
    """A single technical SEO finding."""
    id: UUID = Field(default_factory=uuid4)
    session_id: UUID
    issue_type: IssueType
    severity: Severity
    category: IssueCategory = IssueCategory.TECHNICAL
    affected_urls: list[str] = Field(default_factory=list)
    description: str
    recommendation: str = ""
    detected_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class LinkedPage(BaseModel):
    page_id: UUID
    url: str
    title: str | None = None
    incoming_links: int = 0
    outgoing_links: int = 0


class BrokenLink(BaseModel):
    source_url: str
    target_url: str
    anchor_text: str | None = None
    status_code: int = 404


class KeyPage(BaseModel):
    page_id: UUID
    url: str
    title: str | None = None
    page_type: str        # "homepage" | "category" | "hub"
    incoming_links: int = 0
    is_priority: bool = False
    linked_from: list[str] = Field(default_factory=list)


class AnalysisReport(BaseModel):
    """Fields shared by every engine report."""
    session_id: UUID
    status: EngineStatus = EngineStatus.SUCCESS
    execution_time_ms: float = 0.0
    error_message: str | None = None
    generated_at: datetime = Field(default_factory=utcnow)


class LinkGraphReport(AnalysisReport):
    total_pages: int = 0
    total_internal_links: int = 0
    total_link_occurrences: int = 0
    average_links_per_page: float = 0.0
    orphaned_pages: list[LinkedPage] = Field(default_factory=list)
    most_linked_pages: list[LinkedPage] = Field(default_factory=list)
    least_linked_pages: list[LinkedPage] = Field(default_factory=list)
    broken_internal_links: list[BrokenLink] = Field(default_factory=list)
    key_pages: list[KeyPage] = Field(default_factory=list)
    link_distribution_score: int = Field(ge=0, le=100, default=0)
    link_depth_analysis: dict[int, int] = Field(default_factory=dict)
    improvement_suggestions: list[str] = Field(default_factory=list)


class DuplicateContentReport(AnalysisReport):
    pages_analyzed: int = 0
    exact_duplicates: list[DuplicateGroup] = Field(default_factory=list)
    near_duplicates: list[DuplicateGroup] = Field(default_factory=list)
    similar_content: list[DuplicateGroup] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)

    @property
    def groups(self) -> list[DuplicateGroup]:
        return self.exact_duplicates + self.near_duplicates + self.similar_content


class IssueReport(AnalysisReport):
    issues: list[TechnicalIssue] = Field(default_factory=list)
    score: float = Field(ge=0.0, le=100.0, default=0.0)
    grade: str = "F"
    passed_checks: int = 0
    total_checks: int = 0
    severity_counts: dict[str, int] = Field(default_factory=dict)


ReportT = TypeVar("ReportT", bound=AnalysisReport)


# ─────────────────────────────────────────────
# Base Engine
# ─────────────────────────────────────────────

class AnalysisEngine(ABC, Generic[ReportT]):
    """
    Abstract base class for all corpus analysis engines.

    All engines MUST:
    1. Implement run(corpus) -> report
    2. Implement failed_report(corpus, error) for the error path
    3. Be stateless - store nothing on self between calls
    """

    ENGINE_NAME: str = "base"

    def __init__(self):
        self.logger = structlog.get_logger(self.__class__.__name__)

    @abstractmethod
    async def run(self, corpus: CrawlCorpus) -> ReportT:
        """
        Execute the engine against a crawl corpus.

        Args:
            corpus: Session, pages and edges of one finished crawl

        Returns:
            The engine's report
        """
        ...

    @abstractmethod
    def failed_report(self, corpus: CrawlCorpus, error: str) -> ReportT:
        ...

    async def execute(self, corpus: CrawlCorpus) -> ReportT:
        """
        Wrapper around run() that adds timing, logging, and error handling.
        Call this instead of run() directly.
        """
        start = time.perf_counter()
        self.logger.info(
            "Engine starting",
            engine=self.ENGINE_NAME,
            session_id=str(corpus.session_id),
            domain=corpus.session.root_domain,
            page_count=len(corpus.pages),
            edge_count=len(corpus.edges),
        )

        try:
            report = await self.run(corpus)
            elapsed = (time.perf_counter() - start) * 1000
            report.execution_time_ms = elapsed
            self.logger.info(
                "Engine complete",
                engine=self.ENGINE_NAME,
                session_id=str(corpus.session_id),
                elapsed_ms=round(elapsed, 2),
            )
            return report

        except Exception as exc:
            elapsed = (time.perf_counter() - start) * 1000
            self.logger.error(
                "Engine failed",
                engine=self.ENGINE_NAME,
                session_id=str(corpus.session_id),
                error=str(exc),
                elapsed_ms=round(elapsed, 2),
                exc_info=True,
            )
            report = self.failed_report(corpus, str(exc))
            report.status = EngineStatus.FAILED
            report.execution_time_ms = elapsed
            return report

    @staticmethod
    def calculate_grade(score: float) -> str:
        """Convert numeric score to letter grade."""
        if score >= 90:
            return "A"
        elif score >= 80:
            return "B"
        elif score >= 65:
            return "C"
        elif score >= 50:
            return "D"
        return "F"

    @staticmethod
    def round_half_up(value: float, digits: int = 0) -> float:
        """Round like Math.round: halves go up, not to even."""
        factor = 10 ** digits
        return math.floor(value * factor + 0.5) / factor
