"""
Database Models - relational schema for crawl sessions and their analyses.

Design decisions:
- UUID primary keys (no sequential int exposure)
- One row per (session, url) page; placeholders share the table and are
  filled in place when fetched
- One row per (session, source, target) link, with multiplicity
- Analysis reports stored as JSONB snapshots; issues and duplicate groups
  additionally get their own rows for querying
- Full audit trail with created_at/updated_at
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crawlgraph.core.database import Base


# ─────────────────────────────────────────────
# Mixins
# ─────────────────────────────────────────────

class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class UUIDPrimaryKeyMixin:
    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)


# ─────────────────────────────────────────────
# Crawl sessions
# ─────────────────────────────────────────────

class CrawlSession(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """One crawl run for a project."""
    __tablename__ = "crawl_sessions"

    project_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    root_domain: Mapped[str] = mapped_column(String(255), nullable=False)
    start_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    # pending | in_progress | completed | failed

    # Celery task tracking
    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Options snapshot at time of crawl
    options: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)

    pages_crawled: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    pages: Mapped[list["Page"]] = relationship("Page", back_populates="session", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_crawl_sessions_project_id", "project_id"),
        Index("ix_crawl_sessions_status", "status"),
        Index("ix_crawl_sessions_created_at", "created_at"),
    )


# ─────────────────────────────────────────────
# Pages
# ─────────────────────────────────────────────

class Page(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A crawled page, or a placeholder for a link target (depth 999, no status)."""
    __tablename__ = "pages"

    session_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("crawl_sessions.id", ondelete="CASCADE"), nullable=False)

    url: Mapped[str] = mapped_column(Text, nullable=False)
    canonical_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    depth: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Page signals
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    h1: Mapped[str | None] = mapped_column(Text, nullable=True)
    viewport: Mapped[str | None] = mapped_column(String(500), nullable=True)
    word_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    html: Mapped[str | None] = mapped_column(Text, nullable=True)
    structured_data: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)

    session: Mapped[CrawlSession] = relationship("CrawlSession", back_populates="pages")

    __table_args__ = (
        UniqueConstraint("session_id", "url", name="uq_pages_session_url"),
        Index("ix_pages_session_id", "session_id"),
        Index("ix_pages_status_code", "status_code"),
    )


class PageLink(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Directed link between two pages of the same session."""
    __tablename__ = "page_links"

    session_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("crawl_sessions.id", ondelete="CASCADE"), nullable=False)
    source_page_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("pages.id", ondelete="CASCADE"), nullable=False)
    target_page_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("pages.id", ondelete="CASCADE"), nullable=False)
    link_type: Mapped[str] = mapped_column(String(20), nullable=False)   # internal | external | resource
    anchor_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    multiplicity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        UniqueConstraint("source_page_id", "target_page_id", name="uq_page_links_source_target"),
        Index("ix_page_links_session_id", "session_id"),
        Index("ix_page_links_target_page_id", "target_page_id"),
    )


# ─────────────────────────────────────────────
# Analysis results
# ─────────────────────────────────────────────

class TechnicalIssueRecord(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A single technical SEO issue from the latest issue aggregation."""
    __tablename__ = "technical_issues"

    session_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("crawl_sessions.id", ondelete="CASCADE"), nullable=False)
    issue_type: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    affected_urls: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    recommendation: Mapped[str] = mapped_column(Text, nullable=False, default="")
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    extra_data: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)

    __table_args__ = (
        Index("ix_technical_issues_session_id", "session_id"),
        Index("ix_technical_issues_issue_type", "issue_type"),
        Index("ix_technical_issues_severity", "severity"),
    )


class DuplicateGroupRecord(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A duplicate / near-duplicate / similar content cluster."""
    __tablename__ = "duplicate_groups"

    session_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("crawl_sessions.id", ondelete="CASCADE"), nullable=False)
    group_key: Mapped[str] = mapped_column(String(200), nullable=False)
    group_type: Mapped[str] = mapped_column(String(20), nullable=False)
    similarity: Mapped[float] = mapped_column(Float, nullable=False)
    members: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)

    __table_args__ = (
        Index("ix_duplicate_groups_session_id", "session_id"),
        UniqueConstraint("session_id", "group_key", name="uq_duplicate_groups_session_key"),
    )


class AnalysisReportRecord(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Latest report of each kind for a session (link_graph, duplicate_content, issues)."""
    __tablename__ = "analysis_reports"

    session_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("crawl_sessions.id", ondelete="CASCADE"), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    execution_time_ms: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("session_id", "kind", name="uq_analysis_reports_session_kind"),
    )
