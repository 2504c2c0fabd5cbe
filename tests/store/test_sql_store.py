"""
Tests for the PostgreSQL CrawlStore that need no database: the link upsert is
compiled against the PostgreSQL dialect, the page merge runs on detached ORM
rows, and session writes go through a mocked AsyncSession.
"""

import uuid
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.dialects import postgresql

from crawlgraph.core.exceptions import SessionNotFoundError, SessionStatusConflictError
from crawlgraph.engines.base import PLACEHOLDER_DEPTH, CrawlStatus, LinkData, LinkType, PageData
from crawlgraph.models.models import CrawlSession, Page
from crawlgraph.store.sql import SQLCrawlStore, link_upsert, merge_page


def compiled_sql(stmt) -> str:
    return " ".join(str(stmt.compile(dialect=postgresql.dialect())).split())


def session_row(status: CrawlStatus) -> CrawlSession:
    return CrawlSession(
        id=uuid.uuid4(),
        root_domain="example.com",
        start_url="https://example.com/",
        status=status.value,
        pages_crawled=3,
        options={},
    )


def store_over(db) -> SQLCrawlStore:
    @asynccontextmanager
    async def scope():
        yield db

    return SQLCrawlStore(scope=scope)


class TestLinkUpsert:

    def setup_method(self):
        self.link = LinkData(
            session_id=uuid.uuid4(),
            source_page_id=uuid.uuid4(),
            target_page_id=uuid.uuid4(),
            link_type=LinkType.INTERNAL,
            anchor_text="Pricing",
            multiplicity=2,
        )

    def test_conflicts_on_the_source_target_constraint(self):
        sql = compiled_sql(link_upsert(self.link))
        assert "INSERT INTO page_links" in sql
        assert "ON CONFLICT ON CONSTRAINT uq_page_links_source_target DO UPDATE" in sql
        assert "RETURNING" in sql

    def test_repeat_adds_multiplicity_and_keeps_first_anchor(self):
        sql = compiled_sql(link_upsert(self.link))
        assert "page_links.multiplicity + excluded.multiplicity" in sql
        assert "coalesce(page_links.anchor_text, excluded.anchor_text)" in sql

    def test_inserted_values(self):
        params = link_upsert(self.link).compile(dialect=postgresql.dialect()).params
        assert params["multiplicity"] == 2
        assert params["link_type"] == "internal"
        assert params["anchor_text"] == "Pricing"


class TestMergePage:

    def test_placeholder_takes_fetched_depth_and_keeps_id(self):
        session_id = uuid.uuid4()
        row = Page(
            id=uuid.uuid4(),
            session_id=session_id,
            url="https://example.com/a",
            depth=PLACEHOLDER_DEPTH,
            structured_data=[],
        )
        row_id = row.id

        merge_page(row, PageData(
            session_id=session_id, url="https://example.com/a", status_code=200, title="A", depth=2,
        ))

        assert row.id == row_id
        assert row.depth == 2
        assert row.status_code == 200
        assert row.title == "A"

    def test_refetch_keeps_shallowest_depth(self):
        session_id = uuid.uuid4()
        row = Page(
            id=uuid.uuid4(),
            session_id=session_id,
            url="https://example.com/a",
            status_code=200,
            depth=1,
            structured_data=[],
        )

        merge_page(row, PageData(
            session_id=session_id, url="https://example.com/a", status_code=500, depth=3,
        ))

        assert row.depth == 1
        assert row.status_code == 500


class TestSessionWrites:

    @pytest.mark.asyncio
    async def test_guarded_write_rejected_after_cancel(self):
        row = session_row(CrawlStatus.FAILED)
        db = AsyncMock()
        db.scalar.return_value = row

        with pytest.raises(SessionStatusConflictError):
            await store_over(db).update_session(
                row.id, CrawlStatus.COMPLETED, expected_status=CrawlStatus.IN_PROGRESS, pages_crawled=9,
            )

        assert row.status == "failed"
        assert row.pages_crawled == 3
        db.flush.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_guarded_write_applies_while_in_progress(self):
        row = session_row(CrawlStatus.IN_PROGRESS)
        db = AsyncMock()
        db.scalar.return_value = row

        updated = await store_over(db).update_session(
            row.id, CrawlStatus.COMPLETED, expected_status=CrawlStatus.IN_PROGRESS, pages_crawled=9,
        )

        assert updated.status == CrawlStatus.COMPLETED
        assert updated.pages_crawled == 9
        db.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_session_row(self):
        db = AsyncMock()
        db.scalar.return_value = None

        with pytest.raises(SessionNotFoundError):
            await store_over(db).update_session(uuid.uuid4(), CrawlStatus.FAILED)
