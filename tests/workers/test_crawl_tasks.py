"""
Tests for the Celery task wrappers. Tasks are called in-process and the
service layer is mocked, so no broker or database is touched.
"""

import uuid
from unittest.mock import AsyncMock

import pytest

from crawlgraph.workers import crawl_tasks


@pytest.fixture(autouse=True)
def no_engine_dispose(monkeypatch):
    dispose = AsyncMock()
    monkeypatch.setattr(crawl_tasks, "dispose_engine", dispose)
    return dispose


class TestRunAsync:

    def test_returns_result_and_disposes_pool(self, no_engine_dispose):
        async def work():
            return 42

        assert crawl_tasks.run_async(work()) == 42
        no_engine_dispose.assert_awaited_once()

    def test_disposes_pool_on_error(self, no_engine_dispose):
        async def work():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            crawl_tasks.run_async(work())
        no_engine_dispose.assert_awaited_once()


class TestRunCrawlTask:

    def test_reports_completion(self, monkeypatch):
        session_id = str(uuid.uuid4())
        start_crawl = AsyncMock(return_value=True)
        monkeypatch.setattr(crawl_tasks.crawl_service, "start_crawl", start_crawl)
        monkeypatch.setattr(crawl_tasks, "SQLCrawlStore", lambda: "store")

        result = crawl_tasks.run_crawl_task(session_id, "https://example.com/", {"max_pages": 5})

        assert result == {"session_id": session_id, "completed": True}
        store, passed_id, start_url, options = start_crawl.await_args.args
        assert passed_id == uuid.UUID(session_id)
        assert options.max_pages == 5
        assert options.max_depth == 3


class TestRunAnalysisTask:

    def test_skips_unfinished_crawl(self, monkeypatch):
        analyze = AsyncMock()
        monkeypatch.setattr(crawl_tasks, "_analyze", analyze)

        result = crawl_tasks.run_analysis_task({"session_id": "abc", "completed": False})

        assert result == {"session_id": "abc", "analyzed": False}
        analyze.assert_not_called()

    def test_returns_summary(self, monkeypatch):
        session_id = str(uuid.uuid4())
        summary = {"link_distribution_score": 80, "duplicate_groups": 1, "issues": 4, "score": 91.5}
        monkeypatch.setattr(crawl_tasks, "_analyze", AsyncMock(return_value=summary))

        result = crawl_tasks.run_analysis_task({"session_id": session_id, "completed": True})

        assert result["analyzed"] is True
        assert result["score"] == 91.5
