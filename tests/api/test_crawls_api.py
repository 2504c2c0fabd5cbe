"""
Tests for the crawl API routes.
The SQL store is swapped for the in-memory one and Celery dispatch is mocked,
so neither PostgreSQL nor Redis is needed.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from crawlgraph.api.v1.routes import crawls
from crawlgraph.engines.base import (
    CrawlStatus,
    IssueCategory,
    IssueReport,
    IssueType,
    LinkGraphReport,
    Severity,
    TechnicalIssue,
)
from crawlgraph.main import create_application
from crawlgraph.store.memory import MemoryCrawlStore


class TaskTrackingStore(MemoryCrawlStore):

    def __init__(self):
        super().__init__()
        self.task_ids = {}

    async def set_celery_task_id(self, session_id, task_id):
        self.task_ids[session_id] = task_id


@pytest.fixture
def api_store(monkeypatch):
    store = TaskTrackingStore()
    monkeypatch.setattr(crawls, "SQLCrawlStore", lambda: store)
    return store


@pytest.fixture
def crawl_task(monkeypatch):
    task = MagicMock()
    task.apply_async.return_value = SimpleNamespace(id="task-123")
    monkeypatch.setattr(crawls, "run_crawl_task", task)
    return task


@pytest.fixture
def analysis_task(monkeypatch):
    task = MagicMock()
    task.delay.return_value = SimpleNamespace(id="analysis-456")
    monkeypatch.setattr(crawls, "run_analysis_task", task)
    return task


@pytest.fixture
def client(api_store, crawl_task, analysis_task):
    return TestClient(create_application())


class TestCreateCrawl:

    def test_creates_pending_session_and_dispatches(self, client, api_store, crawl_task):
        response = client.post("/api/v1/crawls", json={"start_url": "https://Example.com", "max_pages": 25})

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        assert body["root_domain"] == "example.com"
        assert body["options"]["max_pages"] == 25
        assert body["options"]["max_depth"] == 3

        args = crawl_task.apply_async.call_args.kwargs["args"]
        assert args[0] == body["id"]
        assert args[2]["max_pages"] == 25
        assert list(api_store.task_ids.values()) == ["task-123"]

    def test_rejects_invalid_options(self, client):
        response = client.post("/api/v1/crawls", json={"start_url": "https://example.com", "max_pages": 0})
        assert response.status_code == 422

    def test_rejects_non_http_url(self, client):
        response = client.post("/api/v1/crawls", json={"start_url": "ftp://example.com"})
        assert response.status_code == 422


class TestCrawlStatus:

    def test_unknown_session_is_404(self, client):
        response = client.get("/api/v1/crawls/00000000-0000-0000-0000-000000000042")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_status(self, client, api_store):
        session = await api_store.create_session("example.com", start_url="https://example.com/")
        await api_store.update_session(session.id, CrawlStatus.IN_PROGRESS, pages_crawled=7)

        body = client.get(f"/api/v1/crawls/{session.id}").json()

        assert body["status"] == "in_progress"
        assert body["pages_crawled"] == 7


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_running_crawl(self, client, api_store):
        session = await api_store.create_session("example.com")
        await api_store.update_session(session.id, CrawlStatus.IN_PROGRESS)

        response = client.post(f"/api/v1/crawls/{session.id}/cancel")

        assert response.status_code == 200
        stored = await api_store.get_session(session.id)
        assert stored.status == CrawlStatus.FAILED
        assert stored.error_message == "Cancelled by operator"
        assert stored.ended_at is not None

    @pytest.mark.asyncio
    async def test_cancel_finished_crawl_conflicts(self, client, api_store):
        session = await api_store.create_session("example.com")
        await api_store.update_session(session.id, CrawlStatus.COMPLETED)

        assert client.post(f"/api/v1/crawls/{session.id}/cancel").status_code == 409

    @pytest.mark.asyncio
    async def test_cancel_twice_keeps_first_outcome(self, client, api_store):
        session = await api_store.create_session("example.com")

        assert client.post(f"/api/v1/crawls/{session.id}/cancel").status_code == 200
        first = await api_store.get_session(session.id)
        response = client.post(f"/api/v1/crawls/{session.id}/cancel")

        assert response.status_code == 409
        assert "failed" in response.json()["detail"]
        assert (await api_store.get_session(session.id)).ended_at == first.ended_at


class TestReports:

    @pytest.mark.asyncio
    async def test_report_missing_until_analyzed(self, client, api_store):
        session = await api_store.create_session("example.com")
        await api_store.update_session(session.id, CrawlStatus.COMPLETED)

        assert client.get(f"/api/v1/crawls/{session.id}/link-graph").status_code == 404

        await api_store.save_link_report(LinkGraphReport(session_id=session.id, total_pages=3))
        response = client.get(f"/api/v1/crawls/{session.id}/link-graph")

        assert response.status_code == 200
        assert response.json()["total_pages"] == 3

    @pytest.mark.asyncio
    async def test_issue_filters(self, client, api_store):
        session = await api_store.create_session("example.com")
        await api_store.save_issue_report(IssueReport(
            session_id=session.id,
            score=70.0,
            issues=[
                TechnicalIssue(
                    session_id=session.id,
                    issue_type=IssueType.MISSING_TITLE,
                    severity=Severity.HIGH,
                    category=IssueCategory.ON_PAGE,
                    description="Page is missing a title tag",
                ),
                TechnicalIssue(
                    session_id=session.id,
                    issue_type=IssueType.MISSING_SITEMAP,
                    severity=Severity.LOW,
                    category=IssueCategory.CRAWLABILITY,
                    description="No XML sitemap with page URLs was found",
                ),
            ],
        ))

        body = client.get(f"/api/v1/crawls/{session.id}/issues", params={"severity": "high"}).json()

        assert [i["issue_type"] for i in body["issues"]] == ["missing_title"]
        assert body["score"] == 70.0

    @pytest.mark.asyncio
    async def test_reanalyze(self, client, api_store, analysis_task):
        session = await api_store.create_session("example.com")

        assert client.post(f"/api/v1/crawls/{session.id}/analyze").status_code == 409

        await api_store.update_session(session.id, CrawlStatus.COMPLETED)
        response = client.post(f"/api/v1/crawls/{session.id}/analyze")

        assert response.status_code == 202
        assert response.json()["task_id"] == "analysis-456"
        analysis_task.delay.assert_called_once_with({"session_id": str(session.id), "completed": True})
