"""
Tests for the crawl orchestrator.
Uses the in-memory store and a scripted fetcher, so no network or database.
"""

from unittest.mock import AsyncMock

import pytest

from crawlgraph.engines.base import CrawlOptions, CrawlStatus, LinkType, utcnow
from crawlgraph.engines.crawler.engine import CrawlOrchestrator
from crawlgraph.engines.crawler.fetcher import FetchError
from crawlgraph.engines.links.engine import LinkGraphAnalyzer
from crawlgraph.store.memory import MemoryCrawlStore

ROOT = "https://example.com/"


def options(**overrides) -> CrawlOptions:
    values = {
        "max_pages": 10,
        "max_depth": 2,
        "delay_between_requests": 0,
        "respect_robots_txt": False,
    }
    values.update(overrides)
    return CrawlOptions(**values)


def html(*links: str, title: str = "Page") -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
    return f"<html><head><title>{title}</title></head><body>{anchors}</body></html>"


async def new_session(store, start_url: str = ROOT):
    return await store.create_session("example.com", start_url=start_url)


async def urls_by_status(store, session_id) -> dict[str, int | None]:
    return {p.url: p.status_code for p in await store.list_pages(session_id)}


class CancelBeforeCompletionStore(MemoryCrawlStore):
    """An operator cancel lands between the last loop check and the completion write."""

    async def update_session(self, session_id, status=None, expected_status=None, **fields):
        if status == CrawlStatus.COMPLETED:
            await super().update_session(
                session_id,
                CrawlStatus.FAILED,
                expected_status=(CrawlStatus.PENDING, CrawlStatus.IN_PROGRESS),
                ended_at=utcnow(),
                error_message="Cancelled by operator",
            )
        return await super().update_session(session_id, status, expected_status=expected_status, **fields)


class CompletionWriteFailsStore(MemoryCrawlStore):

    async def update_session(self, session_id, status=None, expected_status=None, **fields):
        if status == CrawlStatus.COMPLETED:
            raise RuntimeError("connection reset during commit")
        return await super().update_session(session_id, status, expected_status=expected_status, **fields)


class TestCrawlScenario:

    @pytest.mark.asyncio
    async def test_seed_with_two_internal_and_one_external_link(self, store, fetcher):
        fetcher.add_html(ROOT, html("/b", "/c", "https://external.com"))
        fetcher.add_html("https://example.com/b", html())
        fetcher.add_html("https://example.com/c", html())
        session = await new_session(store)

        ok = await CrawlOrchestrator(store, fetcher).start_crawl(
            session.id, ROOT, options(max_pages=3, max_depth=1),
        )

        assert ok
        stored = await store.get_session(session.id)
        assert stored.status == CrawlStatus.COMPLETED
        assert stored.pages_crawled == 3
        assert stored.started_at is not None
        assert stored.ended_at is not None

        pages = await store.list_pages(session.id)
        fetched = sorted(p.url for p in pages if not p.is_placeholder)
        assert fetched == [ROOT, "https://example.com/b", "https://example.com/c"]

        external = await store.get_page_by_url(session.id, "https://external.com/")
        assert external is not None and external.is_placeholder
        assert "https://external.com/" not in fetcher.calls

        by_id = {p.id: p.url for p in pages}
        edges = {
            (by_id[e.source_page_id], by_id[e.target_page_id]): e.link_type
            for e in await store.list_links(session.id)
        }
        assert edges == {
            (ROOT, "https://example.com/b"): LinkType.INTERNAL,
            (ROOT, "https://example.com/c"): LinkType.INTERNAL,
            (ROOT, "https://external.com/"): LinkType.EXTERNAL,
        }

    @pytest.mark.asyncio
    async def test_depths_follow_bfs_levels(self, store, fetcher):
        fetcher.add_html(ROOT, html("/a"))
        fetcher.add_html("https://example.com/a", html("/a/b", "/"))
        fetcher.add_html("https://example.com/a/b", html())
        session = await new_session(store)

        await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options())

        depths = {p.url: p.depth for p in await store.list_pages(session.id)}
        assert depths == {ROOT: 0, "https://example.com/a": 1, "https://example.com/a/b": 2}

    @pytest.mark.asyncio
    async def test_max_pages_bounds_fetches(self, store, fetcher):
        fetcher.add_html(ROOT, html(*[f"/p{i}" for i in range(10)]))
        for i in range(10):
            fetcher.add_html(f"https://example.com/p{i}", html())
        session = await new_session(store)

        await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options(max_pages=4))

        assert len(fetcher.calls) == 4
        assert (await store.get_session(session.id)).pages_crawled == 4

    @pytest.mark.asyncio
    async def test_max_depth_zero_only_fetches_seed(self, store, fetcher):
        fetcher.add_html(ROOT, html("/a", "/b"))
        session = await new_session(store)

        await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options(max_depth=0))

        assert fetcher.calls == [ROOT]
        # Edges to unfetched targets still point at placeholders
        assert len(await store.list_links(session.id)) == 2


class TestEdgeRecording:

    @pytest.mark.asyncio
    async def test_repeated_anchors_collapse_into_one_edge(self, store, fetcher):
        fetcher.add_html(ROOT, html("/b", "/b#reviews", "/b?utm_source=nav"))
        fetcher.add_html("https://example.com/b", html())
        session = await new_session(store)

        await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options())

        links = await store.list_links(session.id)
        assert len(links) == 1
        assert links[0].multiplicity == 3
        assert fetcher.calls.count("https://example.com/b") == 1

    @pytest.mark.asyncio
    async def test_self_links_are_not_recorded(self, store, fetcher):
        fetcher.add_html(ROOT, html("/", "#top", "https://example.com"))
        session = await new_session(store)

        await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options())

        assert await store.list_links(session.id) == []

    @pytest.mark.asyncio
    async def test_edges_to_already_visited_pages_are_recorded(self, store, fetcher):
        fetcher.add_html(ROOT, html("/a", "/b"))
        fetcher.add_html("https://example.com/a", html("/b", "/"))
        fetcher.add_html("https://example.com/b", html())
        session = await new_session(store)

        await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options())

        pages = {p.id: p.url for p in await store.list_pages(session.id)}
        pairs = {(pages[l.source_page_id], pages[l.target_page_id]) for l in await store.list_links(session.id)}
        assert ("https://example.com/a", "https://example.com/b") in pairs
        assert ("https://example.com/a", ROOT) in pairs

    @pytest.mark.asyncio
    async def test_resource_links_are_typed(self, store, fetcher):
        fetcher.add_html(ROOT, html("/brochure.pdf"))
        fetcher.add_text("https://example.com/brochure.pdf", "%PDF", "application/pdf")
        session = await new_session(store)

        await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options())

        [link] = await store.list_links(session.id)
        assert link.link_type == LinkType.RESOURCE

    @pytest.mark.asyncio
    async def test_external_pages_fetched_but_not_expanded_when_following(self, store, fetcher):
        fetcher.add_html(ROOT, html("https://external.com/"))
        fetcher.add_html("https://external.com/", html("https://external.com/deeper"))
        session = await new_session(store)

        await CrawlOrchestrator(store, fetcher).start_crawl(
            session.id, ROOT, options(follow_external_links=True),
        )

        assert "https://external.com/" in fetcher.calls
        assert "https://external.com/deeper" not in fetcher.calls
        external = await store.get_page_by_url(session.id, "https://external.com/")
        assert external.status_code == 200
        assert len(await store.list_links(session.id)) == 1


class TestFailures:

    @pytest.mark.asyncio
    async def test_failed_fetch_is_stored_and_crawl_continues(self, store, fetcher):
        fetcher.add_html(ROOT, html("/slow", "/ok"))
        fetcher.add_error("https://example.com/slow", FetchError("https://example.com/slow", 0, "timeout"))
        fetcher.add_html("https://example.com/ok", html())
        session = await new_session(store)

        ok = await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options())

        assert ok
        statuses = await urls_by_status(store, session.id)
        assert statuses["https://example.com/slow"] == 0
        assert statuses["https://example.com/ok"] == 200
        assert (await store.get_session(session.id)).pages_crawled == 3

    @pytest.mark.asyncio
    async def test_server_error_keeps_its_status(self, store, fetcher):
        fetcher.add_html(ROOT, html("/boom"))
        fetcher.add_error("https://example.com/boom", FetchError("https://example.com/boom", 502, "bad gateway"))
        session = await new_session(store)

        await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options())

        assert (await urls_by_status(store, session.id))["https://example.com/boom"] == 502

    @pytest.mark.asyncio
    async def test_unexpected_page_error_is_stored_as_status_zero(self, store, fetcher):
        fetcher.add_html(ROOT, html("/weird"))
        fetcher.add_error("https://example.com/weird", RuntimeError("parser exploded"))
        session = await new_session(store)

        ok = await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options())

        assert ok
        assert (await urls_by_status(store, session.id))["https://example.com/weird"] == 0

    @pytest.mark.asyncio
    async def test_error_outside_page_scope_fails_session(self, store, fetcher):
        fetcher.add_error("https://example.com/robots.txt", RuntimeError("resolver down"))
        session = await new_session(store)

        ok = await CrawlOrchestrator(store, fetcher).start_crawl(
            session.id, ROOT, options(respect_robots_txt=True),
        )

        assert not ok
        stored = await store.get_session(session.id)
        assert stored.status == CrawlStatus.FAILED
        assert "resolver down" in stored.error_message
        assert stored.ended_at is not None

    @pytest.mark.asyncio
    async def test_failed_completion_write_marks_session_failed(self, fetcher):
        store = CompletionWriteFailsStore()
        fetcher.add_html(ROOT, html())
        session = await new_session(store)

        ok = await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options())

        assert not ok
        stored = await store.get_session(session.id)
        assert stored.status == CrawlStatus.FAILED
        assert "connection reset during commit" in stored.error_message
        assert stored.pages_crawled == 1
        assert stored.ended_at is not None

    @pytest.mark.asyncio
    async def test_unknown_session_returns_false(self, store, fetcher, corpus_builder):
        ok = await CrawlOrchestrator(store, fetcher).start_crawl(corpus_builder.session.id, ROOT, options())
        assert not ok
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_non_pending_session_is_not_crawled(self, store, fetcher):
        session = await new_session(store)
        await store.update_session(session.id, CrawlStatus.COMPLETED)

        ok = await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options())

        assert not ok
        assert fetcher.calls == []


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_mid_crawl_keeps_partial_state(self, store, fetcher):
        fetcher.add_html(ROOT, html("/b", "/c"))
        fetcher.add_html("https://example.com/b", html())
        fetcher.add_html("https://example.com/c", html())
        session = await new_session(store)

        async def cancel_on_b(url):
            if url == "https://example.com/b":
                await store.update_session(
                    session.id, CrawlStatus.FAILED, error_message="Cancelled by operator",
                )

        fetcher.on_fetch = cancel_on_b

        ok = await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options())

        assert not ok
        assert "https://example.com/c" not in fetcher.calls
        stored = await store.get_session(session.id)
        assert stored.status == CrawlStatus.FAILED
        assert stored.error_message == "Cancelled by operator"
        # /b was stored, but the cancel landed before it could be counted
        assert stored.pages_crawled == 1
        statuses = await urls_by_status(store, session.id)
        assert statuses[ROOT] == 200
        assert statuses["https://example.com/b"] == 200

    @pytest.mark.asyncio
    async def test_cancel_just_before_completion_is_not_overwritten(self, fetcher):
        store = CancelBeforeCompletionStore()
        fetcher.add_html(ROOT, html("/b"))
        fetcher.add_html("https://example.com/b", html())
        session = await new_session(store)

        ok = await CrawlOrchestrator(store, fetcher).start_crawl(session.id, ROOT, options())

        assert not ok
        stored = await store.get_session(session.id)
        assert stored.status == CrawlStatus.FAILED
        assert stored.error_message == "Cancelled by operator"
        assert stored.pages_crawled == 2

    @pytest.mark.asyncio
    async def test_second_worker_does_not_restart_a_claimed_session(self, store, fetcher):
        fetcher.add_html(ROOT, html())
        session = await new_session(store)
        orchestrator = CrawlOrchestrator(store, fetcher)

        # The other worker claims the session after this one read it as pending
        real_get = store.get_session

        async def claimed_after_read(session_id):
            data = await real_get(session_id)
            await store.update_session(session_id, CrawlStatus.IN_PROGRESS)
            store.get_session = real_get
            return data

        store.get_session = claimed_after_read

        ok = await orchestrator.start_crawl(session.id, ROOT, options())

        assert not ok
        assert fetcher.calls == []
        assert (await store.get_session(session.id)).status == CrawlStatus.IN_PROGRESS


class TestPoliteness:

    @pytest.mark.asyncio
    async def test_delay_between_requests(self, store, fetcher):
        fetcher.add_html(ROOT, html("/a", "/b"))
        session = await new_session(store)
        sleep = AsyncMock()

        await CrawlOrchestrator(store, fetcher, sleep=sleep).start_crawl(
            session.id, ROOT, options(delay_between_requests=250),
        )

        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.25)

    @pytest.mark.asyncio
    async def test_robots_disallow_is_respected(self, store, fetcher):
        fetcher.add_text("https://example.com/robots.txt", "User-agent: *\nDisallow: /private\n")
        fetcher.add_html(ROOT, html("/private/page", "/public"))
        fetcher.add_html("https://example.com/public", html())
        session = await new_session(store)

        await CrawlOrchestrator(store, fetcher).start_crawl(
            session.id, ROOT, options(respect_robots_txt=True),
        )

        assert "https://example.com/private/page" not in fetcher.calls
        assert "https://example.com/public" in fetcher.calls

    @pytest.mark.asyncio
    async def test_robots_blocked_targets_are_not_broken_links(self, store, fetcher):
        fetcher.add_text("https://example.com/robots.txt", "User-agent: *\nDisallow: /private\n")
        fetcher.add_html(ROOT, html("/private/page", "/public"))
        fetcher.add_html("https://example.com/public", html())
        session = await new_session(store)

        await CrawlOrchestrator(store, fetcher).start_crawl(
            session.id, ROOT, options(respect_robots_txt=True),
        )

        assert await store.get_page_by_url(session.id, "https://example.com/private/page") is None
        pages = {p.id: p.url for p in await store.list_pages(session.id)}
        targets = [pages[link.target_page_id] for link in await store.list_links(session.id)]
        assert targets == ["https://example.com/public"]

        report = await LinkGraphAnalyzer().execute(await store.load_corpus(session.id))
        assert report.broken_internal_links == []

    @pytest.mark.asyncio
    async def test_crawl_delay_raises_configured_delay(self, store, fetcher):
        fetcher.add_text("https://example.com/robots.txt", "User-agent: *\nCrawl-delay: 2\n")
        fetcher.add_html(ROOT, html("/a"))
        session = await new_session(store)
        sleep = AsyncMock()

        await CrawlOrchestrator(store, fetcher, sleep=sleep).start_crawl(
            session.id, ROOT, options(respect_robots_txt=True, delay_between_requests=100),
        )

        sleep.assert_awaited_once_with(2.0)
