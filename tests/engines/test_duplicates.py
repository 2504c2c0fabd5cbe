"""
Tests for content fingerprinting and duplicate grouping.
The semantic oracle is an AsyncMock; nothing calls a real model.
"""

from unittest.mock import AsyncMock

import pytest

from crawlgraph.engines.base import DuplicateType, EngineStatus
from crawlgraph.engines.duplicates.engine import (
    ContentFingerprintEngine,
    content_similarity,
    fingerprint_page,
    jaccard_similarity,
)


def article(heading: str, paragraphs: list[str], extra: str = "") -> str:
    body = "".join(f"<p>{p}</p>" for p in paragraphs)
    return f"<html><body>{extra}<h1>{heading}</h1>{body}</body></html>"


PARAGRAPHS = [f"Paragraph number {i} about widgets." for i in range(20)]


class TestSimilarity:

    def test_jaccard(self):
        assert jaccard_similarity({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
        assert jaccard_similarity(set(), set()) == 1.0
        assert jaccard_similarity({"a"}, set()) == 0.0

    def test_fingerprint_ignores_boilerplate(self, corpus_builder):
        page = corpus_builder.page(
            "https://example.com/a",
            html=article(
                "Widgets",
                ["Body text."],
                extra="<nav><h2>Menu</h2></nav><script>var x = 1;</script><footer><p>Copyright</p></footer>",
            ),
        )
        fp = fingerprint_page(page)

        assert fp.headings == ["Widgets"]
        assert fp.paragraphs == ["Body text."]
        assert "var x" not in fp.text_content

    def test_identical_content_same_hash(self, corpus_builder):
        a = corpus_builder.page("https://example.com/a", html=article("H", ["p1", "p2"]))
        b = corpus_builder.page(
            "https://example.com/b",
            html=article("H", ["p1", "p2"], extra="<script>track()</script>"),
        )
        assert fingerprint_page(a).content_hash == fingerprint_page(b).content_hash

    def test_weighted_combination(self, corpus_builder):
        a = fingerprint_page(corpus_builder.page("https://example.com/a", html=article("Widgets", PARAGRAPHS)))
        c = fingerprint_page(corpus_builder.page("https://example.com/c", html=article("Gadgets", PARAGRAPHS[:17])))
        assert content_similarity(a, c) == pytest.approx(0.3 * 0 + 0.7 * 0.85)


class TestContentFingerprintEngine:

    @pytest.mark.asyncio
    async def test_exact_group_excludes_partial_overlap(self, corpus_builder):
        b = corpus_builder
        p1 = b.page("https://example.com/a", html=article("Widgets", PARAGRAPHS))
        p2 = b.page("https://example.com/b", html=article("Widgets", PARAGRAPHS))
        p3 = b.page("https://example.com/c", html=article("Gadgets", PARAGRAPHS[:17]))

        report = await ContentFingerprintEngine().execute(b.build())

        [group] = report.exact_duplicates
        assert group.group_type == DuplicateType.EXACT
        assert group.id.startswith("exact_")
        assert {m.page_id for m in group.members} == {p1.id, p2.id}
        assert all(m.similarity == 1.0 for m in group.members)
        assert report.near_duplicates == []
        assert p3.id not in {m.page_id for g in report.groups for m in g.members}

    @pytest.mark.asyncio
    async def test_near_duplicates(self, corpus_builder):
        b = corpus_builder
        a = b.page("https://example.com/a", html=article("Widgets", PARAGRAPHS[:10]))
        c = b.page("https://example.com/c", html=article("Widgets", PARAGRAPHS[:9] + ["Something new."]))
        b.page("https://example.com/z", html=article("Unrelated", ["Totally different text."]))

        report = await ContentFingerprintEngine().execute(b.build())

        [group] = report.near_duplicates
        assert group.id == f"near_{a.id}"
        assert [m.page_id for m in group.members] == [a.id, c.id]
        # 0.3 * 1 + 0.7 * 9/11
        assert group.members[1].similarity == pytest.approx(0.3 + 0.7 * 9 / 11)
        assert group.similarity == pytest.approx(group.members[1].similarity)

    @pytest.mark.asyncio
    async def test_only_successful_html_pages_are_analyzed(self, corpus_builder):
        b = corpus_builder
        b.page("https://example.com/a", html=article("Same", ["x"]))
        b.page("https://example.com/b", html=article("Same", ["x"]), status_code=404)
        b.page("https://example.com/c", html=article("Same", ["x"]), content_type="text/plain")
        b.placeholder("https://example.com/d")

        report = await ContentFingerprintEngine().execute(b.build())

        assert report.pages_analyzed == 1
        assert report.groups == []
        assert report.recommendations == [
            "No duplicate content issues found. Continue to maintain unique content across your site."
        ]

    @pytest.mark.asyncio
    async def test_similar_pass_uses_oracle(self, corpus_builder):
        b = corpus_builder
        a = b.page("https://example.com/a", html=article("Coffee", ["Brewing espresso at home."]))
        c = b.page("https://example.com/c", html=article("Espresso", ["Home espresso guide."]))
        oracle = AsyncMock(return_value=0.9)

        report = await ContentFingerprintEngine(oracle=oracle).execute(b.build())

        [group] = report.similar_content
        assert group.group_type == DuplicateType.SIMILAR
        assert group.id == f"similar_{a.id}"
        assert [m.page_id for m in group.members] == [a.id, c.id]
        assert group.members[1].similarity == 0.9
        oracle.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_oracle_not_asked_about_grouped_pages(self, corpus_builder):
        b = corpus_builder
        b.page("https://example.com/a", html=article("Same", ["x"]))
        b.page("https://example.com/b", html=article("Same", ["x"]))
        b.page("https://example.com/c", html=article("Other", ["y"]))
        oracle = AsyncMock(return_value=1.0)

        report = await ContentFingerprintEngine(oracle=oracle).execute(b.build())

        assert len(report.exact_duplicates) == 1
        assert report.similar_content == []
        oracle.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_oracle_failure_counts_as_dissimilar(self, corpus_builder):
        b = corpus_builder
        b.page("https://example.com/a", html=article("One", ["a"]))
        b.page("https://example.com/b", html=article("Two", ["b"]))
        oracle = AsyncMock(side_effect=TimeoutError("model too slow"))

        report = await ContentFingerprintEngine(oracle=oracle).execute(b.build())

        assert report.status == EngineStatus.SUCCESS
        assert report.similar_content == []

    @pytest.mark.asyncio
    async def test_oracle_candidates_are_bounded(self, corpus_builder):
        b = corpus_builder
        for i in range(15):
            b.page(f"https://example.com/{i}", html=article(f"Topic {i}", [f"Unique text {i}"]))
        oracle = AsyncMock(return_value=0.0)

        await ContentFingerprintEngine(oracle=oracle).execute(b.build())

        # all pairs among the first 10 pages
        assert oracle.await_count == 45

    @pytest.mark.asyncio
    async def test_page_lands_in_at_most_one_group(self, corpus_builder):
        b = corpus_builder
        b.page("https://example.com/a", html=article("Same", PARAGRAPHS[:10]))
        b.page("https://example.com/b", html=article("Same", PARAGRAPHS[:10]))
        b.page("https://example.com/c", html=article("Same", PARAGRAPHS[:9] + ["new"]))
        b.page("https://example.com/d", html=article("Same", PARAGRAPHS[:9] + ["other"]))
        oracle = AsyncMock(return_value=0.95)

        report = await ContentFingerprintEngine(oracle=oracle).execute(b.build())

        members = [m.page_id for g in report.groups for m in g.members]
        assert len(members) == len(set(members)) == 4
        assert len(report.exact_duplicates) == 1
        assert len(report.near_duplicates) == 1
        assert report.similar_content == []

    @pytest.mark.asyncio
    async def test_recommendations_per_group_type(self, corpus_builder):
        b = corpus_builder
        b.page("https://example.com/a", html=article("Same", ["x"]))
        b.page("https://example.com/b", html=article("Same", ["x"]))

        report = await ContentFingerprintEngine().execute(b.build())

        assert report.recommendations == [
            "Found 1 groups of exactly duplicate pages. Implement canonical tags to identify "
            "the preferred version or use 301 redirects to consolidate these pages."
        ]
