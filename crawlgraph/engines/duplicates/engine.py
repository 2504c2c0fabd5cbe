"""
Content Fingerprint Engine - duplicate and near-duplicate page clustering.

Three passes over the status-200 HTML pages of a crawl, in order:
1. exact      - identical content hash (headings + paragraphs)
2. near       - 0.3 * jaccard(headings) + 0.7 * jaccard(paragraphs) > 0.8
3. similar    - injected semantic oracle on text excerpts > 0.7
                (bounded to the first 10 still-unassigned pages)

One `assigned` set is threaded through all passes: a page lands in at most
one group overall. Groups are single-link: candidates are compared against
the group's anchor page only.
"""

from __future__ import annotations

import hashlib
import json

from bs4 import BeautifulSoup

from crawlgraph.engines.base import (
    AnalysisEngine,
    ContentFingerprint,
    CrawlCorpus,
    DuplicateContentReport,
    DuplicateGroup,
    DuplicateMember,
    DuplicateType,
    PageData,
)
from crawlgraph.engines.duplicates.oracle import SimilarityOracle

STRIPPED_TAGS = ["script", "style", "nav", "header", "footer"]


def jaccard_similarity(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def content_similarity(fp1: ContentFingerprint, fp2: ContentFingerprint) -> float:
    heading_sim = jaccard_similarity(set(fp1.headings), set(fp2.headings))
    paragraph_sim = jaccard_similarity(set(fp1.paragraphs), set(fp2.paragraphs))
    return 0.3 * heading_sim + 0.7 * paragraph_sim


def fingerprint_page(page: PageData) -> ContentFingerprint:
    soup = BeautifulSoup(page.html or "", "lxml")
    for tag in soup(STRIPPED_TAGS):
        tag.decompose()

    headings = [
        text for text in (h.get_text(" ", strip=True) for h in soup.find_all(["h1", "h2", "h3"]))
        if text
    ]
    paragraphs = [
        text for text in (p.get_text(" ", strip=True) for p in soup.find_all("p"))
        if text
    ]
    text_root = soup.body or soup
    text_content = " ".join(text_root.get_text(separator=" ").split())

    # JSON keeps the heading/paragraph boundaries unambiguous in the digest
    digest_input = json.dumps([headings, paragraphs], ensure_ascii=False)

    return ContentFingerprint(
        page_id=page.id,
        url=page.url,
        title=page.title,
        content_hash=hashlib.sha256(digest_input.encode("utf-8")).hexdigest(),
        text_content=text_content,
        headings=headings,
        paragraphs=paragraphs,
    )


def _member(fp: ContentFingerprint, similarity: float) -> DuplicateMember:
    return DuplicateMember(page_id=fp.page_id, url=fp.url, title=fp.title, similarity=similarity)


def _group_similarity(members: list[DuplicateMember]) -> float:
    """Mean similarity of the non-anchor members."""
    others = [m.similarity for m in members[1:]]
    return sum(others) / len(others) if others else 1.0


class ContentFingerprintEngine(AnalysisEngine[DuplicateContentReport]):

    ENGINE_NAME = "duplicate_content"

    NEAR_DUPLICATE_THRESHOLD = 0.8
    SIMILAR_THRESHOLD = 0.7
    MAX_SEMANTIC_CANDIDATES = 10
    EXCERPT_CHARS = 1000

    def __init__(self, oracle: SimilarityOracle | None = None):
        super().__init__()
        self.oracle = oracle

    async def run(self, corpus: CrawlCorpus) -> DuplicateContentReport:
        fingerprints = [
            fingerprint_page(page) for page in corpus.pages
            if page.status_code == 200 and page.html and page.is_html
        ]

        assigned: set = set()
        exact = self._exact_groups(fingerprints, assigned)
        near = self._near_groups(fingerprints, assigned)
        similar = await self._similar_groups(fingerprints, assigned)

        report = DuplicateContentReport(
            session_id=corpus.session_id,
            pages_analyzed=len(fingerprints),
            exact_duplicates=exact,
            near_duplicates=near,
            similar_content=similar,
        )
        report.recommendations = self._recommendations(report)

        self.logger.info(
            "Duplicate content analyzed",
            session_id=str(corpus.session_id),
            pages=len(fingerprints),
            exact=len(exact),
            near=len(near),
            similar=len(similar),
        )
        return report

    def failed_report(self, corpus: CrawlCorpus, error: str) -> DuplicateContentReport:
        return DuplicateContentReport(session_id=corpus.session_id, error_message=error)

    # ─────────────────────────────────────────────
    # Passes
    # ─────────────────────────────────────────────

    def _exact_groups(self, fingerprints: list[ContentFingerprint], assigned: set) -> list[DuplicateGroup]:
        by_hash: dict[str, list[ContentFingerprint]] = {}
        for fp in fingerprints:
            by_hash.setdefault(fp.content_hash, []).append(fp)

        groups: list[DuplicateGroup] = []
        for content_hash, members in by_hash.items():
            if len(members) < 2:
                continue
            groups.append(DuplicateGroup(
                id=f"exact_{content_hash}",
                group_type=DuplicateType.EXACT,
                members=[_member(fp, 1.0) for fp in members],
                similarity=1.0,
            ))
            assigned.update(fp.page_id for fp in members)
        return groups

    def _near_groups(self, fingerprints: list[ContentFingerprint], assigned: set) -> list[DuplicateGroup]:
        candidates = [fp for fp in fingerprints if fp.page_id not in assigned]
        groups: list[DuplicateGroup] = []

        for i, anchor in enumerate(candidates):
            if anchor.page_id in assigned:
                continue
            members = [_member(anchor, 1.0)]
            for other in candidates[i + 1:]:
                if other.page_id in assigned:
                    continue
                similarity = content_similarity(anchor, other)
                if similarity > self.NEAR_DUPLICATE_THRESHOLD:
                    members.append(_member(other, similarity))
                    assigned.add(other.page_id)

            if len(members) > 1:
                assigned.add(anchor.page_id)
                groups.append(DuplicateGroup(
                    id=f"near_{anchor.page_id}",
                    group_type=DuplicateType.NEAR_DUPLICATE,
                    members=members,
                    similarity=_group_similarity(members),
                ))
        return groups

    async def _similar_groups(self, fingerprints: list[ContentFingerprint], assigned: set) -> list[DuplicateGroup]:
        if self.oracle is None:
            return []

        candidates = [
            fp for fp in fingerprints if fp.page_id not in assigned
        ][: self.MAX_SEMANTIC_CANDIDATES]
        groups: list[DuplicateGroup] = []

        for i, anchor in enumerate(candidates):
            if anchor.page_id in assigned:
                continue
            members = [_member(anchor, 1.0)]
            for other in candidates[i + 1:]:
                if other.page_id in assigned:
                    continue
                similarity = await self._ask_oracle(anchor, other)
                if similarity > self.SIMILAR_THRESHOLD:
                    members.append(_member(other, similarity))
                    assigned.add(other.page_id)

            if len(members) > 1:
                assigned.add(anchor.page_id)
                groups.append(DuplicateGroup(
                    id=f"similar_{anchor.page_id}",
                    group_type=DuplicateType.SIMILAR,
                    members=members,
                    similarity=_group_similarity(members),
                ))
        return groups

    async def _ask_oracle(self, fp1: ContentFingerprint, fp2: ContentFingerprint) -> float:
        try:
            score = float(await self.oracle(
                fp1.text_content[: self.EXCERPT_CHARS],
                fp2.text_content[: self.EXCERPT_CHARS],
            ))
        except Exception as e:
            self.logger.warning(
                "Similarity oracle failed",
                url_a=fp1.url,
                url_b=fp2.url,
                error=str(e),
            )
            return 0.0
        if score != score:  # NaN
            return 0.0
        return min(1.0, max(0.0, score))

    # ─────────────────────────────────────────────
    # Recommendations
    # ─────────────────────────────────────────────

    def _recommendations(self, report: DuplicateContentReport) -> list[str]:
        recommendations: list[str] = []
        exact = len(report.exact_duplicates)
        near = len(report.near_duplicates)
        similar = len(report.similar_content)

        if exact:
            recommendations.append(
                f"Found {exact} groups of exactly duplicate pages. Implement canonical tags to identify "
                "the preferred version or use 301 redirects to consolidate these pages."
            )
        if near:
            recommendations.append(
                f"Found {near} groups of nearly duplicate pages. Review these pages to either differentiate "
                "their content or consolidate them to avoid content duplication issues."
            )
        if similar:
            recommendations.append(
                f"Found {similar} groups of semantically similar pages. Consider expanding their content to make "
                "them more distinct or creating a single comprehensive page that covers the topic thoroughly."
            )
        if not (exact or near or similar):
            recommendations.append(
                "No duplicate content issues found. Continue to maintain unique content across your site."
            )
        return recommendations
