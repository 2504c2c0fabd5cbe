"""
Link Graph Analyzer - internal link structure of a finished crawl.

Analyzes:
- Incoming / outgoing internal link counts per page
- Orphan pages (no internal page links to them)
- Most / least linked pages
- Broken internal links (target never fetched successfully)
- Key pages: homepage, first-level categories, hubs
- Link depth distribution
- Link distribution score (Gini inequality of incoming links + penalties)

Node set: every fetched (non-placeholder) page on the session's root domain.
Internal and resource edges count as internal links; self-links are ignored.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from urllib.parse import urlsplit
from uuid import UUID

from crawlgraph.engines.base import (
    AnalysisEngine,
    BrokenLink,
    CrawlCorpus,
    KeyPage,
    LinkedPage,
    LinkGraphReport,
    LinkType,
    PageData,
)
from crawlgraph.engines.crawler.frontier import url_hostname

INTERNAL_LINK_TYPES = {LinkType.INTERNAL, LinkType.RESOURCE}


def is_broken_target(page: PageData) -> bool:
    if page.is_placeholder:
        return True
    return page.status_code is not None and (page.status_code == 0 or page.status_code >= 400)


def link_distribution_score(
    incoming_counts: list[int],
    orphan_count: int,
    broken_count: int,
) -> int:
    """
    0-100, higher is better.

    - Subtract round(gini * 25) where gini is the Gini coefficient of the
      incoming-link counts (only when there is at least one link)
    - Subtract 30/20/10/5 when more than 30/20/10/5 % of pages are orphans
    - Subtract 20/15/10/5 when there are more than 20/10/5/0 broken links
    """
    n = len(incoming_counts)
    if n == 0:
        return 0

    score = 100.0

    counts = sorted(incoming_counts)
    total = sum(counts)
    if total > 0:
        gini_sum = sum((i + 1) * c for i, c in enumerate(counts))
        gini = (2 * gini_sum) / (n * total) - (n + 1) / n
        score -= AnalysisEngine.round_half_up(gini * 25)

    orphan_pct = orphan_count / n * 100
    if orphan_pct > 30:
        score -= 30
    elif orphan_pct > 20:
        score -= 20
    elif orphan_pct > 10:
        score -= 10
    elif orphan_pct > 5:
        score -= 5

    if broken_count > 20:
        score -= 20
    elif broken_count > 10:
        score -= 15
    elif broken_count > 5:
        score -= 10
    elif broken_count > 0:
        score -= 5

    return int(max(0, min(100, score)))


class LinkGraphAnalyzer(AnalysisEngine[LinkGraphReport]):

    ENGINE_NAME = "link_graph"

    TOP_N = 10
    HUB_MIN_INCOMING = 10
    HUB_PRIORITY_INCOMING = 20
    LARGE_SITE_PAGES = 20
    SITEMAP_PAGE_THRESHOLD = 50
    HEALTHY_SCORE = 70

    async def run(self, corpus: CrawlCorpus) -> LinkGraphReport:
        root = corpus.session.root_domain.lower()
        by_id: dict[UUID, PageData] = {p.id: p for p in corpus.pages}
        nodes = [
            p for p in corpus.pages
            if not p.is_placeholder and url_hostname(p.url) == root
        ]

        if not nodes:
            return LinkGraphReport(
                session_id=corpus.session_id,
                improvement_suggestions=["No pages available for internal linking analysis"],
            )

        node_ids = {p.id for p in nodes}
        incoming_sources: dict[UUID, list[UUID]] = defaultdict(list)
        outgoing_targets: dict[UUID, set[UUID]] = defaultdict(set)
        broken: list[BrokenLink] = []
        occurrences = 0

        for edge in corpus.edges:
            if edge.link_type not in INTERNAL_LINK_TYPES:
                continue
            if edge.source_page_id == edge.target_page_id:
                continue
            source = by_id.get(edge.source_page_id)
            target = by_id.get(edge.target_page_id)
            if source is None or target is None:
                continue

            occurrences += edge.multiplicity
            outgoing_targets[source.id].add(target.id)
            if target.id not in incoming_sources or source.id not in incoming_sources[target.id]:
                incoming_sources[target.id].append(source.id)

            if is_broken_target(target):
                broken.append(BrokenLink(
                    source_url=source.url,
                    target_url=target.url,
                    anchor_text=edge.anchor_text,
                    status_code=404 if target.is_placeholder else target.status_code,
                ))

        stats = [
            LinkedPage(
                page_id=p.id,
                url=p.url,
                title=p.title,
                incoming_links=len(incoming_sources.get(p.id, [])),
                outgoing_links=len(outgoing_targets.get(p.id, set())),
            )
            for p in nodes
        ]

        orphans = [s for s in stats if s.incoming_links == 0]
        most_linked = sorted(stats, key=lambda s: s.incoming_links, reverse=True)[: self.TOP_N]
        least_linked = sorted(
            (s for s in stats if s.incoming_links > 0),
            key=lambda s: s.incoming_links,
        )[: self.TOP_N]

        total_internal = sum(s.outgoing_links for s in stats)
        score = link_distribution_score(
            [s.incoming_links for s in stats],
            len(orphans),
            len(broken),
        )

        depth_counts = Counter(p.depth for p in nodes)

        report = LinkGraphReport(
            session_id=corpus.session_id,
            total_pages=len(nodes),
            total_internal_links=total_internal,
            total_link_occurrences=occurrences,
            average_links_per_page=self.round_half_up(total_internal / len(nodes), 1),
            orphaned_pages=orphans,
            most_linked_pages=most_linked,
            least_linked_pages=least_linked,
            broken_internal_links=broken,
            key_pages=self._key_pages(stats, incoming_sources, by_id, node_ids),
            link_distribution_score=score,
            link_depth_analysis=dict(sorted(depth_counts.items())),
        )
        report.improvement_suggestions = self._suggestions(report)

        self.logger.info(
            "Link graph analyzed",
            session_id=str(corpus.session_id),
            pages=len(nodes),
            orphans=len(orphans),
            broken=len(broken),
            score=score,
        )
        return report

    def failed_report(self, corpus: CrawlCorpus, error: str) -> LinkGraphReport:
        return LinkGraphReport(session_id=corpus.session_id, error_message=error)

    # ─────────────────────────────────────────────
    # Key pages
    # ─────────────────────────────────────────────

    def _key_pages(
        self,
        stats: list[LinkedPage],
        incoming_sources: dict[UUID, list[UUID]],
        by_id: dict[UUID, PageData],
        node_ids: set[UUID],
    ) -> list[KeyPage]:
        key_pages: list[KeyPage] = []
        seen: set[UUID] = set()

        def add(s: LinkedPage, page_type: str, priority: bool) -> None:
            seen.add(s.page_id)
            key_pages.append(KeyPage(
                page_id=s.page_id,
                url=s.url,
                title=s.title or ("Homepage" if page_type == "homepage" else None),
                page_type=page_type,
                incoming_links=s.incoming_links,
                is_priority=priority,
                linked_from=[
                    by_id[src].url for src in incoming_sources.get(s.page_id, [])
                    if src in node_ids
                ],
            ))

        for s in stats:
            if urlsplit(s.url).path in ("/", "/index.html"):
                add(s, "homepage", True)
                break

        for s in stats:
            if s.page_id in seen:
                continue
            segments = [seg for seg in urlsplit(s.url).path.split("/") if seg]
            if len(segments) == 1 and "." not in segments[0]:
                add(s, "category", True)

        for s in stats:
            if s.page_id in seen:
                continue
            if s.incoming_links > self.HUB_MIN_INCOMING:
                add(s, "hub", s.incoming_links > self.HUB_PRIORITY_INCOMING)

        return key_pages

    # ─────────────────────────────────────────────
    # Suggestions
    # ─────────────────────────────────────────────

    def _suggestions(self, report: LinkGraphReport) -> list[str]:
        suggestions: list[str] = []

        orphan_count = len(report.orphaned_pages)
        if orphan_count:
            noun = "page" if orphan_count == 1 else "pages"
            suggestions.append(
                f"Add internal links to {orphan_count} orphaned {noun} with no incoming links"
            )

        broken_count = len(report.broken_internal_links)
        if broken_count:
            noun = "link" if broken_count == 1 else "links"
            suggestions.append(f"Fix {broken_count} broken internal {noun}")

        if report.link_distribution_score < self.HEALTHY_SCORE:
            suggestions.append("Improve internal linking structure to distribute link equity more evenly")

        if report.total_pages > self.LARGE_SITE_PAGES:
            suggestions.append("Create a clear hierarchical structure with proper internal linking")

        suggestions.extend([
            "Ensure important pages receive more internal links",
            "Use descriptive anchor text for internal links",
            "Add contextual links within content where relevant",
        ])

        if report.total_pages > self.SITEMAP_PAGE_THRESHOLD:
            suggestions.append("Consider creating a sitemap page for users")

        return suggestions
