"""
Issue Aggregator - technical SEO findings and the aggregate score.

Sources:
- Per-page rule checks (rules/definitions/*.json) over fetched HTML 200 pages
- Site-wide duplicate title / meta description / H1 detection
- HTTP status of every fetched page
- Link findings from a LinkGraphReport (orphans, broken internal links)
- Site probe results (robots.txt, sitemap, TLS)

Score = (100 - severity penalties) * (0.5 + 0.5 * passed/total), clamped.
A check is one (check family, subject) pair; it fails if any issue was
raised for it.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from typing import Any

from crawlgraph.core.rule_engine import RuleSet, get_rule_set, render_description
from crawlgraph.engines.base import (
    AnalysisEngine,
    CrawlCorpus,
    IssueCategory,
    IssueReport,
    IssueType,
    LinkGraphReport,
    PageData,
    Severity,
    TechnicalIssue,
)
from crawlgraph.engines.crawler.frontier import normalize_url
from crawlgraph.engines.technical.probe import SiteCheck

MAX_AFFECTED_URLS = 50

SEVERITY_PENALTIES = {
    Severity.CRITICAL: 15,
    Severity.HIGH: 8,
    Severity.MEDIUM: 3,
    Severity.LOW: 1,
    Severity.INFO: 0,
}


def calculate_issue_score(issues: list[TechnicalIssue], passed_checks: int, total_checks: int) -> float:
    """Severity penalties off 100, scaled by 0.5 + 0.5 * pass ratio, clamped to [0, 100]."""
    penalty = sum(SEVERITY_PENALTIES[issue.severity] for issue in issues)
    pass_ratio = passed_checks / total_checks if total_checks else 1.0
    score = (100.0 - penalty) * (0.5 + 0.5 * pass_ratio)
    return round(max(0.0, min(100.0, score)), 2)

DUPLICATE_CHECKS = [
    # (page attribute, issue type, severity, description template, recommendation)
    (
        "title",
        IssueType.DUPLICATE_TITLE,
        Severity.HIGH,
        '{count} pages share the same title: "{value}"',
        "Create unique, descriptive title tags for each page.",
    ),
    (
        "meta_description",
        IssueType.DUPLICATE_META_DESCRIPTION,
        Severity.MEDIUM,
        "{count} pages share the same meta description",
        "Write a unique meta description for each page that summarizes its specific content.",
    ),
    (
        "h1",
        IssueType.DUPLICATE_H1,
        Severity.MEDIUM,
        '{count} pages share the same H1: "{value}"',
        "Make H1 tags unique and descriptive of each page's content.",
    ),
]


def page_check_fields(page: PageData) -> dict[str, Any]:
    """Flat view of a page that rule conditions are evaluated against."""
    canonical_is_self = None
    if page.canonical_url:
        canonical_is_self = (
            normalize_url(page.canonical_url, ignore_query_params=False)
            == normalize_url(page.url, ignore_query_params=False)
        )
    return {
        "url": page.url,
        "title": page.title,
        "meta_description": page.meta_description,
        "h1": page.h1,
        "word_count": page.word_count,
        "canonical_url": page.canonical_url,
        "canonical_is_self": canonical_is_self,
        "viewport": page.viewport,
        "status_code": page.status_code,
        "depth": page.depth,
    }


class IssueAggregator(AnalysisEngine[IssueReport]):

    ENGINE_NAME = "issues"

    def __init__(
        self,
        link_report: LinkGraphReport | None = None,
        site_checks: list[SiteCheck] | None = None,
        rule_set: RuleSet | None = None,
    ):
        super().__init__()
        self.link_report = link_report
        self.site_checks = site_checks or []
        self.rule_set = rule_set or get_rule_set()

    async def run(self, corpus: CrawlCorpus) -> IssueReport:
        issues: list[TechnicalIssue] = []
        failed: set[tuple[str, str]] = set()
        total_checks = 0

        fetched = [p for p in corpus.pages if not p.is_placeholder]
        eligible = [p for p in fetched if p.status_code == 200 and p.is_html]

        total_checks += self._status_checks(corpus, fetched, issues, failed)
        total_checks += self._page_checks(corpus, eligible, issues, failed)
        total_checks += self._duplicate_checks(corpus, eligible, issues, failed)
        if self.link_report is not None:
            total_checks += self._link_checks(corpus, self.link_report, issues, failed)
        total_checks += self._site_checks(corpus, self.site_checks, issues, failed)

        passed_checks = max(total_checks - len(failed), 0)
        score = calculate_issue_score(issues, passed_checks, total_checks)
        counts = Counter(issue.severity.value for issue in issues)

        self.logger.info(
            "Issues aggregated",
            session_id=str(corpus.session_id),
            issues=len(issues),
            passed=passed_checks,
            total=total_checks,
            score=score,
        )

        return IssueReport(
            session_id=corpus.session_id,
            issues=issues,
            score=score,
            grade=self.calculate_grade(score),
            passed_checks=passed_checks,
            total_checks=total_checks,
            severity_counts={s.value: counts.get(s.value, 0) for s in Severity},
        )

    def failed_report(self, corpus: CrawlCorpus, error: str) -> IssueReport:
        return IssueReport(session_id=corpus.session_id, error_message=error)

    def _issue(self, corpus: CrawlCorpus, **fields: Any) -> TechnicalIssue:
        urls = fields.pop("affected_urls", [])
        metadata = fields.pop("metadata", {})
        if len(urls) > MAX_AFFECTED_URLS:
            metadata = {**metadata, "affected_count": len(urls)}
        return TechnicalIssue(
            session_id=corpus.session_id,
            affected_urls=urls[:MAX_AFFECTED_URLS],
            metadata=metadata,
            **fields,
        )

    # ─────────────────────────────────────────────
    # Check families
    # ─────────────────────────────────────────────

    def _status_checks(self, corpus, pages: list[PageData], issues, failed) -> int:
        for page in pages:
            status = page.status_code
            if 400 <= status < 500:
                issues.append(self._issue(
                    corpus,
                    issue_type=IssueType.BROKEN_PAGE,
                    severity=Severity.HIGH,
                    category=IssueCategory.CRAWLABILITY,
                    affected_urls=[page.url],
                    description=f"Page returned status code {status}",
                    recommendation="Fix or redirect broken URLs. Use 301 redirects for permanently moved content.",
                    metadata={"status_code": status},
                ))
                failed.add(("status", page.url))
            elif status == 0 or status >= 500:
                issues.append(self._issue(
                    corpus,
                    issue_type=IssueType.FETCH_FAILED,
                    severity=Severity.HIGH,
                    category=IssueCategory.CRAWLABILITY,
                    affected_urls=[page.url],
                    description=(
                        "Page could not be fetched" if status == 0
                        else f"Page returned server error {status}"
                    ),
                    recommendation="Investigate server errors and timeouts. These pages are unindexable.",
                    metadata={"status_code": status},
                ))
                failed.add(("status", page.url))
        return len(pages)

    def _page_checks(self, corpus, pages: list[PageData], issues, failed) -> int:
        checks_per_page = len(self.rule_set.checks)

        for page in pages:
            fields = page_check_fields(page)
            for rule in self.rule_set.fired(fields):
                issues.append(self._issue(
                    corpus,
                    issue_type=rule.id,
                    severity=rule.severity,
                    category=rule.category,
                    affected_urls=[page.url],
                    description=render_description(rule.description, fields),
                    recommendation=rule.recommendation,
                ))
                failed.add((rule.check, page.url))

        return checks_per_page * len(pages)

    def _duplicate_checks(self, corpus, pages: list[PageData], issues, failed) -> int:
        for attribute, issue_type, severity, template, recommendation in DUPLICATE_CHECKS:
            urls_by_value: dict[str, list[str]] = defaultdict(list)
            for page in pages:
                value = getattr(page, attribute)
                if value:
                    urls_by_value[value].append(page.url)

            for value, urls in urls_by_value.items():
                if len(urls) < 2:
                    continue
                issues.append(self._issue(
                    corpus,
                    issue_type=issue_type,
                    severity=severity,
                    category=IssueCategory.ON_PAGE,
                    affected_urls=urls,
                    description=template.format(count=len(urls), value=value),
                    recommendation=recommendation,
                    metadata={"value": value},
                ))
                failed.add((issue_type.value, "site"))

        return len(DUPLICATE_CHECKS)

    def _link_checks(self, corpus, report: LinkGraphReport, issues, failed) -> int:
        seed_urls = {p.url for p in corpus.pages if p.depth == 0 and not p.is_placeholder}

        for orphan in report.orphaned_pages:
            if orphan.url in seed_urls:
                continue
            issues.append(self._issue(
                corpus,
                issue_type=IssueType.ORPHAN_PAGE,
                severity=Severity.MEDIUM,
                category=IssueCategory.INTERNAL_LINKS,
                affected_urls=[orphan.url],
                description="Page has no incoming internal links",
                recommendation="Link to this page from relevant pages or navigation, or remove it if obsolete.",
            ))
            failed.add(("orphan", orphan.url))

        for link in report.broken_internal_links:
            issues.append(self._issue(
                corpus,
                issue_type=IssueType.BROKEN_INTERNAL_LINK,
                severity=Severity.HIGH,
                category=IssueCategory.INTERNAL_LINKS,
                affected_urls=[link.source_url, link.target_url],
                description=f"Internal link to {link.target_url} is broken (status {link.status_code})",
                recommendation="Fix or remove the broken internal link, or redirect the target URL.",
                metadata={"anchor_text": link.anchor_text, "status_code": link.status_code},
            ))
            failed.add(("broken_links", "site"))

        return report.total_pages + 1

    def _site_checks(self, corpus, checks: list[SiteCheck], issues, failed) -> int:
        for check in checks:
            if check.passed or check.issue_type is None:
                continue
            issues.append(self._issue(
                corpus,
                issue_type=check.issue_type,
                severity=check.severity or Severity.MEDIUM,
                category=check.category,
                affected_urls=check.affected_urls,
                description=check.description,
                recommendation=check.recommendation,
                metadata=check.metadata,
            ))
            failed.add((f"site:{check.check}", "site"))
        return len(checks)
