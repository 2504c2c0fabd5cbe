"""
Site-level technical probe: robots.txt, XML sitemap and TLS.

Each check is a real fetch or handshake against the site's origin. Results
come back as SiteCheck rows that the issue aggregator folds into its report
(a failed check carries the issue it raises).
"""

from __future__ import annotations

import asyncio
import ssl
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlsplit

import structlog
from pydantic import BaseModel, Field

from crawlgraph.engines.base import IssueCategory, IssueType, Severity
from crawlgraph.engines.crawler.fetcher import PageFetcher
from crawlgraph.engines.crawler.robots import RobotsHandler, SitemapParser, site_base

logger = structlog.get_logger(__name__)


class TLSInfo(BaseModel):
    valid: bool
    expires_at: datetime | None = None
    protocol: str | None = None
    error: str | None = None


class SiteCheck(BaseModel):
    """Outcome of one site-level check."""
    check: str
    passed: bool
    issue_type: IssueType | None = None
    severity: Severity | None = None
    category: IssueCategory = IssueCategory.TECHNICAL
    description: str = ""
    recommendation: str = ""
    affected_urls: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


TLSInspector = Callable[[str, int, float], Awaitable[TLSInfo]]


async def inspect_tls(host: str, port: int = 443, timeout: float = 10.0) -> TLSInfo:
    """Perform a verified TLS handshake and read the peer certificate."""
    context = ssl.create_default_context()
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=context, server_hostname=host),
            timeout=timeout,
        )
    except (ssl.SSLError, OSError, asyncio.TimeoutError) as e:
        return TLSInfo(valid=False, error=str(e) or e.__class__.__name__)

    try:
        ssl_object = writer.get_extra_info("ssl_object")
        cert = ssl_object.getpeercert() if ssl_object else {}
        not_after = cert.get("notAfter") if cert else None
        expires_at = (
            datetime.fromtimestamp(ssl.cert_time_to_seconds(not_after), tz=timezone.utc)
            if not_after else None
        )
        return TLSInfo(
            valid=True,
            expires_at=expires_at,
            protocol=ssl_object.version() if ssl_object else None,
        )
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ssl.SSLError, OSError) as e:
            logger.debug("TLS connection close error", host=host, error=str(e))


class SiteProbe:

    def __init__(
        self,
        fetcher: PageFetcher,
        user_agent: str,
        timeout: float = 10.0,
        tls_expiry_warning_days: int = 30,
        tls_inspector: TLSInspector = inspect_tls,
    ):
        self.fetcher = fetcher
        self.user_agent = user_agent
        self.timeout = timeout
        self.tls_expiry_warning_days = tls_expiry_warning_days
        self.tls_inspector = tls_inspector

    async def run(self, start_url: str) -> list[SiteCheck]:
        base = site_base(start_url)
        robots = RobotsHandler(self.fetcher, self.user_agent, self.timeout)
        checks: list[SiteCheck] = []

        has_robots = await robots.fetch_and_parse(base)
        checks.append(self._robots_check(base, has_robots))

        sitemap_parser = SitemapParser(self.fetcher, self.user_agent, self.timeout)
        sitemap_urls = await sitemap_parser.discover(base, robots.sitemap_urls(base))
        checks.append(self._sitemap_check(base, sitemap_urls))

        checks.extend(await self._tls_checks(start_url))

        logger.info(
            "Site probe complete",
            base=base,
            failed=[c.check for c in checks if not c.passed],
        )
        return checks

    def _robots_check(self, base: str, found: bool) -> SiteCheck:
        if found:
            return SiteCheck(check="robots_txt", passed=True)
        return SiteCheck(
            check="robots_txt",
            passed=False,
            issue_type=IssueType.MISSING_ROBOTS_TXT,
            severity=Severity.MEDIUM,
            category=IssueCategory.CRAWLABILITY,
            description="Site has no robots.txt file",
            recommendation="Ensure robots.txt is accessible at the site root and uses proper directive syntax.",
            affected_urls=[f"{base}/robots.txt"],
        )

    def _sitemap_check(self, base: str, urls: list[str]) -> SiteCheck:
        if urls:
            return SiteCheck(check="sitemap", passed=True, metadata={"sitemap_url_count": len(urls)})
        return SiteCheck(
            check="sitemap",
            passed=False,
            issue_type=IssueType.MISSING_SITEMAP,
            severity=Severity.LOW,
            category=IssueCategory.CRAWLABILITY,
            description="No XML sitemap with page URLs was found",
            recommendation="Create and maintain an XML sitemap of all indexable pages and reference it from robots.txt.",
            affected_urls=[f"{base}/sitemap.xml"],
        )

    async def _tls_checks(self, start_url: str) -> list[SiteCheck]:
        parsed = urlsplit(start_url)
        host = parsed.hostname or ""

        if parsed.scheme != "https":
            return [SiteCheck(
                check="https",
                passed=False,
                issue_type=IssueType.INSECURE_CONNECTION,
                severity=Severity.CRITICAL,
                category=IssueCategory.SECURITY,
                description="Site is served over plain HTTP",
                recommendation="Implement HTTPS across the entire site and redirect HTTP to HTTPS.",
                affected_urls=[start_url],
            )]

        info = await self.tls_inspector(host, parsed.port or 443, self.timeout)
        if not info.valid:
            return [SiteCheck(
                check="https",
                passed=False,
                issue_type=IssueType.INSECURE_CONNECTION,
                severity=Severity.CRITICAL,
                category=IssueCategory.SECURITY,
                description=f"TLS handshake failed: {info.error}",
                recommendation="Install a valid certificate for the hostname from a trusted authority.",
                affected_urls=[start_url],
                metadata={"error": info.error},
            )]

        checks = [SiteCheck(check="https", passed=True, metadata={"protocol": info.protocol})]

        if info.expires_at is not None:
            remaining = info.expires_at - datetime.now(timezone.utc)
            if remaining < timedelta(days=self.tls_expiry_warning_days):
                checks.append(SiteCheck(
                    check="certificate_expiry",
                    passed=False,
                    issue_type=IssueType.CERTIFICATE_EXPIRING,
                    severity=Severity.MEDIUM,
                    category=IssueCategory.SECURITY,
                    description=f"TLS certificate expires in {max(remaining.days, 0)} days",
                    recommendation="Renew the certificate and automate renewal.",
                    affected_urls=[start_url],
                    metadata={"expires_at": info.expires_at.isoformat()},
                ))
            else:
                checks.append(SiteCheck(check="certificate_expiry", passed=True))

        return checks
