"""Per-company crawl: robots -> sitemaps -> URL classification -> ATS fingerprinting.

Steps run strictly in order for one company. A wall-clock budget
(``pipeline.max_company_seconds``) is checked between steps and between
probe pages; running out stops the crawl with ``company_time_budget_exceeded``
and whatever was found so far is kept. Only ``CanaryAbortError`` escapes.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loguru import logger

from jobcrawler.ats.detector import AtsDetector
from jobcrawler.ats.extractor import AtsDetectionRecord, AtsEndpointExtractor
from jobcrawler.ats.fingerprint import (
    ShortLinkResolver,
    detect_from_html_links,
    detect_from_sitemap_urls,
    merge_detections,
    record_detections,
)
from jobcrawler.fetching.canary import CanaryBudget
from jobcrawler.fetching.polite_fetcher import HTML_ACCEPT, FetchResult, PoliteFetcher
from jobcrawler.parsing.sitemap import BLOCKED_BY_ROBOTS, SitemapDiscovery, SitemapDiscoveryResult, default_seed_urls
from jobcrawler.storage.crawl_repository import CompanyTarget, CrawlRepository
from jobcrawler.storage.mongo.mongo_storage_manager import MongoStorageManager
from jobcrawler.utils.config_loader import PipelineSettings, SitemapSettings
from jobcrawler.utils.filters import DiscoveredUrlType, classify_url
from jobcrawler.utils.robots import RobotsHandler
from jobcrawler.utils.url_utils import root_url


MISSING_DOMAIN = "missing_domain"
COMPANY_TIME_BUDGET_EXCEEDED = "company_time_budget_exceeded"
ATS_DETECTED_NO_ENDPOINT = "ats_detected_no_endpoint"
SNAPSHOT_FAILED = "snapshot_failed"
TOP_ERROR_LIMIT = 5

# detection_method values stored with each endpoint
METHOD_SITEMAP = "sitemap"
METHOD_PATTERN = "pattern"
METHOD_HTML = "html"
METHOD_SHORT_LINK = "short_link"


@dataclass
class CompanyCrawlSummary:
    company_id: int
    ticker: Optional[str]
    domain: Optional[str]
    sitemaps_fetched: int = 0
    candidate_urls: int = 0
    ats_detections: List[AtsDetectionRecord] = field(default_factory=list)
    probes_fetched: int = 0
    success: bool = False
    top_errors: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "company_id": self.company_id,
            "ticker": self.ticker,
            "domain": self.domain,
            "sitemaps_fetched": self.sitemaps_fetched,
            "candidate_urls": self.candidate_urls,
            "ats_endpoints": [{"vendor": r.vendor.value, "url": r.url} for r in self.ats_detections],
            "probes_fetched": self.probes_fetched,
            "success": self.success,
            "top_errors": self.top_errors,
        }


def increment(errors: Dict[str, int], key: str, amount: int = 1) -> None:
    errors[key] = errors.get(key, 0) + amount


def merge_errors(errors: Dict[str, int], additions: Dict[str, int]) -> None:
    for key, value in additions.items():
        increment(errors, key, value)


def top_errors(errors: Dict[str, int], limit: int = TOP_ERROR_LIMIT) -> Dict[str, int]:
    ranked = sorted(errors.items(), key=lambda item: item[1], reverse=True)
    return dict(ranked[:limit])


class _Deadline:
    def __init__(self, seconds: float):
        self.expires_at = time.monotonic() + max(0.0, seconds)

    def exceeded(self) -> bool:
        return time.monotonic() > self.expires_at


class _CompanyRun:
    """Mutable state of one ``crawl_company`` call."""

    def __init__(self, target: CompanyTarget, deadline: _Deadline):
        self.target = target
        self.deadline = deadline
        self.errors: Dict[str, int] = {}
        self.detections: Dict[AtsDetectionRecord, str] = {}
        self.sitemaps_fetched = 0
        self.candidate_urls = 0
        self.probes_fetched = 0

    def out_of_time(self) -> bool:
        if self.deadline.exceeded():
            increment(self.errors, COMPANY_TIME_BUDGET_EXCEEDED)
            return True
        return False

    def summary(self) -> CompanyCrawlSummary:
        return CompanyCrawlSummary(
            company_id=self.target.company_id,
            ticker=self.target.ticker,
            domain=self.target.domain,
            sitemaps_fetched=self.sitemaps_fetched,
            candidate_urls=self.candidate_urls,
            ats_detections=list(self.detections),
            probes_fetched=self.probes_fetched,
            success=self.sitemaps_fetched > 0 or self.probes_fetched > 0 or bool(self.detections),
            top_errors=top_errors(self.errors),
        )


class CompanyCrawler:
    def __init__(
        self,
        fetcher: PoliteFetcher,
        robots: RobotsHandler,
        repository: CrawlRepository,
        sitemap_settings: Optional[SitemapSettings] = None,
        pipeline_settings: Optional[PipelineSettings] = None,
        snapshots: Optional[MongoStorageManager] = None,
        extractor: Optional[AtsEndpointExtractor] = None,
        detector: Optional[AtsDetector] = None,
    ):
        self.fetcher = fetcher
        self.robots = robots
        self.repository = repository
        self.sitemap_settings = sitemap_settings or SitemapSettings()
        self.settings = pipeline_settings or PipelineSettings()
        self.snapshots = snapshots
        self.extractor = extractor or AtsEndpointExtractor()
        self.detector = detector or AtsDetector()
        self.sitemaps = SitemapDiscovery(fetcher, robots, max_bytes=self.sitemap_settings.max_bytes)
        self.short_links = ShortLinkResolver(
            fetcher,
            robots,
            extractor=self.extractor,
            max_resolutions=self.settings.max_shortlink_resolutions,
        )

    async def crawl_company(
        self,
        target: CompanyTarget,
        budget: Optional[CanaryBudget] = None,
        max_sitemap_urls: Optional[int] = None,
    ) -> CompanyCrawlSummary:
        run = _CompanyRun(target, _Deadline(self.settings.max_company_seconds))
        if not target.domain:
            increment(run.errors, MISSING_DOMAIN)
            return run.summary()

        logger.info(f"Crawling {target.label} ({target.domain})")

        # 1-2) robots + sitemaps
        rules = await self.robots.rules_for_host(target.domain, budget)
        seeds = list(rules.sitemap_urls) or default_seed_urls(target.domain)
        max_urls = max_sitemap_urls if max_sitemap_urls is not None else self.sitemap_settings.max_urls
        sitemap_result = await self.sitemaps.discover(
            seeds,
            self.sitemap_settings.max_depth,
            self.sitemap_settings.max_sitemaps,
            max_urls,
            budget=budget,
        )
        merge_errors(run.errors, sitemap_result.errors)
        run.sitemaps_fetched = len(sitemap_result.fetched_sitemaps)
        if sitemap_result.fetched_sitemaps:
            await self.repository.save_sitemaps(target.company_id, sitemap_result.fetched_sitemaps)

        # 3) classification
        candidates, ats_landing = await self._classify(target, sitemap_result)
        run.candidate_urls = len(candidates)
        if not candidates:
            await self._diagnose_empty(run, sitemap_result, budget)

        if run.out_of_time():
            return self._finish(run)

        # 4-6) fingerprinting
        await self._register(run, detect_from_sitemap_urls(sitemap_result.urls, self.extractor), METHOD_SITEMAP)
        await self._probe(run, self._probe_urls(target, candidates, ats_landing), budget)
        return self._finish(run)

    # -------------------------------------------------------
    async def _classify(self, target: CompanyTarget, result: SitemapDiscoveryResult):
        candidates: List[str] = []
        ats_landing: List[str] = []
        rows = []
        for entry in result.entries:
            url_type = classify_url(entry.url)
            rows.append((entry.url, url_type, entry.lastmod))
            if url_type == DiscoveredUrlType.CANDIDATE_JOB:
                candidates.append(entry.url)
            elif url_type == DiscoveredUrlType.ATS_LANDING:
                candidates.append(entry.url)
                ats_landing.append(entry.url)
        if rows:
            await self.repository.save_discovered_urls(target.company_id, rows)
        return candidates, ats_landing

    async def _diagnose_empty(
        self,
        run: _CompanyRun,
        result: SitemapDiscoveryResult,
        budget: Optional[CanaryBudget],
    ) -> None:
        if not result.fetched_sitemaps:
            if BLOCKED_BY_ROBOTS in result.errors:
                unavailable = await self.robots.is_robots_unavailable(root_url(run.target.domain), budget)
                increment(run.errors, "robots_fetch_failed" if unavailable else "sitemap_blocked_by_robots")
            elif result.errors:
                increment(run.errors, "sitemap_fetch_failed")
            else:
                increment(run.errors, "no_sitemaps_found")
        elif not result.entries:
            increment(run.errors, "sitemap_no_urls")
        else:
            increment(run.errors, "no_candidate_urls")

    def _probe_urls(self, target: CompanyTarget, candidates: List[str], ats_landing: List[str]) -> List[str]:
        limit = self.settings.max_ats_probes
        probes: Dict[str, None] = {}
        if target.careers_hint_url and target.careers_hint_url.strip():
            probes[target.careers_hint_url.strip()] = None
        probes[root_url(target.domain, "/careers")] = None
        probes[root_url(target.domain, "/jobs")] = None
        for url in ats_landing + candidates:
            if len(probes) >= limit:
                break
            probes.setdefault(url, None)
        return list(probes)[:limit]

    async def _probe(self, run: _CompanyRun, probes: List[str], budget: Optional[CanaryBudget]) -> None:
        for probe in probes:
            if run.out_of_time():
                break

            direct = {record: probe for record in self.extractor.extract(url=probe)}
            await self._register(run, direct, METHOD_PATTERN)

            if not await self.robots.is_allowed(probe, budget):
                continue

            fetch = await self.fetcher.get(probe, HTML_ACCEPT, max_bytes=self.settings.probe_max_bytes, budget=budget)
            resolved = fetch.final_url_or_requested
            html = fetch.text if fetch.is_successful else None
            if fetch.is_successful:
                run.probes_fetched += 1

            found = {record: resolved for record in self.extractor.extract(url=resolved, html=html)}
            for record, href in detect_from_html_links(html, resolved, self.extractor).items():
                found.setdefault(record, href)
            method = METHOD_HTML if fetch.is_successful else METHOD_PATTERN
            if not found and html:
                found = await self.short_links.resolve(html, budget)
                method = METHOD_SHORT_LINK

            if found:
                await self._register(run, found, method)
            elif self.detector.detect(resolved, html) is not None:
                increment(run.errors, ATS_DETECTED_NO_ENDPOINT)
            elif not fetch.is_successful:
                increment(run.errors, fetch.error_key)

            if html:
                await self._snapshot(run, probe, fetch, html, found)

    async def _register(self, run: _CompanyRun, found: Dict[AtsDetectionRecord, str], method: str) -> None:
        added = merge_detections(run.detections, found)
        for record in added:
            await self.repository.save_ats_endpoint(run.target.company_id, record, found[record], method)
        record_detections(added)

    async def _snapshot(
        self,
        run: _CompanyRun,
        probe: str,
        fetch: FetchResult,
        html: str,
        found: Dict[AtsDetectionRecord, str],
    ) -> None:
        if self.snapshots is None:
            return
        try:
            await self.snapshots.save_snapshot(
                run.target.company_id,
                probe,
                fetch.status_code,
                html,
                final_url=fetch.final_url,
                vendors=sorted({record.vendor.value for record in found}),
            )
        except Exception as e:
            logger.error(f"Failed to snapshot {probe}: {e}")
            increment(run.errors, SNAPSHOT_FAILED)

    def _finish(self, run: _CompanyRun) -> CompanyCrawlSummary:
        summary = run.summary()
        logger.info(
            f"Crawled {run.target.label} ({run.target.domain}): sitemaps={summary.sitemaps_fetched} "
            f"candidates={summary.candidate_urls} ats={len(summary.ats_detections)} "
            f"probes={summary.probes_fetched} success={summary.success} errors={summary.top_errors}"
        )
        return summary
