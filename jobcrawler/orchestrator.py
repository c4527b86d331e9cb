from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from loguru import logger

from jobcrawler.fetching.canary import CanaryAbortError, CanaryBudget
from jobcrawler.monitoring.metrics_server import CANARY_ABORTS
from jobcrawler.pipeline import CompanyCrawler, CompanyCrawlSummary, increment, merge_errors
from jobcrawler.storage.crawl_repository import CompanyTarget
from jobcrawler.utils.config_loader import CanarySettings


STATUS_COMPLETED = "COMPLETED"
STATUS_COMPLETED_WITH_ERRORS = "COMPLETED_WITH_ERRORS"
STATUS_NO_TARGETS = "NO_TARGETS"
STATUS_ABORTED = "ABORTED"

COMPANY_CRAWL_EXCEPTION = "company_crawl_exception"


@dataclass
class CrawlRunSummary:
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: Dict[str, int] = field(default_factory=dict)
    companies: List[CompanyCrawlSummary] = field(default_factory=list)
    abort_reason: Optional[str] = None
    budget: Optional[Dict[str, object]] = None

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": self.errors,
            "abort_reason": self.abort_reason,
            "budget": self.budget,
            "companies": [company.as_dict() for company in self.companies],
        }


def build_canary_budget(settings: CanarySettings) -> CanaryBudget:
    return CanaryBudget(
        max_requests_per_host=settings.max_requests_per_host,
        max_total_requests=settings.max_total_requests,
        max_429_rate=settings.max_429_rate,
        min_requests_for_429_rate=settings.min_requests_for_429_rate,
        max_consecutive_errors=settings.max_consecutive_errors,
        max_attempts_per_request=settings.max_attempts_per_request,
        request_timeout=settings.request_timeout_seconds,
        deadline_seconds=settings.max_duration_seconds,
    )


class CrawlOrchestrator:
    """Crawl a fixed list of companies in parallel, optionally under a canary budget."""

    def __init__(self, crawler: CompanyCrawler, concurrency: int = 4):
        self.crawler = crawler
        self.concurrency = max(1, concurrency)

    async def run(
        self,
        targets: Sequence[CompanyTarget],
        budget: Optional[CanaryBudget] = None,
        max_sitemap_urls: Optional[int] = None,
    ) -> CrawlRunSummary:
        summary = CrawlRunSummary(status=STATUS_COMPLETED, started_at=datetime.now(timezone.utc))
        if not targets:
            summary.status = STATUS_NO_TARGETS
            summary.finished_at = datetime.now(timezone.utc)
            return summary

        semaphore = asyncio.Semaphore(self.concurrency)

        async def crawl_one(target: CompanyTarget) -> CompanyCrawlSummary:
            async with semaphore:
                return await self.crawler.crawl_company(target, budget=budget, max_sitemap_urls=max_sitemap_urls)

        tasks = {asyncio.create_task(crawl_one(target)): target for target in targets}
        logger.info(f"Crawl run started: companies={len(targets)} concurrency={self.concurrency} canary={budget is not None}")

        try:
            for finished in asyncio.as_completed(list(tasks)):
                try:
                    company = await finished
                except CanaryAbortError:
                    raise
                except Exception as e:
                    logger.exception(f"Company crawl failed unexpectedly: {e}")
                    summary.attempted += 1
                    summary.failed += 1
                    increment(summary.errors, COMPANY_CRAWL_EXCEPTION)
                    continue
                self._record(summary, company)
        except CanaryAbortError as e:
            summary.status = STATUS_ABORTED
            summary.abort_reason = e.reason
            CANARY_ABORTS.labels(reason=e.reason).inc()
            logger.warning(f"Crawl run aborted by canary budget: reason={e.reason}")
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if summary.status != STATUS_ABORTED and summary.failed:
            summary.status = STATUS_COMPLETED_WITH_ERRORS
        if budget is not None:
            summary.budget = budget.snapshot()
        summary.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Crawl run finished: status={summary.status} attempted={summary.attempted} "
            f"succeeded={summary.succeeded} failed={summary.failed} abort_reason={summary.abort_reason}"
        )
        return summary

    @staticmethod
    def _record(summary: CrawlRunSummary, company: CompanyCrawlSummary) -> None:
        summary.attempted += 1
        summary.companies.append(company)
        merge_errors(summary.errors, company.top_errors)
        if company.success:
            summary.succeeded += 1
        else:
            summary.failed += 1
