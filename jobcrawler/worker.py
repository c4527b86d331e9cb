import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from loguru import logger

from jobcrawler.fetching.canary import CanaryAbortError
from jobcrawler.monitoring.metrics_server import COMPANIES_FAILED, COMPANIES_PROCESSED, WORKER_ACTIVE
from jobcrawler.pipeline import MISSING_DOMAIN, CompanyCrawler, CompanyCrawlSummary
from jobcrawler.storage.crawl_queue_manager import MAX_LAST_ERROR_LENGTH, CrawlQueueManager
from jobcrawler.storage.crawl_repository import CrawlRepository
from jobcrawler.utils import reason_codes
from jobcrawler.utils.config_loader import DaemonSettings


COMPANY_CRAWL_FAILED = "company_crawl_failed"
DAEMON_EXCEPTION = "daemon_exception"


def summarize_errors(errors: Dict[str, int]) -> str:
    """First three error keys of a summary, comma separated."""
    if not errors:
        return COMPANY_CRAWL_FAILED
    return ",".join(list(errors)[:3])[:MAX_LAST_ERROR_LENGTH]


class CrawlWorker:
    def __init__(
        self,
        queue: CrawlQueueManager,
        repository: CrawlRepository,
        crawler: CompanyCrawler,
        worker_id: int,
        settings: Optional[DaemonSettings] = None,
        stop_event: Optional[asyncio.Event] = None,
        lock_owner: Optional[str] = None,
    ):
        self.queue = queue
        self.repository = repository
        self.crawler = crawler
        self.worker_id = worker_id
        self.settings = settings or DaemonSettings()
        self.stop_event = stop_event or asyncio.Event()
        self.name = f"Worker-{worker_id}"
        self.lock_owner = lock_owner or self.name
        # set while a company is in flight so shutdown can wait for it
        self.idle = asyncio.Event()
        self.idle.set()

    # --------------------------
    #  Scheduling
    # --------------------------
    def next_success_run_at(self) -> datetime:
        minutes = max(1, self.settings.success_interval_minutes)
        return datetime.now(timezone.utc) + timedelta(minutes=minutes)

    def next_failure_run_at(self, failures_so_far: int) -> datetime:
        backoff = self.settings.failure_backoff_minutes or [5]
        index = min(max(0, failures_so_far), len(backoff) - 1)
        minutes = max(1, backoff[index])
        jitter = random.randint(self.settings.jitter_min_seconds, self.settings.jitter_max_seconds)
        return datetime.now(timezone.utc) + timedelta(minutes=minutes, seconds=jitter)

    # --------------------------
    #  One company
    # --------------------------
    async def process_company(self, company_id: int) -> Optional[CompanyCrawlSummary]:
        worker_label = str(self.worker_id)
        failures_so_far = await self.queue.get_consecutive_failures(company_id)

        target = await self.repository.load_target(company_id)
        if target is None or not target.domain:
            logger.warning(f"[{self.name}] Company {company_id} has no domain; rescheduling")
            COMPANIES_FAILED.labels(worker_id=worker_label, reason=MISSING_DOMAIN).inc()
            await self.queue.mark_failure(company_id, self.next_failure_run_at(failures_so_far), MISSING_DOMAIN)
            return None

        try:
            summary = await self.crawler.crawl_company(target)
        except CanaryAbortError:
            # not the company's fault: hand the lease back untouched
            await self.queue.release_lock(company_id)
            raise
        except Exception as e:
            logger.exception(f"[{self.name}] Crawl failed for {target.label} ({target.domain}): {e}")
            COMPANIES_FAILED.labels(worker_id=worker_label, reason="exception").inc()
            error = f"exception={type(e).__name__}"
            await self.repository.log_error(
                company_id,
                reason_codes.UNKNOWN,
                (str(e) or type(e).__name__)[:500],
                url=f"https://{target.domain}/",
                worker_id=self.lock_owner,
            )
            await self.queue.mark_failure(company_id, self.next_failure_run_at(failures_so_far), error)
            return None

        if summary.success:
            await self.queue.mark_success(company_id, self.next_success_run_at())
            COMPANIES_PROCESSED.labels(worker_id=worker_label).inc()
        else:
            error = summarize_errors(summary.top_errors)
            reason = reason_codes.from_error_key(next(iter(summary.top_errors), None))
            COMPANIES_FAILED.labels(worker_id=worker_label, reason=reason).inc()
            logger.info(
                f"[{self.name}] Crawl of {target.label} failed reason={reason} "
                f"category={reason_codes.category_for(reason)} retryable={reason_codes.is_retryable(reason)} "
                f"errors={error}"
            )
            await self.queue.mark_failure(company_id, self.next_failure_run_at(failures_so_far), error)
        return summary

    async def _record_unexpected_failure(self, company_id: int) -> None:
        try:
            failures_so_far = await self.queue.get_consecutive_failures(company_id)
            await self.queue.mark_failure(company_id, self.next_failure_run_at(failures_so_far), DAEMON_EXCEPTION)
        except Exception as e:
            logger.error(f"[{self.name}] Failed to record failure for company {company_id}: {e}")

    # --------------------------
    #  Worker loop
    # --------------------------
    async def _sleep_poll(self) -> None:
        delay = max(100, self.settings.poll_interval_ms) / 1000
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        worker_label = str(self.worker_id)
        WORKER_ACTIVE.labels(worker_id=worker_label).set(1.0)
        logger.info(f"{self.name} started.")

        try:
            while not self.stop_event.is_set():
                try:
                    company_id = await self.queue.claim_next_company(self.lock_owner, self.settings.lock_ttl_seconds)
                except Exception as e:
                    logger.warning(f"[{self.name}] Failed to claim queue item: {e}")
                    await self._sleep_poll()
                    continue

                if company_id is None:
                    await self._sleep_poll()
                    continue

                logger.debug(f"[{self.name}] Claimed company {company_id}")
                self.idle.clear()
                try:
                    await self.process_company(company_id)
                except CanaryAbortError:
                    raise
                except Exception as e:
                    logger.error(f"[{self.name}] Unexpected error for company {company_id}: {e}")
                    await self._record_unexpected_failure(company_id)
                finally:
                    self.idle.set()
        finally:
            WORKER_ACTIVE.labels(worker_id=worker_label).set(0.0)
            logger.info(f"{self.name} stopped.")
