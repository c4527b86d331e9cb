from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from loguru import logger
from tortoise.transactions import in_transaction

from jobcrawler.ats.extractor import AtsDetectionRecord
from jobcrawler.parsing.sitemap import SitemapFetchRecord
from jobcrawler.storage.models import (
    AtsEndpoint,
    Company,
    CrawlErrorLog,
    DiscoveredSitemap,
    DiscoveredUrl,
)
from jobcrawler.utils.filters import DiscoveredUrlType
from jobcrawler.utils.url_utils import MAX_URL_LENGTH


MAX_LASTMOD_LENGTH = 64


@dataclass(frozen=True)
class CompanyTarget:
    company_id: int
    ticker: Optional[str]
    name: Optional[str]
    domain: Optional[str]
    careers_hint_url: Optional[str] = None

    @property
    def label(self) -> str:
        return self.ticker or str(self.company_id)


def _to_target(company: Company) -> CompanyTarget:
    domain = (company.domain or "").strip().lower() or None
    return CompanyTarget(
        company_id=company.id,
        ticker=company.ticker,
        name=company.name,
        domain=domain,
        careers_hint_url=company.careers_hint_url,
    )


class CrawlRepository:
    """Tortoise-backed sink for everything one company crawl discovers."""

    # -------------------------------------------------------
    # Targets
    # -------------------------------------------------------

    async def load_target(self, company_id: int) -> Optional[CompanyTarget]:
        company = await Company.filter(id=company_id).first()
        return _to_target(company) if company else None

    async def load_targets(
        self,
        limit: Optional[int] = None,
        tickers: Optional[Sequence[str]] = None,
    ) -> List[CompanyTarget]:
        query = Company.all().order_by("id")
        if tickers:
            query = query.filter(ticker__in=[t.strip().upper() for t in tickers if t.strip()])
        if limit:
            query = query.limit(limit)
        return [_to_target(company) for company in await query]

    # -------------------------------------------------------
    # Discovery
    # -------------------------------------------------------

    async def save_sitemaps(self, company_id: int, records: Iterable[SitemapFetchRecord]) -> None:
        async with in_transaction() as conn:
            for record in records:
                if len(record.url) > MAX_URL_LENGTH:
                    logger.warning(f"Skipping over-long sitemap url for company {company_id}: {record.url[:100]}...")
                    continue
                sitemap, created = await DiscoveredSitemap.get_or_create(
                    company_id=company_id,
                    url=record.url,
                    defaults={"fetched_at": record.fetched_at, "url_count": record.url_count},
                    using_db=conn,
                )
                if not created:
                    sitemap.fetched_at = record.fetched_at
                    sitemap.url_count = record.url_count
                    await sitemap.save(using_db=conn)

    async def save_discovered_urls(
        self,
        company_id: int,
        urls: Iterable[Tuple[str, DiscoveredUrlType, Optional[str]]],
    ) -> int:
        """Upsert ``(url, type, lastmod)`` rows; returns how many were new."""
        now = datetime.now(timezone.utc)
        created_count = 0
        async with in_transaction() as conn:
            for url, url_type, lastmod in urls:
                if len(url) > MAX_URL_LENGTH:
                    logger.warning(f"Skipping over-long url for company {company_id}: {url[:100]}...")
                    continue
                lastmod = lastmod[:MAX_LASTMOD_LENGTH] if lastmod else None
                row, created = await DiscoveredUrl.get_or_create(
                    company_id=company_id,
                    url=url,
                    defaults={"url_type": url_type.value, "lastmod": lastmod, "last_seen_at": now},
                    using_db=conn,
                )
                if created:
                    created_count += 1
                    continue
                row.url_type = url_type.value
                row.lastmod = lastmod or row.lastmod
                row.last_seen_at = now
                await row.save(using_db=conn)
        return created_count

    async def save_ats_endpoint(
        self,
        company_id: int,
        record: AtsDetectionRecord,
        source_url: Optional[str],
        detection_method: str,
    ) -> bool:
        """Upsert one endpoint; True when it was not known for this company."""
        if len(record.url) > MAX_URL_LENGTH:
            logger.warning(f"Skipping over-long {record.vendor.value} endpoint for company {company_id}")
            return False
        if source_url:
            source_url = source_url[:MAX_URL_LENGTH]
        now = datetime.now(timezone.utc)
        endpoint, created = await AtsEndpoint.get_or_create(
            company_id=company_id,
            vendor=record.vendor.value,
            endpoint_key=record.url.lower(),
            defaults={
                "endpoint_url": record.url,
                "detection_method": detection_method,
                "source_url": source_url,
                "last_seen_at": now,
            },
        )
        if created:
            logger.info(
                f"New ATS endpoint company_id={company_id} vendor={record.vendor.value} "
                f"url={record.url} method={detection_method}"
            )
            return True
        endpoint.last_seen_at = now
        await endpoint.save(update_fields=["last_seen_at"])
        return False

    # -------------------------------------------------------
    # Errors
    # -------------------------------------------------------

    async def log_error(
        self,
        company_id: Optional[int],
        reason_code: str,
        error_message: Optional[str],
        url: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        await CrawlErrorLog.create(
            company_id=company_id,
            url=url[:MAX_URL_LENGTH] if url else None,
            reason_code=reason_code,
            error_message=error_message,
            worker_id=worker_id[:64] if worker_id else None,
        )
