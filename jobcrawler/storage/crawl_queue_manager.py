from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import asyncpg
from loguru import logger

from jobcrawler.monitoring.metrics_server import QUEUE_DUE, QUEUE_LOCKED
from jobcrawler.utils.db_utils import database_url_from_env, to_postgres_dsn
from jobcrawler.utils.env_loader import load_environment


MAX_LAST_ERROR_LENGTH = 500


@dataclass
class CrawlQueueErrorSample:
    company_id: int
    last_error: Optional[str]
    last_finished_at: Optional[datetime]
    consecutive_failures: int


@dataclass
class CrawlQueueStats:
    due_count: int = 0
    locked_count: int = 0
    next_due_at: Optional[datetime] = None
    recent_errors: List[CrawlQueueErrorSample] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "due_count": self.due_count,
            "locked_count": self.locked_count,
            "next_due_at": self.next_due_at.isoformat() if self.next_due_at else None,
            "recent_errors": [
                {
                    "company_id": sample.company_id,
                    "last_error": sample.last_error,
                    "last_finished_at": sample.last_finished_at.isoformat() if sample.last_finished_at else None,
                    "consecutive_failures": sample.consecutive_failures,
                }
                for sample in self.recent_errors
            ],
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _affected_rows(status: Optional[str]) -> int:
    """Row count from an asyncpg command tag such as ``INSERT 0 3``."""
    if not status:
        return 0
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


class CrawlQueueManager:
    """Lease-based "company due for crawl" queue on the ``crawl_queue`` table."""

    def __init__(self, database_url: Optional[str] = None) -> None:
        load_environment()
        self.database_url = to_postgres_dsn(database_url or database_url_from_env())
        self.pool: Optional[asyncpg.Pool] = None

    # -------------------------------------------------------
    # Connection
    # -------------------------------------------------------

    async def connect(self, *, min_size: int = 1, max_size: int = 10) -> None:
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(self.database_url, min_size=min_size, max_size=max_size)
            logger.info("Connected to crawl queue database")
        except Exception:
            logger.exception("Failed to connect to crawl queue database")
            if self.pool:
                await self.pool.close()
            self.pool = None

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    # -------------------------------------------------------
    # Leases
    # -------------------------------------------------------

    async def claim_next_company(self, lock_owner: Optional[str], lock_ttl_seconds: int) -> Optional[int]:
        """Lease the most overdue company; ``None`` when nothing is due."""
        if not self.pool:
            return None

        now = _utcnow()
        locked_until = now + timedelta(seconds=max(1, lock_ttl_seconds))
        owner = (lock_owner or "").strip() or "unknown"

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                WITH candidate AS (
                    SELECT company_id
                    FROM crawl_queue
                    WHERE next_run_at <= $1
                      AND (locked_until IS NULL OR locked_until < $1)
                    ORDER BY next_run_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE crawl_queue AS cq
                SET locked_until = $2,
                    lock_owner = $3,
                    lock_count = cq.lock_count + 1,
                    last_started_at = $1,
                    updated_at = $1
                FROM candidate
                WHERE cq.company_id = candidate.company_id
                RETURNING cq.company_id;
                """,
                now,
                locked_until,
                owner,
            )

        if not row:
            return None
        return row["company_id"]

    async def mark_success(self, company_id: int, next_run_at: datetime) -> None:
        if not self.pool:
            return
        now = _utcnow()
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE crawl_queue
                SET next_run_at = $1,
                    locked_until = NULL,
                    lock_owner = NULL,
                    last_finished_at = $2,
                    last_success_at = $2,
                    last_error = NULL,
                    consecutive_failures = 0,
                    total_runs = total_runs + 1,
                    total_successes = total_successes + 1,
                    updated_at = $2
                WHERE company_id = $3
                """,
                next_run_at,
                now,
                company_id,
            )

    async def mark_failure(self, company_id: int, next_run_at: datetime, error: Optional[str]) -> None:
        if not self.pool:
            return
        now = _utcnow()
        last_error = error[:MAX_LAST_ERROR_LENGTH] if error else None
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE crawl_queue
                SET next_run_at = $1,
                    locked_until = NULL,
                    lock_owner = NULL,
                    last_finished_at = $2,
                    last_error = $3,
                    consecutive_failures = consecutive_failures + 1,
                    total_runs = total_runs + 1,
                    total_failures = total_failures + 1,
                    updated_at = $2
                WHERE company_id = $4
                """,
                next_run_at,
                now,
                last_error,
                company_id,
            )

    async def release_lock(self, company_id: int) -> None:
        if not self.pool:
            return
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE crawl_queue
                SET locked_until = NULL,
                    lock_owner = NULL,
                    updated_at = $1
                WHERE company_id = $2
                """,
                _utcnow(),
                company_id,
            )

    async def get_consecutive_failures(self, company_id: int) -> int:
        if not self.pool:
            return 0
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT consecutive_failures FROM crawl_queue WHERE company_id = $1",
                company_id,
            )
        return value or 0

    # -------------------------------------------------------
    # Bootstrap / stats
    # -------------------------------------------------------

    async def bootstrap_queue(self) -> int:
        """Insert a due entry for every company not yet queued; returns the number added."""
        if not self.pool:
            return 0
        now = _utcnow()
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                """
                INSERT INTO crawl_queue (company_id, next_run_at, updated_at)
                SELECT id, $1, $1
                FROM companies
                ON CONFLICT (company_id) DO NOTHING
                """,
                now,
            )
        inserted = _affected_rows(status)
        if inserted:
            logger.info(f"Queue bootstrap added {inserted} companies")
        return inserted

    async def fetch_queue_stats(self, error_sample_limit: int = 10) -> CrawlQueueStats:
        if not self.pool:
            return CrawlQueueStats()
        now = _utcnow()
        async with self.pool.acquire() as conn:
            due_count = await conn.fetchval(
                """
                SELECT COUNT(*) FROM crawl_queue
                WHERE next_run_at <= $1
                  AND (locked_until IS NULL OR locked_until < $1)
                """,
                now,
            )
            locked_count = await conn.fetchval(
                "SELECT COUNT(*) FROM crawl_queue WHERE locked_until IS NOT NULL AND locked_until > $1",
                now,
            )
            next_due_at = await conn.fetchval("SELECT MIN(next_run_at) FROM crawl_queue")
            rows = await conn.fetch(
                """
                SELECT company_id, last_error, last_finished_at, consecutive_failures
                FROM crawl_queue
                WHERE last_error IS NOT NULL
                ORDER BY last_finished_at DESC
                LIMIT $1
                """,
                error_sample_limit,
            )

        stats = CrawlQueueStats(
            due_count=due_count or 0,
            locked_count=locked_count or 0,
            next_due_at=next_due_at,
            recent_errors=[
                CrawlQueueErrorSample(
                    company_id=row["company_id"],
                    last_error=row["last_error"],
                    last_finished_at=row["last_finished_at"],
                    consecutive_failures=row["consecutive_failures"] or 0,
                )
                for row in rows
            ],
        )
        QUEUE_DUE.set(stats.due_count)
        QUEUE_LOCKED.set(stats.locked_count)
        return stats
