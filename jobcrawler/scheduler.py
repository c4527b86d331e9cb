import asyncio
from typing import Optional

from loguru import logger

from jobcrawler.storage.crawl_queue_manager import CrawlQueueManager


class QueueScheduler:
    """Re-run the idempotent queue bootstrap so newly ingested companies get crawled."""

    def __init__(
        self,
        queue: CrawlQueueManager,
        interval_seconds: int = 300,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.stop_event = stop_event or asyncio.Event()

    async def tick(self) -> int:
        try:
            added = await self.queue.bootstrap_queue()
            await self.queue.fetch_queue_stats()
        except Exception as e:
            logger.error(f"Queue scheduler tick failed: {e}")
            return 0
        if added:
            logger.info(f"Queued {added} new companies")
        return added

    async def run(self) -> None:
        logger.info("Queue scheduler started...")
        while not self.stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
