import argparse
import asyncio
import json
import os
import signal
import socket
import sys
from dataclasses import dataclass
from typing import List, Optional

from loguru import logger
from tortoise import Tortoise

# -------------------------------
# INTERNAL IMPORTS
# -------------------------------
from jobcrawler.fetching.host_state import HostCrawlStateService, HostStateArena
from jobcrawler.fetching.polite_fetcher import PoliteFetcher
from jobcrawler.monitoring.metrics_server import start_metrics_server
from jobcrawler.orchestrator import STATUS_ABORTED, CrawlOrchestrator, build_canary_budget
from jobcrawler.pipeline import CompanyCrawler
from jobcrawler.scheduler import QueueScheduler
from jobcrawler.storage.crawl_queue_manager import CrawlQueueManager
from jobcrawler.storage.crawl_repository import CrawlRepository
from jobcrawler.storage.mongo.mongo_storage_manager import MongoStorageManager
from jobcrawler.storage.postgres.postgres_init import init_postgres
from jobcrawler.utils.config_loader import Config, describe_config, load_config
from jobcrawler.utils.logger import setup_logger
from jobcrawler.utils.robots import RobotsHandler
from jobcrawler.worker import CrawlWorker


@dataclass
class Runtime:
    fetcher: PoliteFetcher
    robots: RobotsHandler
    repository: CrawlRepository
    crawler: CompanyCrawler
    mongo: Optional[MongoStorageManager]

    async def close(self) -> None:
        await self.fetcher.client.aclose()
        if self.mongo is not None:
            await self.mongo.close()


async def connect_mongo(config: Config) -> Optional[MongoStorageManager]:
    mongo = MongoStorageManager(
        config.mongo_url,
        db_name=config.mongo_db,
        max_html_bytes=config.pipeline.max_saved_html_bytes,
    )
    try:
        await mongo.connect()
    except Exception as e:
        logger.error(f"MongoDB unavailable, page snapshots disabled: {e}")
        await mongo.close()
        return None
    return mongo


async def build_runtime(config: Config) -> Runtime:
    """Wire one fetcher, robots cache and pipeline shared by every worker of this process."""
    await init_postgres(config.postgres_url)
    mongo = await connect_mongo(config)

    client = PoliteFetcher.create_client(config.fetcher)
    fetcher = PoliteFetcher(
        client,
        config.fetcher,
        host_state=HostCrawlStateService(),
        hosts=HostStateArena(config.fetcher.per_host_concurrency, config.fetcher.max_tracked_hosts),
    )
    robots = RobotsHandler(fetcher, config.robots)
    repository = CrawlRepository()
    crawler = CompanyCrawler(
        fetcher,
        robots,
        repository,
        sitemap_settings=config.sitemap,
        pipeline_settings=config.pipeline,
        snapshots=mongo,
    )
    return Runtime(fetcher, robots, repository, crawler, mongo)


# -------------------------------
# DAEMON
# -------------------------------
async def run_daemon(config: Config) -> int:
    logger.info("Starting crawl daemon...")
    daemon = config.daemon

    runtime = await build_runtime(config)
    queue = CrawlQueueManager(config.postgres_url)
    await queue.connect(max_size=max(10, daemon.worker_count + 2))
    await queue.bootstrap_queue()

    stop_event = asyncio.Event()
    instance_id = f"{socket.gethostname()}-{os.getpid()}"
    workers = [
        CrawlWorker(queue, runtime.repository, runtime.crawler, i, daemon, stop_event, f"{instance_id}-w{i}")
        for i in range(1, daemon.worker_count + 1)
    ]
    worker_tasks = [asyncio.create_task(worker.run()) for worker in workers]
    scheduler = QueueScheduler(queue, daemon.bootstrap_interval_seconds, stop_event)
    scheduler_task = asyncio.create_task(scheduler.run())

    async def status_provider() -> dict:
        stats = await queue.fetch_queue_stats()
        return {
            "running": not stop_event.is_set(),
            "worker_count": sum(1 for task in worker_tasks if not task.done()),
            "queue": stats.as_dict(),
        }

    metrics_runner, _ = await start_metrics_server(port=daemon.metrics_port, status_provider=status_provider)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info(f"Crawl daemon started with {daemon.worker_count} workers.")

    try:
        await stop_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        stop_event.set()
        logger.info(f"Stopping; waiting up to {daemon.shutdown_grace_seconds}s for in-flight companies")
        _, pending = await asyncio.wait(
            worker_tasks + [scheduler_task],
            timeout=daemon.shutdown_grace_seconds,
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*worker_tasks, scheduler_task, return_exceptions=True)

        await metrics_runner.shutdown()
        await metrics_runner.cleanup()
        await queue.close()
        await runtime.close()
        await Tortoise.close_connections()

    return 0


# -------------------------------
# ONE-SHOT COMMANDS
# -------------------------------
async def run_bootstrap(config: Config) -> int:
    queue = CrawlQueueManager(config.postgres_url)
    await init_postgres(config.postgres_url)
    await queue.connect()
    try:
        added = await queue.bootstrap_queue()
        print(json.dumps({"queued": added}))
    finally:
        await queue.close()
        await Tortoise.close_connections()
    return 0


async def run_status(config: Config) -> int:
    queue = CrawlQueueManager(config.postgres_url)
    await queue.connect()
    try:
        stats = await queue.fetch_queue_stats()
        print(json.dumps({"queue": stats.as_dict(), "config": describe_config(config)}, indent=2, default=str))
    finally:
        await queue.close()
    return 0


async def run_canary(config: Config, limit: Optional[int], tickers: Optional[List[str]]) -> int:
    runtime = await build_runtime(config)
    try:
        targets = await runtime.repository.load_targets(
            limit=limit or config.canary.company_limit,
            tickers=tickers,
        )
        budget = build_canary_budget(config.canary)
        orchestrator = CrawlOrchestrator(runtime.crawler, config.pipeline.run_concurrency)
        summary = await orchestrator.run(targets, budget=budget)
        print(json.dumps(summary.as_dict(), indent=2, default=str))
    finally:
        await runtime.close()
        await Tortoise.close_connections()
    return 2 if summary.status == STATUS_ABORTED else 0


# -------------------------------
# ENTRYPOINT
# -------------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jobcrawler", description="Polite job-discovery crawler")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("daemon", help="run the queue-driven crawl workers")
    sub.add_parser("bootstrap", help="queue every known company once")
    sub.add_parser("status", help="print queue statistics")

    canary = sub.add_parser("canary", help="bounded diagnostic crawl under a request budget")
    canary.add_argument("--limit", type=int, default=None, help="number of companies to crawl")
    canary.add_argument("--tickers", nargs="*", default=None, help="restrict to these tickers")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config()
    setup_logger(config.log_level, config.log_path, worker_id=args.command)

    if args.command == "daemon":
        try:
            import uvloop
            uvloop.install()
        except ImportError:
            logger.warning("uvloop not available, using default asyncio loop.")
        return asyncio.run(run_daemon(config))
    if args.command == "bootstrap":
        return asyncio.run(run_bootstrap(config))
    if args.command == "status":
        return asyncio.run(run_status(config))
    return asyncio.run(run_canary(config, args.limit, args.tickers))


if __name__ == "__main__":
    sys.exit(main())
