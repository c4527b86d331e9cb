import json
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web
from loguru import logger
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    generate_latest,
    Counter,
    Gauge,
    Histogram,
)

# -------------------------
# Worker-Level Metrics
# -------------------------

COMPANIES_PROCESSED = Counter(
    "jobcrawler_companies_processed_total",
    "Companies crawled successfully",
    ["worker_id"],
)

COMPANIES_FAILED = Counter(
    "jobcrawler_companies_failed_total",
    "Company crawls that ended in failure",
    ["worker_id", "reason"],
)

WORKER_ACTIVE = Gauge(
    "jobcrawler_worker_active",
    "Worker active state",
    ["worker_id"],
)

# -------------------------
# Fetcher Metrics
# -------------------------

REQUEST_COUNT = Counter(
    "jobcrawler_requests_total",
    "HTTP requests sent by the polite fetcher",
    ["method"],
)

FETCH_ERRORS = Counter(
    "jobcrawler_fetch_errors_total",
    "Fetch attempts that returned an error code",
    ["error_code"],
)

RATE_LIMITED_RESPONSES = Counter(
    "jobcrawler_rate_limited_responses_total",
    "403/429 responses that pushed a host's next slot back",
    ["status"],
)

HOST_COOLDOWN_SKIPS = Counter(
    "jobcrawler_host_cooldown_skips_total",
    "Requests short-circuited because the host is cooling down",
)

FETCH_RETRIES = Counter(
    "jobcrawler_fetch_retries_total",
    "Retries scheduled after transient failures",
)

REQUEST_LATENCY = Histogram(
    "jobcrawler_request_latency_seconds",
    "Time to complete one fetch attempt",
    ["method"],
)

# -------------------------
# Discovery Metrics
# -------------------------

ROBOTS_DECISIONS = Counter(
    "jobcrawler_robots_decisions_total",
    "robots.txt decisions by outcome",
    ["decision"],
)

SITEMAPS_FETCHED = Counter(
    "jobcrawler_sitemaps_fetched_total",
    "Sitemap documents fetched and parsed",
)

SITEMAP_ERRORS = Counter(
    "jobcrawler_sitemap_errors_total",
    "Sitemap traversal errors by key",
    ["error_key"],
)

ATS_ENDPOINTS_DETECTED = Counter(
    "jobcrawler_ats_endpoints_detected_total",
    "ATS endpoints fingerprinted",
    ["vendor"],
)

CANARY_ABORTS = Counter(
    "jobcrawler_canary_aborts_total",
    "Runs aborted by the canary budget",
    ["reason"],
)

# -------------------------
# Queue Metrics
# -------------------------

QUEUE_DUE = Gauge(
    "jobcrawler_queue_due",
    "Companies due for a crawl and not leased",
)

QUEUE_LOCKED = Gauge(
    "jobcrawler_queue_locked",
    "Companies currently leased by a worker",
)


StatusProvider = Callable[[], Awaitable[Dict[str, Any]]]


# -------------------------
# /metrics endpoint
# -------------------------

async def metrics_handler(request):
    data = generate_latest()

    # the content type must go out without the charset suffix
    ctype = CONTENT_TYPE_LATEST.split(";")[0]

    return web.Response(
        body=data,
        content_type=ctype
    )


# -------------------------
# /status endpoint
# -------------------------

async def status_handler(request):
    provider: Optional[StatusProvider] = request.app.get("status_provider")
    if provider is None:
        return web.json_response({"running": False})
    try:
        payload = await provider()
    except Exception as e:
        logger.error(f"Status provider failed: {e}")
        return web.json_response({"error": str(e)}, status=503)
    return web.json_response(payload, dumps=lambda obj: json.dumps(obj, default=str))


def build_app(status_provider: Optional[StatusProvider] = None) -> web.Application:
    app = web.Application()
    app["status_provider"] = status_provider
    app.router.add_get("/metrics", metrics_handler)
    app.router.add_get("/status", status_handler)
    return app


async def start_metrics_server(port=8000, status_provider: Optional[StatusProvider] = None):
    app = build_app(status_provider)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    logger.info(f"Metrics server listening on :{port} (/metrics, /status)")

    return runner, site
