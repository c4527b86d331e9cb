import gzip
import time
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from jobcrawler.fetching.canary import CanaryBudget
from jobcrawler.fetching.polite_fetcher import (
    BODY_TOO_LARGE,
    HOST_COOLDOWN,
    INVALID_URL,
    JSON_ACCEPT,
    TIMEOUT,
    FetchResult,
    PoliteFetcher,
)
from jobcrawler.utils.config_loader import FetcherSettings
from jobcrawler.utils import reason_codes


class FakeLedger:
    def __init__(self, cooldown_until=None):
        self.cooldown_until = cooldown_until
        self.failures = []
        self.successes = []

    async def next_allowed_at(self, host):
        return self.cooldown_until

    async def record_failure(self, host, error_category):
        self.failures.append((host, error_category))
        return None

    async def record_success(self, host):
        self.successes.append(host)


class BrokenLedger:
    """A ledger whose database is gone."""

    async def next_allowed_at(self, host):
        raise RuntimeError("db down")

    async def record_failure(self, host, error_category):
        raise RuntimeError("db down")

    async def record_success(self, host):
        raise RuntimeError("db down")


def make_fetcher(handler, ledger=None, **overrides):
    settings = FetcherSettings(
        per_host_delay_ms=overrides.pop("per_host_delay_ms", 0),
        retry_base_delay_ms=1,
        retry_max_delay_ms=2,
        **overrides,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
    return PoliteFetcher(client, settings, host_state=ledger)


@pytest.mark.anyio
async def test_successful_get_sends_identity_headers():
    seen = {}

    def handler(request):
        seen["ua"] = request.headers["User-Agent"]
        seen["accept"] = request.headers["Accept"]
        return httpx.Response(200, text="hello", headers={"Content-Type": "text/plain"})

    ledger = FakeLedger()
    fetcher = make_fetcher(handler, ledger, user_agent="TestBot/1.0")

    result = await fetcher.get("https://example.com/careers", "text/html")

    assert result.is_successful
    assert result.text == "hello"
    assert result.final_url == "https://example.com/careers"
    assert result.content_type == "text/plain"
    assert seen == {"ua": "TestBot/1.0", "accept": "text/html"}
    assert ledger.successes == ["example.com"]


@pytest.mark.anyio
async def test_requests_to_one_host_are_spaced():
    starts = []

    def handler(request):
        starts.append(time.monotonic())
        return httpx.Response(200, text="ok")

    fetcher = make_fetcher(handler, per_host_delay_ms=200)

    await fetcher.get("https://example.com/a")
    await fetcher.get("https://example.com/b")

    assert len(starts) == 2
    assert starts[1] - starts[0] >= 0.19


@pytest.mark.anyio
async def test_cooling_host_is_short_circuited():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    ledger = FakeLedger(cooldown_until=datetime.now(timezone.utc) + timedelta(minutes=5))
    fetcher = make_fetcher(handler, ledger)

    result = await fetcher.get("https://example.com/jobs")

    assert result.error_code == HOST_COOLDOWN
    assert calls == []


@pytest.mark.anyio
async def test_invalid_urls_never_reach_the_network():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    fetcher = make_fetcher(handler)

    assert (await fetcher.get("")).error_code == INVALID_URL
    assert (await fetcher.get("http://")).error_code == INVALID_URL
    assert calls == []


@pytest.mark.anyio
async def test_server_errors_are_retried_then_cool_the_host():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    ledger = FakeLedger()
    fetcher = make_fetcher(handler, ledger, request_max_retries=2)

    result = await fetcher.get("https://example.com/jobs")

    assert result.status_code == 503
    assert not result.is_successful
    assert result.error_key == "http_503"
    assert len(calls) == 3
    assert ledger.failures == [("example.com", reason_codes.HTTP_5XX)]


@pytest.mark.anyio
async def test_retry_recovers_after_timeout():
    attempts = {"count": 0}

    def handler(request):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, text="ok")

    ledger = FakeLedger()
    fetcher = make_fetcher(handler, ledger)

    result = await fetcher.get("https://example.com/jobs")

    assert result.is_successful
    assert attempts["count"] == 2
    assert ledger.failures == [("example.com", reason_codes.TIMEOUT)]


@pytest.mark.anyio
async def test_rate_limit_pushes_host_back_without_retry():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(429)

    ledger = FakeLedger()
    fetcher = make_fetcher(handler, ledger, rate_limit_backoff_seconds=30)

    result = await fetcher.get("https://example.com/jobs")

    assert result.status_code == 429
    assert len(calls) == 1
    assert fetcher.hosts.seconds_until_allowed("example.com") > 25
    assert ledger.failures == [("example.com", reason_codes.HTTP_429_RATE_LIMIT)]


@pytest.mark.anyio
async def test_budget_limits_attempts_and_counts_requests():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    fetcher = make_fetcher(handler, request_max_retries=3)
    budget = CanaryBudget(max_attempts_per_request=1, max_consecutive_errors=0, max_429_rate=0)

    result = await fetcher.get("https://example.com/jobs", budget=budget)

    assert result.status_code == 500
    assert len(calls) == 1
    assert budget.total_requests == 1
    assert budget.requests_for_host("example.com") == 1


@pytest.mark.anyio
async def test_declared_length_over_limit_is_rejected_unread():
    def handler(request):
        return httpx.Response(
            200,
            headers={"Content-Length": "5000"},
            stream=httpx.ByteStream(b"x" * 5000),
        )

    fetcher = make_fetcher(handler)

    result = await fetcher.get("https://example.com/big", max_bytes=100)

    assert result.error_code == BODY_TOO_LARGE
    assert result.body == b""
    assert "content_length=5000" in result.error_message


@pytest.mark.anyio
async def test_streamed_body_over_limit_is_cut_off():
    def handler(request):
        return httpx.Response(200, stream=httpx.ByteStream(b"y" * 5000))

    fetcher = make_fetcher(handler)

    result = await fetcher.get("https://example.com/big", max_bytes=100)

    assert result.error_code == BODY_TOO_LARGE
    assert "bytes_read=" in result.error_message


@pytest.mark.anyio
async def test_raw_fetch_keeps_compressed_bytes():
    payload = gzip.compress(b"<urlset></urlset>")
    seen = {}

    def handler(request):
        seen["accept_encoding"] = request.headers.get("Accept-Encoding")
        return httpx.Response(
            200,
            headers={"Content-Encoding": "gzip"},
            stream=httpx.ByteStream(payload),
        )

    fetcher = make_fetcher(handler)

    result = await fetcher.get("https://example.com/sitemap.xml", decode_content=False)

    assert seen["accept_encoding"] == "identity"
    assert result.body == payload
    assert result.content_encoding == "gzip"


def test_fetch_result_error_key_and_fallback_url():
    assert FetchResult("https://a.example.com", error_code=TIMEOUT).error_key == TIMEOUT
    assert FetchResult("https://a.example.com", status_code=404).error_key == "http_404"
    assert FetchResult("https://a.example.com").final_url_or_requested == "https://a.example.com"


def test_backoff_delay_stays_within_capped_window():
    fetcher = PoliteFetcher(
        httpx.AsyncClient(),
        FetcherSettings(retry_base_delay_ms=100, retry_max_delay_ms=300),
    )

    for attempt, cap in ((1, 0.1), (2, 0.2), (3, 0.3), (6, 0.3)):
        delay = fetcher.backoff_delay(attempt)
        assert cap / 2 <= delay <= cap


@pytest.mark.anyio
async def test_ledger_outage_still_returns_classified_results():
    statuses = iter([429, 200])

    def handler(request):
        return httpx.Response(next(statuses), text="ok")

    fetcher = make_fetcher(handler, BrokenLedger())

    limited = await fetcher.get("https://example.com/jobs")
    assert limited.status_code == 429
    assert limited.error_key == "http_429"

    fetcher.hosts.get("example.com").next_allowed_at = 0.0
    recovered = await fetcher.get("https://example.com/jobs")
    assert recovered.is_successful


@pytest.mark.anyio
async def test_ledger_outage_after_exhausted_retries():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = make_fetcher(handler, BrokenLedger(), request_max_retries=1)

    result = await fetcher.get("https://example.com/jobs")

    assert result.error_code == "io_error"
    assert fetcher.hosts.get("example.com").consecutive_failures == 1


@pytest.mark.anyio
async def test_post_json_sends_body_and_is_budgeted():
    seen = []

    def handler(request):
        seen.append((request.method, request.headers["Content-Type"], request.headers["Accept"], request.content))
        if len(seen) == 1:
            return httpx.Response(503)
        return httpx.Response(200, text='{"total": 3}')

    fetcher = make_fetcher(handler, request_max_retries=2)
    budget = CanaryBudget(max_attempts_per_request=2, max_consecutive_errors=0, max_429_rate=0)

    result = await fetcher.post_json(
        "https://acme.wd5.myworkdayjobs.com/wday/cxs/acme/External/jobs",
        '{"limit": 20, "offset": 0}',
        budget=budget,
    )

    assert result.is_successful
    assert result.text == '{"total": 3}'
    assert seen[0] == ("POST", "application/json", JSON_ACCEPT, b'{"limit": 20, "offset": 0}')
    assert len(seen) == 2
    assert budget.total_requests == 2
    assert budget.requests_for_host("acme.wd5.myworkdayjobs.com") == 2


@pytest.mark.anyio
async def test_post_form_is_paced_like_any_request():
    starts = []

    def handler(request):
        starts.append((time.monotonic(), request.headers["Content-Type"], request.content))
        return httpx.Response(200, text="ok")

    fetcher = make_fetcher(handler, per_host_delay_ms=150)

    await fetcher.post_form("https://example.com/search", "q=engineer")
    await fetcher.post_form("https://example.com/search", "")

    assert starts[0][1:] == ("application/x-www-form-urlencoded", b"q=engineer")
    assert starts[1][2] == b""
    assert starts[1][0] - starts[0][0] >= 0.14
