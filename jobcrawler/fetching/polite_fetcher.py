import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx
from loguru import logger

from jobcrawler.fetching.canary import CanaryBudget, check_deadline
from jobcrawler.fetching.host_state import HostPolitenessState, HostStateArena
from jobcrawler.monitoring.metrics_server import (
    FETCH_ERRORS,
    FETCH_RETRIES,
    HOST_COOLDOWN_SKIPS,
    RATE_LIMITED_RESPONSES,
    REQUEST_COUNT,
    REQUEST_LATENCY,
)
from jobcrawler.utils import reason_codes
from jobcrawler.utils.config_loader import FetcherSettings
from jobcrawler.utils.url_utils import ensure_scheme, get_domain


HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
XML_ACCEPT = "application/xml,text/xml;q=0.9,*/*;q=0.1"
TEXT_ACCEPT = "text/plain,text/*;q=0.9,*/*;q=0.1"
JSON_ACCEPT = "application/json,*/*;q=0.5"

TIMEOUT = "timeout"
IO_ERROR = "io_error"
HOST_COOLDOWN = "host_cooldown"
BODY_TOO_LARGE = "body_too_large"
INVALID_URL = "invalid_url"

_NO_RETRY_ERRORS = {HOST_COOLDOWN, BODY_TOO_LARGE, INVALID_URL}


@dataclass
class FetchResult:
    requested_url: str
    status_code: int = 0
    body: bytes = b""
    final_url: Optional[str] = None
    content_type: Optional[str] = None
    content_encoding: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration: float = 0.0

    @property
    def is_successful(self) -> bool:
        return self.error_code is None and 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace") if self.body else ""

    @property
    def final_url_or_requested(self) -> str:
        return self.final_url or self.requested_url

    @property
    def error_key(self) -> str:
        """``timeout`` / ``http_404`` style key used in error tallies."""
        if self.error_code:
            return self.error_code
        return f"http_{self.status_code}"


class HostCooldownLedger(Protocol):
    async def next_allowed_at(self, host: str) -> Optional[datetime]: ...

    async def record_failure(self, host: str, error_category: str) -> Optional[datetime]: ...

    async def record_success(self, host: str) -> None: ...


def _error(url: str, code: str, message: str, started: float) -> FetchResult:
    return FetchResult(
        requested_url=url,
        error_code=code,
        error_message=message,
        duration=time.perf_counter() - started,
    )


def _parse_content_length(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("Content-Length")
    if not value:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


class PoliteFetcher:
    """The single HTTP entry point of the crawler.

    Every request goes through three gates: a global semaphore bounding
    in-flight requests, a per-host semaphore, and a per-host pacing lock that
    spaces request starts by ``per_host_delay``. Hosts the cooldown ledger
    reports as cooling down are short-circuited with ``host_cooldown`` and no
    request is sent.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Optional[FetcherSettings] = None,
        host_state: Optional[HostCooldownLedger] = None,
        hosts: Optional[HostStateArena] = None,
    ):
        self.client = client
        self.settings = settings or FetcherSettings()
        self.host_state = host_state
        self.hosts = hosts or HostStateArena(self.settings.per_host_concurrency, self.settings.max_tracked_hosts)
        self._global_limiter = asyncio.Semaphore(max(1, self.settings.global_concurrency))

        self.per_host_delay = self.settings.per_host_delay_ms / 1000
        self.retry_base_delay = self.settings.retry_base_delay_ms / 1000
        self.retry_max_delay = self.settings.retry_max_delay_ms / 1000

    @classmethod
    def create_client(cls, settings: FetcherSettings) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=settings.request_timeout_seconds),
            follow_redirects=True,
            max_redirects=settings.max_redirects,
            headers={"User-Agent": settings.user_agent},
        )

    # --------------------------
    #  Public API
    # --------------------------
    async def get(
        self,
        url: str,
        accept: Optional[str] = None,
        *,
        max_bytes: Optional[int] = None,
        budget: Optional[CanaryBudget] = None,
        decode_content: bool = True,
    ) -> FetchResult:
        return await self.fetch(
            url,
            accept=accept,
            max_bytes=max_bytes,
            budget=budget,
            decode_content=decode_content,
        )

    async def post_json(
        self,
        url: str,
        json_body: str,
        accept: Optional[str] = JSON_ACCEPT,
        *,
        budget: Optional[CanaryBudget] = None,
    ) -> FetchResult:
        return await self.fetch(
            url,
            method="POST",
            accept=accept,
            body=json_body or "",
            content_type="application/json",
            budget=budget,
        )

    async def post_form(
        self,
        url: str,
        form_body: str,
        accept: Optional[str] = None,
        *,
        budget: Optional[CanaryBudget] = None,
    ) -> FetchResult:
        return await self.fetch(
            url,
            method="POST",
            accept=accept,
            body=form_body or "",
            content_type="application/x-www-form-urlencoded",
            budget=budget,
        )

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        accept: Optional[str] = None,
        body: Optional[str] = None,
        content_type: Optional[str] = None,
        max_bytes: Optional[int] = None,
        budget: Optional[CanaryBudget] = None,
        decode_content: bool = True,
    ) -> FetchResult:
        max_attempts = max(1, 1 + self.settings.request_max_retries)
        if budget is not None:
            max_attempts = budget.max_attempts_per_request

        result: Optional[FetchResult] = None
        for attempt in range(1, max_attempts + 1):
            result = await self._execute_once(
                url,
                method=method,
                accept=accept,
                body=body,
                content_type=content_type,
                max_bytes=max_bytes,
                budget=budget,
                decode_content=decode_content,
            )
            if not self._should_retry(result):
                return result
            if attempt >= max_attempts:
                break
            FETCH_RETRIES.inc()
            await self._sleep_backoff(attempt, budget)

        assert result is not None
        await self._record_exhausted(result)
        return result

    # --------------------------
    #  One attempt
    # --------------------------
    async def _execute_once(
        self,
        url: str,
        *,
        method: str,
        accept: Optional[str],
        body: Optional[str],
        content_type: Optional[str],
        max_bytes: Optional[int],
        budget: Optional[CanaryBudget],
        decode_content: bool,
    ) -> FetchResult:
        started = time.perf_counter()
        target = ensure_scheme(url)
        host = get_domain(target) if target else ""
        if not target or not host:
            FETCH_ERRORS.labels(error_code=INVALID_URL).inc()
            return _error(url or "", INVALID_URL, "URL missing host or malformed", started)

        cooldown_until = await self._cooldown_until(host)
        if cooldown_until is not None:
            HOST_COOLDOWN_SKIPS.inc()
            logger.debug(f"Skipping {url}: host {host} cooling down until {cooldown_until.isoformat()}")
            return _error(url, HOST_COOLDOWN, f"cooldown_until={cooldown_until.isoformat()}", started)

        if budget is not None:
            budget.before_request(host)

        state = self.hosts.get(host)
        state.in_use += 1
        try:
            async with self._global_limiter:
                async with state.in_flight:
                    await self._wait_for_slot(state, budget)
                    result = await self._send(
                        url,
                        target,
                        state,
                        method=method,
                        accept=accept,
                        body=body,
                        content_type=content_type,
                        max_bytes=max_bytes,
                        budget=budget,
                        decode_content=decode_content,
                        started=started,
                    )

            if result.error_code:
                FETCH_ERRORS.labels(error_code=result.error_code).inc()
            if budget is not None:
                budget.record_result(result)
            await self._record_host_outcome(host, state, result)
        finally:
            state.in_use -= 1
        return result

    async def _wait_for_slot(self, state: HostPolitenessState, budget: Optional[CanaryBudget]) -> None:
        async with state.lock:
            while True:
                wait = state.next_allowed_at - time.monotonic()
                if wait <= 0:
                    break
                if budget is not None:
                    budget.check_deadline()
                    remaining = budget.seconds_remaining()
                    if remaining is not None:
                        # wake up at the deadline so the abort is not delayed by a long pacing wait
                        wait = min(wait, remaining + 0.001)
                await asyncio.sleep(wait)
            check_deadline(budget)
            state.next_allowed_at = time.monotonic() + self.per_host_delay

    async def _send(
        self,
        url: str,
        target: str,
        state: HostPolitenessState,
        *,
        method: str,
        accept: Optional[str],
        body: Optional[str],
        content_type: Optional[str],
        max_bytes: Optional[int],
        budget: Optional[CanaryBudget],
        decode_content: bool,
        started: float,
    ) -> FetchResult:
        headers = {
            "User-Agent": self.settings.user_agent,
            "Accept": accept or "*/*",
            "Accept-Language": "en-US,en;q=0.8",
        }
        if not decode_content:
            headers["Accept-Encoding"] = "identity"
        if method.upper() == "POST":
            headers["Content-Type"] = content_type or "application/json"

        timeout = budget.request_timeout if budget is not None else self.settings.request_timeout_seconds

        REQUEST_COUNT.labels(method=method.upper()).inc()
        try:
            request = self.client.build_request(
                method.upper(),
                target,
                headers=headers,
                content=body.encode("utf-8") if body is not None else None,
                timeout=timeout,
            )
            response = await self.client.send(request, stream=True)
            try:
                result = await self._read_response(url, response, state, max_bytes, decode_content)
            finally:
                await response.aclose()
        except httpx.TimeoutException as e:
            result = _error(url, TIMEOUT, str(e) or type(e).__name__, started)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            result = _error(url, INVALID_URL, str(e), started)
        except httpx.HTTPError as e:
            result = _error(url, IO_ERROR, str(e) or type(e).__name__, started)

        result.duration = time.perf_counter() - started
        REQUEST_LATENCY.labels(method=method.upper()).observe(result.duration)
        return result

    async def _read_response(
        self,
        url: str,
        response: httpx.Response,
        state: HostPolitenessState,
        max_bytes: Optional[int],
        decode_content: bool,
    ) -> FetchResult:
        if response.status_code in (403, 429):
            RATE_LIMITED_RESPONSES.labels(status=str(response.status_code)).inc()
            state.push_back(time.monotonic() + self.settings.rate_limit_backoff_seconds)
            logger.info(
                f"{response.status_code} from {state.host}; next request not before "
                f"+{self.settings.rate_limit_backoff_seconds:.0f}s"
            )

        result = FetchResult(
            requested_url=url,
            status_code=response.status_code,
            final_url=str(response.url),
            content_type=response.headers.get("Content-Type"),
            content_encoding=response.headers.get("Content-Encoding"),
        )

        content_length = _parse_content_length(response)
        if max_bytes and content_length is not None and content_length > max_bytes:
            # close without reading the body
            result.error_code = BODY_TOO_LARGE
            result.error_message = f"max_bytes={max_bytes} content_length={content_length}"
            return result

        chunks = response.aiter_bytes() if decode_content else response.aiter_raw()
        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk)
            if max_bytes and len(buffer) > max_bytes:
                result.error_code = BODY_TOO_LARGE
                result.error_message = f"max_bytes={max_bytes} bytes_read={len(buffer)}"
                return result

        result.body = bytes(buffer)
        return result

    # --------------------------
    #  Retry policy
    # --------------------------
    @staticmethod
    def _should_retry(result: FetchResult) -> bool:
        if result.error_code:
            return result.error_code not in _NO_RETRY_ERRORS
        # 429 and 403 are not retried; the host's pacing window was pushed back instead
        return result.status_code == 408 or result.status_code >= 500

    def backoff_delay(self, attempt: int) -> float:
        """Jittered exponential delay in seconds, within ``[d/2, d)`` of the capped step."""
        delay = min(self.retry_max_delay, self.retry_base_delay * (2 ** max(0, attempt - 1)))
        if delay <= 0:
            return 0.0
        half = delay / 2
        return half + random.uniform(0, half)

    async def _sleep_backoff(self, attempt: int, budget: Optional[CanaryBudget]) -> None:
        delay = self.backoff_delay(attempt)
        if budget is not None:
            budget.check_deadline()
            remaining = budget.seconds_remaining()
            if remaining is not None:
                delay = min(delay, remaining + 0.001)
        await asyncio.sleep(delay)
        check_deadline(budget)

    # --------------------------
    #  Host bookkeeping
    # --------------------------
    @staticmethod
    def _cooldown_category(result: FetchResult) -> Optional[str]:
        if result.error_code:
            if TIMEOUT in result.error_code:
                return reason_codes.TIMEOUT
            return None
        if result.status_code == 429:
            return reason_codes.HTTP_429_RATE_LIMIT
        if result.status_code == 408:
            return reason_codes.TIMEOUT
        return None

    async def _cooldown_until(self, host: str) -> Optional[datetime]:
        if self.host_state is None:
            return None
        try:
            return await self.host_state.next_allowed_at(host)
        except Exception as e:
            logger.warning(f"Host cooldown lookup failed for {host}, sending anyway: {e}")
            return None

    async def _ledger_success(self, host: str) -> None:
        if self.host_state is None:
            return
        try:
            await self.host_state.record_success(host)
        except Exception as e:
            logger.warning(f"Failed to clear cooldown for {host}: {e}")

    async def _ledger_failure(self, host: str, category: str) -> None:
        if self.host_state is None:
            return
        try:
            await self.host_state.record_failure(host, category)
        except Exception as e:
            logger.warning(f"Failed to record {category} for {host}: {e}")

    async def _record_host_outcome(self, host: str, state: HostPolitenessState, result: FetchResult) -> None:
        if result.is_successful:
            state.record_success()
            await self._ledger_success(host)
            return
        category = self._cooldown_category(result)
        if category is None:
            return
        state.record_failure(category)
        await self._ledger_failure(host, category)

    async def _record_exhausted(self, result: FetchResult) -> None:
        """Retries ran out on a 5xx or transport error: let the ledger cool the host down."""
        host = get_domain(ensure_scheme(result.requested_url) or "")
        if not host:
            return
        if result.error_code == IO_ERROR:
            category = reason_codes.from_error_code(result.error_code, result.error_message)
        elif result.error_code is None and result.status_code >= 500:
            category = reason_codes.HTTP_5XX
        else:
            return
        self.hosts.get(host).record_failure(category)
        await self._ledger_failure(host, category)
