"""Reason codes for crawl failures.

Fetch results and pipeline steps report lowercase error keys
(``timeout``, ``http_404``, ``sitemap_blocked_by_robots`` ...). This module
maps those keys onto a small closed set of uppercase reason codes used in the
queue's ``last_error`` column, in metrics labels and in run summaries, and onto
the coarse error categories that decide how a failure is handled.
"""

from __future__ import annotations

from typing import Optional

NO_DOMAIN = "NO_DOMAIN"
ROBOTS_BLOCKED = "ROBOTS_BLOCKED"
SITEMAP_NOT_FOUND = "SITEMAP_NOT_FOUND"
TIMEOUT = "TIMEOUT"
DNS_FAILURE = "DNS_FAILURE"
TLS_FAILURE = "TLS_FAILURE"
HTTP_401_403 = "HTTP_401_403"
HTTP_404 = "HTTP_404"
HTTP_429_RATE_LIMIT = "HTTP_429_RATE_LIMIT"
HTTP_5XX = "HTTP_5XX"
PARSING_FAILED = "PARSING_FAILED"
ATS_NOT_FOUND = "ATS_NOT_FOUND"
HOST_COOLDOWN = "HOST_COOLDOWN"
BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
UNKNOWN = "UNKNOWN"

# error categories
TRANSIENT_NETWORK = "transient-network"
RATE_LIMITED = "rate-limited"
PERMANENT_HTTP = "permanent-http"
POLICY_BLOCKED = "policy-blocked"
PARSE_FAILURE = "parse-failure"
BUDGET = "budget-exceeded"

_RETRYABLE = {TIMEOUT, DNS_FAILURE, TLS_FAILURE, HTTP_429_RATE_LIMIT, HTTP_5XX}

_CATEGORIES = {
    TIMEOUT: TRANSIENT_NETWORK,
    DNS_FAILURE: TRANSIENT_NETWORK,
    TLS_FAILURE: TRANSIENT_NETWORK,
    HTTP_5XX: TRANSIENT_NETWORK,
    HTTP_429_RATE_LIMIT: RATE_LIMITED,
    HTTP_401_403: RATE_LIMITED,
    HOST_COOLDOWN: RATE_LIMITED,
    HTTP_404: PERMANENT_HTTP,
    ROBOTS_BLOCKED: POLICY_BLOCKED,
    PARSING_FAILED: PARSE_FAILURE,
    BUDGET_EXCEEDED: BUDGET,
}


def from_http_status(status: Optional[int]) -> str:
    if status is None or status <= 0:
        return UNKNOWN
    if status in (401, 403):
        return HTTP_401_403
    if status == 404:
        return HTTP_404
    if status == 408:
        return TIMEOUT
    if status == 429:
        return HTTP_429_RATE_LIMIT
    if 500 <= status < 600:
        return HTTP_5XX
    return UNKNOWN


def from_error_code(error_code: Optional[str], error_message: Optional[str] = None) -> str:
    """Classify a ``FetchResult.error_code``."""
    if not error_code:
        return UNKNOWN
    code = error_code.lower()
    if "timeout" in code:
        return TIMEOUT
    if "host_cooldown" in code:
        return HOST_COOLDOWN
    if "io_error" in code:
        message = (error_message or "").lower()
        if (
            "name or service not known" in message
            or "nodename nor servname" in message
            or "no such host" in message
            or "name resolution" in message
            or "getaddrinfo" in message
        ):
            return DNS_FAILURE
        if "ssl" in message or "certificate" in message or "handshake" in message:
            return TLS_FAILURE
    return UNKNOWN


def from_error_key(key: Optional[str]) -> str:
    """Classify a pipeline error key such as ``sitemap_fetch_failed``."""
    if not key:
        return UNKNOWN
    lower = key.lower()
    if "blocked_by_robots" in lower or "robots_fetch_failed" in lower:
        return ROBOTS_BLOCKED
    if "host_cooldown" in lower:
        return HOST_COOLDOWN
    if (
        "no_sitemaps" in lower
        or "sitemap_no_urls" in lower
        or "no_candidate_urls" in lower
        or "sitemap_fetch_failed" in lower
    ):
        return SITEMAP_NOT_FOUND
    if "missing_domain" in lower:
        return NO_DOMAIN
    if "ats_detected_no_endpoint" in lower or "ats_not_found" in lower:
        return ATS_NOT_FOUND
    if (
        "parse" in lower
        or "gzip_decode_error" in lower
        or "empty_sitemap_payload" in lower
        or "body_too_large" in lower
        or "url_too_long" in lower
    ):
        return PARSING_FAILED
    if "canary" in lower:
        return BUDGET_EXCEEDED
    if "time_budget" in lower or "timeout" in lower:
        return TIMEOUT
    status = parse_http_status(lower)
    if status is not None:
        return from_http_status(status)
    return UNKNOWN


def parse_http_status(key: Optional[str]) -> Optional[int]:
    """Extract ``404`` from keys like ``http_404`` or ``sitemap_http_404``."""
    if not key:
        return None
    lower = key.lower()
    idx = lower.rfind("http_")
    if idx < 0:
        return None
    digits = ""
    for char in lower[idx + 5 :]:
        if not char.isdigit():
            break
        digits += char
    return int(digits) if digits else None


def is_retryable(reason_code: Optional[str]) -> bool:
    return reason_code in _RETRYABLE


def category_for(reason_code: Optional[str]) -> str:
    return _CATEGORIES.get(reason_code or UNKNOWN, PERMANENT_HTTP)
