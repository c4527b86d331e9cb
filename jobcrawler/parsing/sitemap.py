"""Bounded breadth-first sitemap traversal.

Seeds come from robots.txt ``Sitemap:`` hints or from the conventional
``/sitemap.xml`` on the bare and ``www.`` host. Sitemap indexes fan out into
child sitemaps while the depth and sitemap budgets allow; urlsets contribute
page URLs until ``max_urls`` is reached. Failures are tallied per error key
and never stop the traversal.
"""

from __future__ import annotations

import gzip
import zlib
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from bs4 import BeautifulSoup
from loguru import logger

from jobcrawler.fetching.canary import CanaryBudget
from jobcrawler.fetching.polite_fetcher import XML_ACCEPT, FetchResult, PoliteFetcher
from jobcrawler.monitoring.metrics_server import SITEMAP_ERRORS, SITEMAPS_FETCHED
from jobcrawler.utils.robots import RobotsHandler
from jobcrawler.utils.url_utils import MAX_URL_LENGTH, root_url


MAX_SITEMAP_BYTES = 2_000_000
GZIP_MAGIC = b"\x1f\x8b"

BLOCKED_BY_ROBOTS = "blocked_by_robots"
GZIP_DECODE_ERROR = "gzip_decode_error"
EMPTY_SITEMAP_PAYLOAD = "empty_sitemap_payload"
XML_PARSE_ERROR = "xml_parse_error"
URL_TOO_LONG = "url_too_long"

MAX_LASTMOD_LENGTH = 64


@dataclass(frozen=True)
class SitemapFetchRecord:
    url: str
    fetched_at: datetime
    # URLs first seen in this document
    url_count: int


@dataclass(frozen=True)
class SitemapUrlEntry:
    url: str
    lastmod: Optional[str] = None


@dataclass
class SitemapDiscoveryResult:
    fetched_sitemaps: List[SitemapFetchRecord] = field(default_factory=list)
    entries: List[SitemapUrlEntry] = field(default_factory=list)
    errors: Dict[str, int] = field(default_factory=dict)

    @property
    def urls(self) -> List[str]:
        return [entry.url for entry in self.entries]

    def add_error(self, key: str) -> None:
        self.errors[key] = self.errors.get(key, 0) + 1
        SITEMAP_ERRORS.labels(error_key=key).inc()


def normalize_sitemap_url(url: Optional[str]) -> Optional[str]:
    if url is None:
        return None
    value = url.strip()
    if not value:
        return None
    if not value.lower().startswith(("http://", "https://")):
        value = "https://" + value.lstrip("/")
    return value


def _clip_lastmod(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value[:MAX_LASTMOD_LENGTH]


def default_seed_urls(domain: str) -> List[str]:
    host = root_url(domain).split("://", 1)[1].rstrip("/")
    bare = host[4:] if host.startswith("www.") else host
    return [f"https://{bare}/sitemap.xml", f"https://www.{bare}/sitemap.xml"]


def is_gzip_payload(
    requested_url: Optional[str],
    final_url: Optional[str],
    content_encoding: Optional[str],
    body: bytes,
) -> bool:
    """Any one of ``.gz`` suffix, gzip Content-Encoding or magic bytes is enough."""
    for url in (requested_url, final_url):
        if url and url.lower().split("?", 1)[0].endswith(".gz"):
            return True
    if content_encoding and "gzip" in content_encoding.lower():
        return True
    return body[:2] == GZIP_MAGIC


def extract_xml_payload(requested_url: str, fetch: FetchResult) -> bytes:
    """Return the XML bytes of a sitemap response, gunzipping when flagged.

    Raises ``ValueError`` when a gzip-flagged body does not decompress.
    """
    body = fetch.body or b""
    if not is_gzip_payload(requested_url, fetch.final_url, fetch.content_encoding, body):
        return body
    try:
        return gzip.decompress(body)
    except (OSError, EOFError, zlib.error) as e:
        raise ValueError(f"gzip decode failed for {requested_url}: {e}") from e


def parse_sitemap_document(payload: bytes) -> Tuple[List[str], List[SitemapUrlEntry]]:
    """Split a sitemap document into child sitemap locations and url entries."""
    soup = BeautifulSoup(payload, "xml")

    children: List[str] = []
    for sitemap in soup.find_all("sitemap"):
        loc = sitemap.find("loc")
        if loc is not None and loc.get_text(strip=True):
            children.append(loc.get_text(strip=True))

    entries: List[SitemapUrlEntry] = []
    for url_element in soup.find_all("url"):
        loc = url_element.find("loc")
        if loc is None or not loc.get_text(strip=True):
            continue
        lastmod = url_element.find("lastmod")
        entries.append(
            SitemapUrlEntry(
                url=loc.get_text(strip=True),
                lastmod=lastmod.get_text(strip=True) if lastmod is not None else None,
            )
        )
    return children, entries


class SitemapDiscovery:
    def __init__(self, fetcher: PoliteFetcher, robots: RobotsHandler, max_bytes: int = MAX_SITEMAP_BYTES):
        self.fetcher = fetcher
        self.robots = robots
        self.max_bytes = max_bytes

    async def discover(
        self,
        seed_urls: Iterable[str],
        max_depth: int,
        max_sitemaps: int,
        max_urls: int,
        budget: Optional[CanaryBudget] = None,
    ) -> SitemapDiscoveryResult:
        result = SitemapDiscoveryResult()
        frontier: Deque[Tuple[str, int]] = deque()
        for seed in seed_urls:
            normalized = normalize_sitemap_url(seed)
            if normalized and len(normalized) > MAX_URL_LENGTH:
                result.add_error(URL_TOO_LONG)
            elif normalized:
                frontier.append((normalized, 0))

        visited: Dict[str, None] = {}
        discovered: Dict[str, Optional[str]] = {}

        while frontier and len(visited) < max_sitemaps:
            url, depth = frontier.popleft()
            if depth > max_depth or url in visited:
                continue
            visited[url] = None

            if not await self.robots.is_allowed(url, budget):
                logger.debug(f"Sitemap blocked by robots: {url}")
                result.add_error(BLOCKED_BY_ROBOTS)
                continue

            fetch = await self.fetcher.get(
                url,
                XML_ACCEPT,
                max_bytes=self.max_bytes,
                budget=budget,
                decode_content=False,
            )
            if not fetch.is_successful:
                result.add_error(fetch.error_key)
                continue

            try:
                payload = extract_xml_payload(url, fetch)
            except ValueError as e:
                logger.debug(str(e))
                result.add_error(GZIP_DECODE_ERROR)
                continue
            if not payload.strip():
                result.add_error(EMPTY_SITEMAP_PAYLOAD)
                continue

            try:
                children, entries = parse_sitemap_document(payload)
            except Exception as e:
                logger.debug(f"Failed to parse sitemap {url}: {e}")
                result.add_error(XML_PARSE_ERROR)
                continue

            if children and depth < max_depth:
                for child in children:
                    child_url = normalize_sitemap_url(child)
                    if child_url and len(child_url) > MAX_URL_LENGTH:
                        result.add_error(URL_TOO_LONG)
                        continue
                    if (
                        child_url
                        and child_url not in visited
                        and len(visited) + len(frontier) < max_sitemaps
                    ):
                        frontier.append((child_url, depth + 1))

            new_urls = 0
            for entry in entries:
                loc = normalize_sitemap_url(entry.url)
                if not loc or loc in discovered or len(discovered) >= max_urls:
                    continue
                if len(loc) > MAX_URL_LENGTH:
                    result.add_error(URL_TOO_LONG)
                    continue
                discovered[loc] = _clip_lastmod(entry.lastmod)
                new_urls += 1

            result.fetched_sitemaps.append(
                SitemapFetchRecord(url=url, fetched_at=fetch.fetched_at, url_count=new_urls)
            )
            SITEMAPS_FETCHED.inc()
            if len(discovered) >= max_urls:
                break

        result.entries = [SitemapUrlEntry(url=u, lastmod=m) for u, m in discovered.items()]
        logger.debug(
            f"Sitemap discovery done: visited={len(visited)} fetched={len(result.fetched_sitemaps)} "
            f"urls={len(result.entries)} errors={result.errors}"
        )
        return result
