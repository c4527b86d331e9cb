from typing import Dict, Iterable, List, Optional

from loguru import logger
from selectolax.lexbor import LexborHTMLParser

from jobcrawler.ats.extractor import AtsDetectionRecord, AtsEndpointExtractor
from jobcrawler.fetching.canary import CanaryBudget
from jobcrawler.fetching.polite_fetcher import HTML_ACCEPT, PoliteFetcher
from jobcrawler.monitoring.metrics_server import ATS_ENDPOINTS_DETECTED
from jobcrawler.utils.robots import RobotsHandler
from jobcrawler.utils.url_utils import normalize_url


MAX_SHORT_LINK_RESOLUTIONS = 2
SHORT_LINK_MAX_BYTES = 1_000_000


def detect_from_html_links(
    html: Optional[str],
    base_url: Optional[str],
    extractor: Optional[AtsEndpointExtractor] = None,
) -> Dict[AtsDetectionRecord, str]:
    """ATS endpoints found in the anchors of ``html``, mapped to the href they came from."""
    if not html or not html.strip():
        return {}
    extractor = extractor or AtsEndpointExtractor()
    found: Dict[AtsDetectionRecord, str] = {}
    seen_keys = set()

    tree = LexborHTMLParser(html)
    for node in tree.css("a[href]"):
        href = (node.attributes.get("href") or "").strip()
        if not href:
            continue
        resolved = normalize_url(base_url, href) if base_url else href
        if not resolved:
            continue
        for record in extractor.extract(url=resolved):
            if record.key not in seen_keys:
                seen_keys.add(record.key)
                found[record] = resolved
    return found


def detect_from_sitemap_urls(
    urls: Iterable[str],
    extractor: Optional[AtsEndpointExtractor] = None,
) -> Dict[AtsDetectionRecord, str]:
    """ATS endpoints found in sitemap URL entries, mapped to the first URL that produced each."""
    extractor = extractor or AtsEndpointExtractor()
    found: Dict[AtsDetectionRecord, str] = {}
    seen_keys = set()
    for url in urls:
        if not url or not url.strip():
            continue
        for record in extractor.extract(url=url):
            if record.key not in seen_keys:
                seen_keys.add(record.key)
                found[record] = url
    return found


class ShortLinkResolver:
    """Follow ``grnh.se`` short links to the Greenhouse board they redirect to."""

    def __init__(
        self,
        fetcher: PoliteFetcher,
        robots: RobotsHandler,
        extractor: Optional[AtsEndpointExtractor] = None,
        max_resolutions: int = MAX_SHORT_LINK_RESOLUTIONS,
    ):
        self.fetcher = fetcher
        self.robots = robots
        self.extractor = extractor or AtsEndpointExtractor()
        self.max_resolutions = max_resolutions

    async def resolve(
        self,
        html: Optional[str],
        budget: Optional[CanaryBudget] = None,
    ) -> Dict[AtsDetectionRecord, str]:
        links = self.extractor.extract_greenhouse_short_links(html)
        if not links:
            return {}

        for link in links[: self.max_resolutions]:
            if not await self.robots.is_allowed(link, budget):
                logger.debug(f"Short link blocked by robots: {link}")
                continue
            fetch = await self.fetcher.get(link, HTML_ACCEPT, max_bytes=SHORT_LINK_MAX_BYTES, budget=budget)
            resolved = fetch.final_url_or_requested
            records = self.extractor.extract(url=resolved, html=fetch.text if fetch.is_successful else None)
            if records:
                logger.debug(f"Short link {link} resolved to {resolved} ({len(records)} endpoints)")
                return {record: link for record in records}
        return {}


def record_detections(records: Iterable[AtsDetectionRecord]) -> None:
    for record in records:
        ATS_ENDPOINTS_DETECTED.labels(vendor=record.vendor.value).inc()


def merge_detections(
    target: Dict[AtsDetectionRecord, str],
    additions: Dict[AtsDetectionRecord, str],
) -> List[AtsDetectionRecord]:
    """Add unseen records to ``target``; return the ones that were new."""
    known = {record.key for record in target}
    added: List[AtsDetectionRecord] = []
    for record, source in additions.items():
        if record.key in known:
            continue
        known.add(record.key)
        target[record] = source
        added.append(record)
    return added
