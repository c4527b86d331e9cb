import re
from enum import Enum
from urllib.parse import urlparse

from jobcrawler.utils.url_utils import get_domain

# Static assets never carry postings
BLOCKED_EXTENSIONS = (
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".mp4", ".mp3", ".pdf",
    ".zip", ".rar", ".exe", ".apk", ".iso", ".tar", ".7z", ".css", ".js"
)

JOB_PATH_HINTS = (
    "/careers",
    "/jobs",
    "/job",
    "/openings",
    "/positions",
    "/job-search",
    "/search-jobs",
)

ATS_HOST_MARKERS = (
    "workdayjobs",
    "greenhouse.io",
    "grnh.se",
    "jobs.lever.co",
    "api.lever.co",
    "apply.lever.co",
    "smartrecruiters.com",
)


class DiscoveredUrlType(str, Enum):
    ATS_LANDING = "ATS_LANDING"
    CANDIDATE_JOB = "CANDIDATE_JOB"
    OTHER = "OTHER"


def is_ats_host(host: str) -> bool:
    h = (host or "").lower()
    return h.endswith("myworkdayjobs.com") or any(marker in h for marker in ATS_HOST_MARKERS)


def is_crawlable_url(url: str) -> bool:
    """True for absolute http(s) URLs that are not static assets."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False

    combined_path = parsed.path
    if parsed.query:
        combined_path = f"{combined_path}?{parsed.query}"
    combined_path = combined_path.lower()

    if any(re.search(re.escape(ext) + r"(?:$|[?#&])", combined_path) for ext in BLOCKED_EXTENSIONS):
        return False

    return True


def classify_url(url: str) -> DiscoveredUrlType:
    host = get_domain(url)
    if not host:
        return DiscoveredUrlType.OTHER
    if is_ats_host(host):
        return DiscoveredUrlType.ATS_LANDING
    path = (urlparse(url).path or "").lower()
    if is_crawlable_url(url) and any(hint in path for hint in JOB_PATH_HINTS):
        return DiscoveredUrlType.CANDIDATE_JOB
    return DiscoveredUrlType.OTHER
