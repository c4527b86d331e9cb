"""Structural ATS vendor signatures and endpoint canonicalization.

Matches are made against hostnames and paths, never free-text keywords:

* Greenhouse: ``boards.greenhouse.io/{token}``, ``job-boards.greenhouse.io/{token}``,
  ``(boards-api|api).greenhouse.io/v1/boards/{token}``, the embed widget
  (``boards.greenhouse.io/embed/job_board?for={token}``). All collapse to
  ``https://boards.greenhouse.io/{token}``. ``grnh.se`` short links carry no
  token and are resolved separately.
* Lever: ``jobs.lever.co``, ``apply.lever.co``, ``api.lever.co/v0/postings/``
  collapse to ``https://jobs.lever.co/{account}``.
* Workday: any ``*.myworkdayjobs.com`` host; CXS API paths
  (``/wday/cxs/{tenant}/{site}``), locale-prefixed UI paths and bare site
  paths all collapse to ``https://{host}/{locale?}/{site}``.
* SmartRecruiters: ``jobs|careers|www.smartrecruiters.com/{company}`` and
  ``api.smartrecruiters.com/v1/companies/{company}`` collapse to
  ``https://careers.smartrecruiters.com/{company}``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional
from urllib.parse import parse_qsl, urlsplit


class AtsVendor(str, Enum):
    WORKDAY = "WORKDAY"
    GREENHOUSE = "GREENHOUSE"
    LEVER = "LEVER"
    SMARTRECRUITERS = "SMARTRECRUITERS"


@dataclass(frozen=True)
class AtsDetectionRecord:
    vendor: AtsVendor
    url: str

    @property
    def key(self) -> str:
        return dedup_key(self.vendor, self.url)


def dedup_key(vendor: AtsVendor, url: str) -> str:
    return f"{vendor.value}|{url.lower()}"


_TOKEN = r"([A-Za-z0-9._-]+)"

GREENHOUSE_BOARD = re.compile(r"(?i)(?:https?:)?//boards\.greenhouse\.io/" + _TOKEN)
GREENHOUSE_JOB_BOARDS = re.compile(r"(?i)(?:https?:)?//job-boards\.greenhouse\.io/" + _TOKEN)
GREENHOUSE_API = re.compile(r"(?i)(?:https?:)?//(?:boards-api|api)\.greenhouse\.io/v1/boards/" + _TOKEN)
GREENHOUSE_EMBED = re.compile(r"(?i)(?:https?:)?//boards\.greenhouse\.io/embed/job_board[^\"'\s>]*")
GREENHOUSE_SHORT = re.compile(r"(?i)(?:https?:)?//grnh\.se/" + _TOKEN)
LEVER_JOBS = re.compile(r"(?i)(?:https?:)?//jobs\.lever\.co/" + _TOKEN)
LEVER_APPLY = re.compile(r"(?i)(?:https?:)?//apply\.lever\.co/" + _TOKEN)
LEVER_API = re.compile(r"(?i)(?:https?:)?//api\.lever\.co/v0/postings/" + _TOKEN)
WORKDAY = re.compile(r"(?i)(?:https?:)?//([A-Za-z0-9-]+\.[A-Za-z0-9.-]*myworkdayjobs\.com)(/[^\"'\s<>]*)?")
SMARTRECRUITERS = re.compile(r"(?i)(?:https?:)?//(?:jobs|careers|www)\.smartrecruiters\.com/" + _TOKEN)
SMARTRECRUITERS_API = re.compile(r"(?i)(?:https?:)?//api\.smartrecruiters\.com/v1/companies/" + _TOKEN)

LOCALE_SEGMENT = re.compile(r"^[a-z]{2}-[A-Z]{2}$")
TRAILING_PUNCTUATION = ".,;)]}\"&?"

# path segments that are product pages, not tenants
_GREENHOUSE_RESERVED = {"embed"}


def strip_trailing_punctuation(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip().rstrip(TRAILING_PUNCTUATION)


def clean_token(value: Optional[str]) -> Optional[str]:
    cleaned = strip_trailing_punctuation(value)
    return cleaned or None


def normalize_endpoint_url(raw: str) -> Optional[str]:
    value = raw.strip()
    if value.startswith("//"):
        value = "https:" + value
    if not value.lower().startswith(("http://", "https://")):
        value = "https://" + value
    try:
        parts = urlsplit(value)
    except ValueError:
        return None
    host = (parts.hostname or "").lower()
    if not host:
        return None
    if host == "job-boards.greenhouse.io":
        host = "boards.greenhouse.io"
    path = parts.path or ""
    normalized = f"https://{host}{path}"
    if normalized.endswith("/") and len(normalized) > len("https://x/"):
        normalized = normalized[:-1]
    return normalized


def normalize_workday_endpoint(host: Optional[str], raw_path: Optional[str]) -> Optional[str]:
    if not host or not host.strip():
        return None
    path = (raw_path or "").split("?", 1)[0].split("#", 1)[0]
    path = strip_trailing_punctuation(path) or ""
    segments = [part for part in path.split("/") if part.strip()]
    if not segments:
        return None

    locale = None
    if len(segments) >= 4 and segments[0].lower() == "wday" and segments[1].lower() == "cxs":
        site = segments[3]
    elif len(segments) >= 2 and LOCALE_SEGMENT.match(segments[0]):
        locale, site = segments[0], segments[1]
    else:
        site = segments[0]

    site = strip_trailing_punctuation(site)
    if not site:
        return None
    normalized_path = f"/{locale}/{site}" if locale else f"/{site}"
    return f"https://{host.strip().lower()}{normalized_path}"


def _query_param(raw_url: str, name: str) -> Optional[str]:
    value = raw_url if "://" in raw_url else "https:" + raw_url
    try:
        query = urlsplit(value).query
    except ValueError:
        return None
    for key, param in parse_qsl(query, keep_blank_values=True):
        if key.lower() == name:
            return param
    return None


class AtsEndpointExtractor:
    def extract(self, url: Optional[str] = None, html: Optional[str] = None) -> List[AtsDetectionRecord]:
        unique: Dict[str, AtsDetectionRecord] = {}
        self._extract_from_text(url, unique)
        self._extract_from_text(html, unique)
        return list(unique.values())

    def extract_many(self, texts: Iterable[Optional[str]]) -> List[AtsDetectionRecord]:
        unique: Dict[str, AtsDetectionRecord] = {}
        for text in texts:
            self._extract_from_text(text, unique)
        return list(unique.values())

    def extract_greenhouse_short_links(self, html: Optional[str]) -> List[str]:
        if not html or not html.strip():
            return []
        links: List[str] = []
        for match in GREENHOUSE_SHORT.finditer(_unescape(html)):
            token = clean_token(match.group(1))
            if token:
                link = f"https://grnh.se/{token}"
                if link not in links:
                    links.append(link)
        return links

    # -------------------------------------------------------
    def _extract_from_text(self, text: Optional[str], unique: Dict[str, AtsDetectionRecord]) -> None:
        if not text or not text.strip():
            return
        text = _unescape(text)

        for pattern in (GREENHOUSE_BOARD, GREENHOUSE_JOB_BOARDS):
            for match in pattern.finditer(text):
                token = clean_token(match.group(1))
                if token and token.lower() not in _GREENHOUSE_RESERVED:
                    self._add(unique, AtsVendor.GREENHOUSE, f"https://boards.greenhouse.io/{token}")

        for match in GREENHOUSE_API.finditer(text):
            token = clean_token(match.group(1))
            if token:
                self._add(unique, AtsVendor.GREENHOUSE, f"https://boards.greenhouse.io/{token}")

        for match in GREENHOUSE_EMBED.finditer(text):
            token = clean_token(_query_param(match.group(0), "for"))
            if token:
                self._add(unique, AtsVendor.GREENHOUSE, f"https://boards.greenhouse.io/{token}")

        for pattern in (LEVER_JOBS, LEVER_APPLY, LEVER_API):
            for match in pattern.finditer(text):
                account = clean_token(match.group(1))
                if account:
                    self._add(unique, AtsVendor.LEVER, f"https://jobs.lever.co/{account}")

        for match in WORKDAY.finditer(text):
            normalized = normalize_workday_endpoint(clean_token(match.group(1)), match.group(2))
            if normalized:
                self._add(unique, AtsVendor.WORKDAY, normalized)

        for pattern in (SMARTRECRUITERS, SMARTRECRUITERS_API):
            for match in pattern.finditer(text):
                company = clean_token(match.group(1))
                if company:
                    self._add(unique, AtsVendor.SMARTRECRUITERS, f"https://careers.smartrecruiters.com/{company}")

    @staticmethod
    def _add(unique: Dict[str, AtsDetectionRecord], vendor: AtsVendor, endpoint_url: str) -> None:
        normalized = normalize_endpoint_url(endpoint_url)
        if not normalized:
            return
        key = dedup_key(vendor, normalized)
        if key not in unique:
            unique[key] = AtsDetectionRecord(vendor, normalized)


def _unescape(text: str) -> str:
    # JSON-embedded URLs escape their slashes
    return text.replace("\\/", "/")
