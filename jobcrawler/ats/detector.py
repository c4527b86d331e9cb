from typing import Optional

from jobcrawler.ats.extractor import AtsVendor
from jobcrawler.utils.url_utils import ensure_scheme, get_domain


class AtsDetector:
    """Coarse vendor classification for pages where no endpoint could be extracted."""

    def detect_from_url(self, url: Optional[str]) -> Optional[AtsVendor]:
        if not url or not url.strip():
            return None
        host = get_domain(ensure_scheme(url) or "")
        if not host:
            return None

        if host.endswith("myworkdayjobs.com") or "workdayjobs" in host:
            return AtsVendor.WORKDAY
        if "greenhouse.io" in host or "grnh.se" in host:
            return AtsVendor.GREENHOUSE
        if "lever.co" in host:
            return AtsVendor.LEVER
        if "smartrecruiters.com" in host:
            return AtsVendor.SMARTRECRUITERS
        return None

    def detect_from_html(self, html: Optional[str]) -> Optional[AtsVendor]:
        if not html or not html.strip():
            return None
        lower = html.lower()
        if "workdayjobs" in lower or "/wday/cxs/" in lower:
            return AtsVendor.WORKDAY
        if "greenhouse.io" in lower or "grnh.se/" in lower:
            return AtsVendor.GREENHOUSE
        if "lever.co" in lower:
            return AtsVendor.LEVER
        if "smartrecruiters.com" in lower:
            return AtsVendor.SMARTRECRUITERS
        return None

    def detect(self, url: Optional[str], html: Optional[str] = None) -> Optional[AtsVendor]:
        return self.detect_from_url(url) or self.detect_from_html(html)
