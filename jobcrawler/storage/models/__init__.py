from .company_model import Company
from .queue_model import CrawlQueueEntry
from .discovered_url_model import DiscoveredUrl
from .discovered_sitemap_model import DiscoveredSitemap
from .ats_endpoint_model import AtsEndpoint
from .host_crawl_state_model import HostCrawlState
from .crawl_error_log_model import CrawlErrorLog

__all__ = [
    "Company",
    "CrawlQueueEntry",
    "DiscoveredUrl",
    "DiscoveredSitemap",
    "AtsEndpoint",
    "HostCrawlState",
    "CrawlErrorLog",
]
