import pytest

from jobcrawler.fetching.canary import CanaryAbortError, CanaryBudget
from jobcrawler.pipeline import (
    ATS_DETECTED_NO_ENDPOINT,
    COMPANY_TIME_BUDGET_EXCEEDED,
    METHOD_HTML,
    METHOD_SHORT_LINK,
    METHOD_SITEMAP,
    MISSING_DOMAIN,
    SNAPSHOT_FAILED,
    CompanyCrawler,
    top_errors,
)
from jobcrawler.storage.crawl_repository import CompanyTarget, CrawlRepository
from jobcrawler.storage.models import DiscoveredUrl
from jobcrawler.utils.config_loader import PipelineSettings
from jobcrawler.utils.filters import DiscoveredUrlType
from jobcrawler.utils.robots import RobotsHandler

from fakes import FakeFetcher, RecordingRepository, RecordingSnapshots, ok

ACME = CompanyTarget(company_id=1, ticker="ACME", name="Acme Corp", domain="example.com")

ROBOTS = "https://example.com/robots.txt"
SITEMAP = "https://example.com/sitemap.xml"
CAREERS = "https://example.com/careers"

EMPTY_ROBOTS = (ROBOTS, "https://www.example.com/robots.txt", "https://grnh.se/robots.txt")

SITEMAP_XML = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/careers/engineering</loc></url>
  <url><loc>https://boards.greenhouse.io/acme/jobs/1</loc></url>
  <url><loc>https://example.com/about</loc></url>
</urlset>"""


def build(responses, *, snapshots=None, repository=None, **settings):
    served = {robots: ok(robots, "") for robots in EMPTY_ROBOTS}
    served.update(responses)
    fetcher = FakeFetcher(served)
    repository = repository or RecordingRepository([ACME])
    crawler = CompanyCrawler(
        fetcher,
        RobotsHandler(fetcher),
        repository,
        pipeline_settings=PipelineSettings(**settings),
        snapshots=snapshots,
    )
    return crawler, fetcher, repository


@pytest.mark.anyio
async def test_full_company_crawl():
    snapshots = RecordingSnapshots()
    crawler, fetcher, repository = build(
        {
            ROBOTS: ok(ROBOTS, f"User-agent: *\nDisallow: /private\nSitemap: {SITEMAP}"),
            SITEMAP: ok(SITEMAP, SITEMAP_XML),
            CAREERS: ok(CAREERS, '<a href="https://jobs.lever.co/acme">Open roles</a>'),
        },
        snapshots=snapshots,
    )

    summary = await crawler.crawl_company(ACME)

    assert summary.success
    assert summary.sitemaps_fetched == 1
    assert summary.candidate_urls == 2
    assert summary.probes_fetched == 1
    assert [r.url for r in summary.ats_detections] == [
        "https://boards.greenhouse.io/acme",
        "https://jobs.lever.co/acme",
    ]
    assert summary.top_errors == {"http_404": 2}

    assert repository.sitemaps == [(1, SITEMAP)]
    assert (1, "https://example.com/careers/engineering", DiscoveredUrlType.CANDIDATE_JOB) in repository.discovered
    assert (1, "https://example.com/about", DiscoveredUrlType.OTHER) in repository.discovered
    assert repository.endpoints == [
        (1, "GREENHOUSE", "https://boards.greenhouse.io/acme", "https://boards.greenhouse.io/acme/jobs/1", METHOD_SITEMAP),
        (1, "LEVER", "https://jobs.lever.co/acme", CAREERS, METHOD_HTML),
    ]
    assert snapshots.saved == [(1, CAREERS, 200, CAREERS, ["LEVER"])]
    # robots.txt is fetched once per host
    assert fetcher.urls.count(ROBOTS) == 1


@pytest.mark.anyio
async def test_missing_domain_is_reported_without_requests():
    crawler, fetcher, _ = build({})

    summary = await crawler.crawl_company(CompanyTarget(company_id=2, ticker="NONE", name=None, domain=None))

    assert not summary.success
    assert summary.top_errors == {MISSING_DOMAIN: 1}
    assert fetcher.calls == []


@pytest.mark.anyio
async def test_vendor_without_endpoint_is_diagnosed():
    crawler, _, repository = build(
        {CAREERS: ok(CAREERS, '<script src="https://boards.greenhouse.io/embed/job_board/js"></script>')}
    )

    summary = await crawler.crawl_company(ACME)

    assert summary.sitemaps_fetched == 0
    assert summary.ats_detections == []
    assert summary.top_errors[ATS_DETECTED_NO_ENDPOINT] == 1
    assert summary.top_errors["sitemap_fetch_failed"] == 1
    assert repository.endpoints == []


@pytest.mark.anyio
async def test_short_link_fallback():
    short = "https://grnh.se/abc123"
    crawler, _, repository = build(
        {
            CAREERS: ok(CAREERS, f'<a href="{short}">Apply now</a>'),
            short: ok(short, "<html></html>", final_url="https://boards.greenhouse.io/acme"),
        }
    )

    summary = await crawler.crawl_company(ACME)

    assert [r.url for r in summary.ats_detections] == ["https://boards.greenhouse.io/acme"]
    assert repository.endpoints[0][3:] == (short, METHOD_SHORT_LINK)


@pytest.mark.anyio
async def test_snapshot_failure_is_counted_not_raised():
    crawler, _, _ = build(
        {CAREERS: ok(CAREERS, '<a href="https://jobs.lever.co/acme">x</a>')},
        snapshots=RecordingSnapshots(fail=True),
    )

    summary = await crawler.crawl_company(ACME)

    assert summary.top_errors[SNAPSHOT_FAILED] == 1
    assert summary.ats_detections


@pytest.mark.anyio
async def test_careers_page_limit_and_time_budget():
    crawler, fetcher, _ = build({}, max_ats_probes=1)

    hinted = CompanyTarget(
        company_id=3,
        ticker=None,
        name=None,
        domain="example.com",
        careers_hint_url="https://example.com/join-us",
    )
    await crawler.crawl_company(hinted)

    assert "https://example.com/join-us" in fetcher.urls
    assert CAREERS not in fetcher.urls

    crawler, fetcher, _ = build({}, max_company_seconds=0)
    summary = await crawler.crawl_company(ACME)

    assert COMPANY_TIME_BUDGET_EXCEEDED in summary.top_errors
    assert CAREERS not in fetcher.urls


@pytest.mark.anyio
async def test_canary_abort_escapes_the_pipeline():
    crawler, _, _ = build({})
    budget = CanaryBudget(max_total_requests=1)

    with pytest.raises(CanaryAbortError):
        await crawler.crawl_company(ACME, budget=budget)


@pytest.mark.anyio
async def test_over_long_sitemap_values_do_not_abort_the_crawl(orm):
    long_loc = "https://example.com/careers/" + "x" * 2100
    body = f"""<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>{long_loc}</loc></url>
  <url><loc>https://example.com/careers/engineering</loc><lastmod>{"2024-01-01" * 20}</lastmod></url>
</urlset>"""
    crawler, _, _ = build(
        {ROBOTS: ok(ROBOTS, f"Sitemap: {SITEMAP}"), SITEMAP: ok(SITEMAP, body)},
        repository=CrawlRepository(),
    )

    summary = await crawler.crawl_company(ACME)

    assert summary.top_errors["url_too_long"] == 1
    stored = await DiscoveredUrl.filter(company_id=1)
    assert [row.url for row in stored] == ["https://example.com/careers/engineering"]
    assert len(stored[0].lastmod) == 64


def test_top_errors_keeps_the_most_frequent():
    errors = {f"e{i}": i for i in range(8)}

    assert list(top_errors(errors)) == ["e7", "e6", "e5", "e4", "e3"]
