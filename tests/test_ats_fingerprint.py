import pytest

from jobcrawler.ats.extractor import AtsDetectionRecord, AtsVendor
from jobcrawler.ats.fingerprint import (
    ShortLinkResolver,
    detect_from_html_links,
    detect_from_sitemap_urls,
    merge_detections,
)

from fakes import AllowAllRobots, FakeFetcher, ok

GREENHOUSE_ACME = AtsDetectionRecord(AtsVendor.GREENHOUSE, "https://boards.greenhouse.io/acme")
LEVER_ACME = AtsDetectionRecord(AtsVendor.LEVER, "https://jobs.lever.co/acme")


def test_html_links_are_resolved_against_the_page():
    html = """
    <html><body>
      <a href="https://boards.greenhouse.io/acme?gh_src=abc">Open roles</a>
      <a href="https://boards.greenhouse.io/acme/jobs/42">Engineer</a>
      <a href="//jobs.lever.co/acme">Also here</a>
      <a href="/about">About</a>
      <a>no href</a>
    </body></html>
    """
    found = detect_from_html_links(html, "https://example.com/careers")

    assert list(found) == [GREENHOUSE_ACME, LEVER_ACME]
    assert found[GREENHOUSE_ACME] == "https://boards.greenhouse.io/acme"
    assert found[LEVER_ACME] == "https://jobs.lever.co/acme"


def test_html_links_on_empty_page():
    assert detect_from_html_links("", "https://example.com") == {}
    assert detect_from_html_links(None, None) == {}


def test_sitemap_urls_keep_first_source():
    found = detect_from_sitemap_urls(
        [
            "https://example.com/about",
            "https://boards.greenhouse.io/acme/jobs/1",
            "https://boards.greenhouse.io/acme/jobs/2",
            "",
        ]
    )

    assert found == {GREENHOUSE_ACME: "https://boards.greenhouse.io/acme/jobs/1"}


def test_merge_detections_returns_only_new_records():
    target = {GREENHOUSE_ACME: "sitemap"}
    added = merge_detections(
        target,
        {
            AtsDetectionRecord(AtsVendor.GREENHOUSE, "https://boards.greenhouse.io/ACME"): "page",
            LEVER_ACME: "page",
        },
    )

    assert added == [LEVER_ACME]
    assert target == {GREENHOUSE_ACME: "sitemap", LEVER_ACME: "page"}


@pytest.mark.anyio
async def test_short_link_resolves_through_redirect():
    short = "https://grnh.se/abc123"
    fetcher = FakeFetcher({short: ok(short, "<html></html>", final_url="https://boards.greenhouse.io/acme/jobs/9")})
    resolver = ShortLinkResolver(fetcher, AllowAllRobots())

    found = await resolver.resolve('<a href="https://grnh.se/abc123">Apply</a>')

    assert found == {GREENHOUSE_ACME: short}
    assert fetcher.urls == [short]


@pytest.mark.anyio
async def test_short_link_resolution_is_capped():
    html = " ".join(f'<a href="https://grnh.se/l{i}">x</a>' for i in range(4))
    fetcher = FakeFetcher()
    resolver = ShortLinkResolver(fetcher, AllowAllRobots())

    assert await resolver.resolve(html) == {}
    assert fetcher.urls == ["https://grnh.se/l0", "https://grnh.se/l1"]


@pytest.mark.anyio
async def test_short_link_respects_robots():
    short = "https://grnh.se/abc123"
    fetcher = FakeFetcher()
    resolver = ShortLinkResolver(fetcher, AllowAllRobots(blocked=[short]))

    assert await resolver.resolve(f'<a href="{short}">x</a>') == {}
    assert fetcher.calls == []
