"""Tests for sitemap discovery and parsing."""

from datetime import datetime

from sitevector.services.sitemap import SitemapParser
from tests.conftest import BASE_URL, sitemap_xml

XML = "application/xml"


async def test_reads_sitemap_from_conventional_path(make_fetcher):
    parser = SitemapParser(make_fetcher({"/sitemap.xml": (200, sitemap_xml(["/", "/about"]), XML)}))

    entries, found = await parser.discover(BASE_URL)

    assert [e.url for e in entries] == [f"{BASE_URL}/", f"{BASE_URL}/about"]
    assert entries[0].lastmod == datetime(2024, 1, 15)
    assert found == [f"{BASE_URL}/sitemap.xml"]


async def test_robots_txt_sitemap_takes_precedence(make_fetcher):
    robots = f"User-agent: *\nDisallow: /private\nSitemap: {BASE_URL}/custom-map.xml\n"
    parser = SitemapParser(make_fetcher({
        "/robots.txt": (200, robots, "text/plain"),
        "/custom-map.xml": (200, sitemap_xml(["/docs"]), XML),
        "/sitemap.xml": (200, sitemap_xml(["/other"]), XML),
    }))

    entries, found = await parser.discover(BASE_URL)

    assert [e.url for e in entries] == [f"{BASE_URL}/docs"]
    assert found == [f"{BASE_URL}/custom-map.xml"]


async def test_sitemap_index_is_followed_one_level(make_fetcher):
    index = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        f"<sitemap><loc>{BASE_URL}/pages.xml</loc></sitemap>"
        f"<sitemap><loc>{BASE_URL}/posts.xml</loc></sitemap>"
        "</sitemapindex>"
    )
    parser = SitemapParser(make_fetcher({
        "/sitemap.xml": (200, index, XML),
        "/pages.xml": (200, sitemap_xml(["/about", "/pricing"]), XML),
        "/posts.xml": (200, sitemap_xml(["/blog/first"]), XML),
    }))

    entries = await parser.get_entries(f"{BASE_URL}/sitemap.xml")

    assert [e.url for e in entries] == [
        f"{BASE_URL}/about",
        f"{BASE_URL}/pricing",
        f"{BASE_URL}/blog/first",
    ]


async def test_malformed_sitemap_is_skipped(make_fetcher):
    parser = SitemapParser(make_fetcher({
        "/sitemap.xml": (200, "<urlset><url><loc>broken", XML),
        "/sitemap_index.xml": (200, sitemap_xml(["/fallback"]), XML),
    }))

    assert await parser.get_entries(f"{BASE_URL}/sitemap.xml") is None
    entries, found = await parser.discover(BASE_URL)
    assert [e.url for e in entries] == [f"{BASE_URL}/fallback"]
    assert found == [f"{BASE_URL}/sitemap_index.xml"]


async def test_no_sitemap_anywhere(make_fetcher):
    parser = SitemapParser(make_fetcher({}))

    entries, found = await parser.discover(BASE_URL)

    assert entries == []
    assert found == []


def test_parse_lastmod_formats():
    parser = SitemapParser(fetcher=None)

    assert parser._parse_lastmod("2024-03-01") == datetime(2024, 3, 1)
    assert parser._parse_lastmod("2024-03-01T10:20:30+00:00").hour == 10
    assert parser._parse_lastmod("yesterday") is None


async def test_malformed_nested_sitemap_location_is_ignored(make_fetcher):
    index = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        "<sitemap><loc>http://example.com:abc/broken.xml</loc></sitemap>"
        f"<sitemap><loc>{BASE_URL}/pages.xml</loc></sitemap>"
        "</sitemapindex>"
    )
    parser = SitemapParser(make_fetcher({
        "/sitemap.xml": (200, index, XML),
        "/pages.xml": (200, sitemap_xml(["/about"]), XML),
    }))

    entries = await parser.get_entries(f"{BASE_URL}/sitemap.xml")

    assert [e.url for e in entries] == [f"{BASE_URL}/about"]
