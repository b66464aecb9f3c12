"""Tests for the HTML fetcher's error mapping and redirect handling."""

import httpx

from tests.conftest import BASE_URL


async def test_fetch_html_page(make_fetcher):
    fetcher = make_fetcher({"/about": "<html><body><p>About us</p></body></html>"})

    result = await fetcher.fetch(f"{BASE_URL}/about")

    assert result.success
    assert result.status_code == 200
    assert "About us" in result.html
    assert result.is_html
    assert result.error is None


async def test_follows_redirects_and_reports_final_url(make_fetcher):
    fetcher = make_fetcher({
        "/old": (301, f"{BASE_URL}/new", "text/html"),
        "/new": "<html><body>New home</body></html>",
    })

    result = await fetcher.fetch(f"{BASE_URL}/old")

    assert result.success
    assert result.final_url == f"{BASE_URL}/new"
    assert result.redirect_count == 1


async def test_http_errors_are_reported(make_fetcher):
    fetcher = make_fetcher({"/broken": (500, "boom", "text/html")})

    missing = await fetcher.fetch(f"{BASE_URL}/missing")
    broken = await fetcher.fetch(f"{BASE_URL}/broken")

    assert not missing.success
    assert missing.error == "HTTP 404: Not Found"
    assert not broken.success
    assert broken.status_code == 500
    assert broken.error.startswith("HTTP 500")


async def test_non_html_is_unsupported_unless_allowed(make_fetcher):
    fetcher = make_fetcher({"/report.pdf": (200, "%PDF-1.4", "application/pdf")})

    strict = await fetcher.fetch(f"{BASE_URL}/report.pdf")
    relaxed = await fetcher.fetch(f"{BASE_URL}/report.pdf", require_html=False)

    assert not strict.success
    assert strict.error == "Unsupported content type: application/pdf"
    assert strict.status_code == 200
    assert relaxed.success
    assert relaxed.html == "%PDF-1.4"


async def test_timeout_is_mapped(make_fetcher):
    fetcher = make_fetcher({"/slow": httpx.ReadTimeout("timed out")})

    result = await fetcher.fetch(f"{BASE_URL}/slow")

    assert not result.success
    assert result.error == "Request timeout"


async def test_connect_errors_are_mapped(make_fetcher):
    unknown = make_fetcher({"/": httpx.ConnectError("[Errno -2] Name or service not known")})
    refused = make_fetcher({"/": httpx.ConnectError("[Errno 111] Connection refused")})

    assert (await unknown.fetch(f"{BASE_URL}/")).error == "Domain not found"
    assert (await refused.fetch(f"{BASE_URL}/")).error == "Connection refused"


async def test_fetch_many_preserves_order(make_fetcher):
    fetcher = make_fetcher({
        "/a": "<html><body>A</body></html>",
        "/c": "<html><body>C</body></html>",
    })
    urls = [f"{BASE_URL}/a", f"{BASE_URL}/b", f"{BASE_URL}/c"]

    results = await fetcher.fetch_many(urls, concurrency=2, delay=0)

    assert [r.url for r in results] == urls
    assert [r.success for r in results] == [True, False, True]


async def test_malformed_url_is_a_failed_result(make_fetcher):
    fetcher = make_fetcher({})

    result = await fetcher.fetch("http://example.com:abc/x")

    assert not result.success
    assert result.error.startswith("Invalid URL")
