"""Tests for URL validation, normalization, filtering and scoring."""

import pytest

from sitevector.exceptions import InvalidUrlError
from sitevector.services.url_scoring import (
    UrlScorer,
    get_domain,
    is_internal_url,
    is_well_formed,
    manual_priority,
    normalize_url,
    resolve_link,
    should_skip_url,
    validate_url,
)


class TestValidateUrl:
    def test_accepts_http_and_https(self):
        assert validate_url("  https://example.com/docs ") == "https://example.com/docs"
        assert validate_url("http://sub.example.co.uk") == "http://sub.example.co.uk"

    @pytest.mark.parametrize(
        "url",
        ["", "example.com", "ftp://example.com", "https://", "https://not_a_domain"],
    )
    def test_rejects_malformed(self, url):
        with pytest.raises(InvalidUrlError):
            validate_url(url)

    def test_invalid_url_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            validate_url("mailto:someone@example.com")


class TestNormalizeUrl:
    def test_lowercases_host_and_strips_fragment(self):
        assert normalize_url("HTTPS://Example.COM/Docs#intro") == "https://example.com/Docs"

    def test_trailing_slash_removed_except_root(self):
        assert normalize_url("https://example.com/about/") == "https://example.com/about"
        assert normalize_url("https://example.com") == "https://example.com/"
        assert normalize_url("https://example.com/") == "https://example.com/"

    def test_index_files_collapse_to_directory(self):
        assert normalize_url("https://example.com/index.html") == "https://example.com/"
        assert normalize_url("https://example.com/docs/index.php") == "https://example.com/docs"

    def test_query_is_kept(self):
        assert normalize_url("https://example.com/search?q=1") == "https://example.com/search?q=1"


def test_get_domain_strips_www_and_port():
    assert get_domain("https://www.Example.com:8443/path") == "example.com"


def test_internal_urls_include_subdomains():
    assert is_internal_url("https://docs.example.com/a", "https://example.com")
    assert is_internal_url("https://www.example.com/a", "https://example.com")
    assert not is_internal_url("https://example.org/a", "https://example.com")
    assert not is_internal_url("https://notexample.com/a", "https://example.com")


def test_resolve_link_skips_non_page_schemes():
    page = "https://example.com/docs/intro"
    assert resolve_link("../about", page) == "https://example.com/about"
    assert resolve_link("#section", page) is None
    assert resolve_link("mailto:a@example.com", page) is None
    assert resolve_link("javascript:void(0)", page) is None
    assert resolve_link("   ", page) is None


def test_malformed_links_are_dropped():
    page = "https://example.com/"
    assert resolve_link("http://example.com:abc/x", page) is None
    assert resolve_link("http://[::1/broken", page) is None
    assert should_skip_url("http://example.com:abc/x")
    assert not is_well_formed("http://example.com:99999/")
    assert is_well_formed("http://example.com:8080/docs")


@pytest.mark.parametrize(
    "url",
    [
        "https://example.com/files/report.pdf",
        "https://example.com/logo.png",
        "https://example.com/login",
        "https://example.com/wp-admin/settings",
        "https://example.com/api/v1/users",
        "https://example.com/static/app.css",
    ],
)
def test_should_skip_technical_urls(url):
    assert should_skip_url(url)


def test_api_reference_under_docs_is_kept():
    assert not should_skip_url("https://example.com/docs/api/reference")
    assert not should_skip_url("https://example.com/about")


class TestUrlScorer:
    @pytest.fixture
    def scorer(self):
        return UrlScorer("https://example.com")

    def test_root_scores_maximum(self, scorer):
        assert scorer.score("https://example.com/") == 100
        assert scorer.score("https://example.com") == 100

    def test_content_pages_outrank_legal_pages(self, scorer):
        assert scorer.score("https://example.com/about") > scorer.score("https://example.com/privacy")
        assert scorer.score("https://example.com/docs") > scorer.score("https://example.com/tag/misc")

    def test_navigation_links_get_a_bonus(self, scorer):
        url = "https://example.com/company/history/timeline"
        assert scorer.score(url, is_navigation=True) > scorer.score(url)

    def test_tracking_parameters_are_penalized(self, scorer):
        plain = scorer.score("https://example.com/blog/post")
        tracked = scorer.score("https://example.com/blog/post?utm_source=news")
        assert tracked < plain

    def test_anchor_text_adjusts_score(self, scorer):
        url = "https://example.com/x/y"
        assert scorer.score(url, anchor_text="Read the documentation") > scorer.score(url)
        assert scorer.score(url, anchor_text="Sign in") < scorer.score(url)

    @pytest.mark.parametrize(
        "url",
        [
            "https://example.com/a/b/c/d/e/f/g/privacy/terms/legal/cookie/archive.pdf?utm_x=1",
            "https://example.com/about/services/contact/pricing",
            "not a url",
            "https:///nohost",
            "",
        ],
    )
    def test_scores_are_clamped(self, scorer, url):
        score = scorer.score(url, anchor_text="login privacy", is_navigation=True)
        assert 0 <= score <= 100


def test_manual_priority_favours_core_sections():
    assert manual_priority("https://example.com/") == 100
    assert manual_priority("https://example.com/about") == 90
    assert manual_priority("https://example.com/docs/setup") == 85
    assert manual_priority("https://example.com/blog/news") == 75
    assert manual_priority("https://example.com/random") == 80
