"""Sitemap parsing service."""

import logging
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urljoin
from xml.etree import ElementTree

from sitevector.services.fetcher import HtmlFetcher

logger = logging.getLogger(__name__)

# Conventional locations tried when robots.txt names no sitemap
SITEMAP_PATHS = (
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/sitemaps.xml",
    "/sitemap/sitemap.xml",
    "/sitemap/index.xml",
)


@dataclass
class SitemapEntry:
    """A URL listed in a sitemap."""
    url: str
    lastmod: datetime | None = None


class SitemapParser:
    """Service for locating and parsing sitemap.xml files."""

    # XML namespaces used in sitemaps
    NAMESPACES = {
        "sm": "http://www.sitemaps.org/schemas/sitemap/0.9",
    }

    def __init__(self, fetcher: HtmlFetcher, timeout: float | None = None):
        self.fetcher = fetcher
        self.timeout = timeout

    async def find_sitemaps(self, base_url: str) -> list[str]:
        """Return sitemap URLs declared in robots.txt plus the conventional paths."""
        candidates: list[str] = []

        robots = await self.fetcher.fetch(
            urljoin(base_url, "/robots.txt"), timeout=self.timeout, require_html=False
        )
        if robots.success:
            for line in robots.html.splitlines():
                key, _, value = line.partition(":")
                if key.strip().lower() == "sitemap" and value.strip():
                    candidates.append(value.strip())

        for path in SITEMAP_PATHS:
            url = urljoin(base_url, path)
            if url not in candidates:
                candidates.append(url)
        return candidates

    async def discover(self, base_url: str) -> tuple[list[SitemapEntry], list[str]]:
        """Collect URLs from the first sitemap location that parses.

        Returns:
            Tuple of (entries, sitemap URLs that were read).
        """
        for sitemap_url in await self.find_sitemaps(base_url):
            entries = await self.get_entries(sitemap_url)
            if entries is not None:
                logger.info(f"Found sitemap at {sitemap_url} with {len(entries)} URLs")
                return entries, [sitemap_url]
        return [], []

    async def get_entries(
        self,
        sitemap_url: str,
        follow_index: bool = True,
    ) -> list[SitemapEntry] | None:
        """Get all URLs from a sitemap with their lastmod dates.

        Handles both regular sitemaps and sitemap indexes (one level deep).

        Returns:
            List of entries, or None if the sitemap is missing or malformed.
        """
        result = await self.fetcher.fetch(
            sitemap_url, timeout=self.timeout, require_html=False
        )
        if not result.success or not result.html.strip():
            return None

        try:
            root = ElementTree.fromstring(result.html.encode("utf-8"))
        except ElementTree.ParseError as e:
            logger.warning(f"Malformed sitemap at {sitemap_url}: {e}")
            return None

        # Check if this is a sitemap index
        if root.tag.endswith("sitemapindex"):
            if not follow_index:
                return []
            entries: list[SitemapEntry] = []
            for loc in root.findall(".//sm:sitemap/sm:loc", self.NAMESPACES):
                if loc.text:
                    nested = await self.get_entries(loc.text.strip(), follow_index=False)
                    entries.extend(nested or [])
            return entries

        if not root.tag.endswith("urlset"):
            return None

        entries = []
        for url_elem in root.findall(".//sm:url", self.NAMESPACES):
            loc = url_elem.find("sm:loc", self.NAMESPACES)
            lastmod = url_elem.find("sm:lastmod", self.NAMESPACES)

            if loc is not None and loc.text:
                lastmod_dt = None
                if lastmod is not None and lastmod.text:
                    lastmod_dt = self._parse_lastmod(lastmod.text.strip())
                entries.append(SitemapEntry(url=loc.text.strip(), lastmod=lastmod_dt))

        return entries

    def _parse_lastmod(self, lastmod_str: str) -> datetime | None:
        """Parse lastmod date string."""
        formats = [
            "%Y-%m-%dT%H:%M:%S%z",
            "%Y-%m-%dT%H:%M:%S.%f%z",
            "%Y-%m-%dT%H:%M:%S",
            "%Y-%m-%d",
        ]

        for fmt in formats:
            try:
                return datetime.strptime(lastmod_str, fmt)
            except ValueError:
                continue

        return None
