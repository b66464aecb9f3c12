"""Page discovery service.

Finds candidate URLs for a website from its sitemap and, when the sitemap
does not cover the page budget, a breadth-first crawl from the root.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from sitevector.config import Settings
from sitevector.services.fetcher import HtmlFetcher
from sitevector.services.sitemap import SitemapParser
from sitevector.services.url_scoring import (
    UrlScorer,
    is_internal_url,
    is_well_formed,
    normalize_url,
    resolve_link,
    should_skip_url,
    validate_url,
)

logger = logging.getLogger(__name__)


@dataclass
class DiscoveredUrl:
    """A candidate page found during discovery."""
    url: str
    priority: int
    depth: int = 0
    method: str = "crawling"  # sitemap, crawling
    parent_url: str | None = None
    anchor_text: str | None = None
    is_navigation: bool = False
    lastmod: datetime | None = None


@dataclass
class DiscoveryStats:
    """Counters describing how a discovery run went."""
    sitemap_urls: int = 0
    crawled_pages: int = 0
    skipped_urls: int = 0
    error_urls: int = 0
    errors: list[str] = field(default_factory=list)
    avg_response_time_ms: float = 0.0
    success_rate: float = 0.0
    duration_ms: int = 0


@dataclass
class DiscoveryResult:
    """Prioritized, deduplicated discovery output."""
    urls: list[DiscoveredUrl]
    method: str  # sitemap, crawling, hybrid
    sitemaps_found: list[str] = field(default_factory=list)
    stats: DiscoveryStats = field(default_factory=DiscoveryStats)


@dataclass
class _Visit:
    """Outcome of fetching one page during the crawl."""
    item: DiscoveredUrl
    ok: bool
    links: list[tuple[str, str]] = field(default_factory=list)
    navigation: set[str] = field(default_factory=set)
    response_time_ms: int = 0
    error: str | None = None


class PageDiscoveryService:
    """Service for discovering the pages of a website."""

    # Navigation selectors to find important links
    NAV_SELECTORS = [
        "nav",
        "header nav",
        "[role='navigation']",
        ".navigation",
        ".navbar",
        ".menu",
        ".main-nav",
        ".primary-nav",
        "header a",
    ]

    def __init__(self, settings: Settings, fetcher: HtmlFetcher):
        self.settings = settings
        self.fetcher = fetcher
        self.concurrency = settings.discovery_concurrency
        self.timeout = settings.discovery_timeout_seconds
        self.sitemap_parser = SitemapParser(fetcher, timeout=self.timeout)

    async def discover(
        self,
        base_url: str,
        max_pages: int | None = None,
        max_depth: int | None = None,
    ) -> DiscoveryResult:
        """Discover candidate pages for a website.

        Args:
            base_url: Site root URL
            max_pages: Maximum number of URLs to return
            max_depth: Maximum link depth from the root for the crawl

        Returns:
            DiscoveryResult sorted by priority (highest first).
        """
        max_pages = max_pages or self.settings.default_max_pages
        max_depth = self.settings.default_max_depth if max_depth is None else max_depth

        validate_url(base_url)

        started = time.perf_counter()
        root_url = normalize_url(base_url)
        scorer = UrlScorer(root_url)
        stats = DiscoveryStats()

        logger.info(f"Discovering pages for {root_url} (max_pages={max_pages}, max_depth={max_depth})")

        # Step 1: Sitemap
        entries, sitemaps_found = await self.sitemap_parser.discover(root_url)
        sitemap_items: dict[str, DiscoveredUrl] = {}
        for entry in entries:
            if not is_well_formed(entry.url):
                stats.skipped_urls += 1
                continue
            normalized = normalize_url(entry.url)
            if not is_internal_url(normalized, root_url) or should_skip_url(normalized):
                stats.skipped_urls += 1
                continue
            if normalized not in sitemap_items:
                sitemap_items[normalized] = DiscoveredUrl(
                    url=normalized,
                    priority=0,
                    depth=len([s for s in urlparse(normalized).path.split("/") if s]),
                    method="sitemap",
                    lastmod=entry.lastmod,
                )
        stats.sitemap_urls = len(sitemap_items)

        # Step 2: Scoring, with navigation detected from the homepage
        navigation: set[str] = set()
        if sitemap_items:
            home = await self.fetcher.fetch(root_url, timeout=self.timeout)
            if home.success:
                soup = BeautifulSoup(home.html, "lxml")
                navigation = self._extract_navigation_links(soup, root_url)
        for item in sitemap_items.values():
            item.is_navigation = item.url in navigation
            item.priority = scorer.score(item.url, is_navigation=item.is_navigation)

        # Step 3: Sitemap alone covers the budget
        if len(sitemap_items) >= max_pages:
            urls = self._rank(sitemap_items.values())[:max_pages]
            stats.duration_ms = int((time.perf_counter() - started) * 1000)
            logger.info(f"Selected {len(urls)} of {len(sitemap_items)} sitemap URLs")
            return DiscoveryResult(urls=urls, method="sitemap", sitemaps_found=sitemaps_found, stats=stats)

        # Step 4: Breadth-first crawl and merge
        crawled = await self._crawl(root_url, scorer, max_pages, max_depth, stats)

        merged: dict[str, DiscoveredUrl] = dict(sitemap_items)
        added_by_crawl = 0
        for item in crawled:
            existing = merged.get(item.url)
            if existing is None:
                merged[item.url] = item
                added_by_crawl += 1
            elif item.priority > existing.priority:
                # Max of scores wins; ties keep the sitemap entry
                item.lastmod = existing.lastmod
                merged[item.url] = item

        urls = self._rank(merged.values())[:max_pages]

        if not sitemap_items:
            method = "crawling"
        elif added_by_crawl:
            method = "hybrid"
        else:
            method = "sitemap"

        stats.duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            f"Discovery finished for {root_url}: {len(urls)} URLs via {method} "
            f"({stats.crawled_pages} crawled, {stats.error_urls} errors)"
        )
        return DiscoveryResult(urls=urls, method=method, sitemaps_found=sitemaps_found, stats=stats)

    async def _crawl(
        self,
        root_url: str,
        scorer: UrlScorer,
        max_pages: int,
        max_depth: int,
        stats: DiscoveryStats,
    ) -> list[DiscoveredUrl]:
        """Breadth-first crawl from the root, one depth layer at a time."""
        semaphore = asyncio.Semaphore(self.concurrency)
        visited: set[str] = set()
        discovered: dict[str, DiscoveredUrl] = {}
        navigation: set[str] = set()
        response_times: list[int] = []
        attempts = 0

        layer = [DiscoveredUrl(url=root_url, priority=100, depth=0, method="crawling")]
        while layer and len(discovered) < max_pages:
            # Process the layer in priority order, a concurrency-sized slice at a time
            layer.sort(key=lambda item: item.priority, reverse=True)
            next_layer: dict[str, DiscoveredUrl] = {}

            while layer and len(discovered) < max_pages:
                budget = min(self.concurrency, max_pages - len(discovered))
                batch, layer = layer[:budget], layer[budget:]
                for item in batch:
                    visited.add(item.url)

                visits = await asyncio.gather(*(self._visit(item, semaphore) for item in batch))

                for visit in visits:
                    attempts += 1
                    if not visit.ok:
                        stats.error_urls += 1
                        stats.errors.append(f"{visit.item.url}: {visit.error}")
                        continue

                    response_times.append(visit.response_time_ms)
                    stats.crawled_pages += 1
                    if len(discovered) < max_pages:
                        discovered[visit.item.url] = visit.item

                    if visit.item.depth == 0 and visit.navigation:
                        navigation = visit.navigation

                    if visit.item.depth + 1 > max_depth:
                        continue

                    for link, anchor in visit.links:
                        if link in visited or link in discovered:
                            continue
                        if not is_internal_url(link, root_url) or should_skip_url(link):
                            stats.skipped_urls += 1
                            continue
                        is_nav = link in navigation
                        candidate = DiscoveredUrl(
                            url=link,
                            priority=scorer.score(link, anchor_text=anchor, is_navigation=is_nav),
                            depth=visit.item.depth + 1,
                            method="crawling",
                            parent_url=visit.item.url,
                            anchor_text=anchor or None,
                            is_navigation=is_nav,
                        )
                        existing = next_layer.get(link)
                        if existing is None or candidate.priority > existing.priority:
                            next_layer[link] = candidate

            layer = list(next_layer.values())

        if response_times:
            stats.avg_response_time_ms = sum(response_times) / len(response_times)
        if attempts:
            stats.success_rate = round(len(response_times) / attempts * 100, 1)

        return list(discovered.values())

    async def _visit(self, item: DiscoveredUrl, semaphore: asyncio.Semaphore) -> _Visit:
        async with semaphore:
            result = await self.fetcher.fetch(item.url, timeout=self.timeout)

        if not result.success:
            return _Visit(item=item, ok=False, error=result.error, response_time_ms=result.response_time_ms)

        page_url = result.final_url or item.url
        soup = BeautifulSoup(result.html, "lxml")
        links = self._extract_links(soup, page_url)
        navigation = self._extract_navigation_links(soup, page_url) if item.depth == 0 else set()
        return _Visit(
            item=item,
            ok=True,
            links=links,
            navigation=navigation,
            response_time_ms=result.response_time_ms,
        )

    def _extract_links(self, soup: BeautifulSoup, page_url: str) -> list[tuple[str, str]]:
        """Extract (normalized URL, anchor text) pairs for every page link."""
        links: dict[str, str] = {}
        for a in soup.find_all("a", href=True):
            absolute = resolve_link(a["href"], page_url)
            if absolute is None:
                continue
            normalized = normalize_url(absolute)
            if normalized not in links:
                links[normalized] = a.get_text(" ", strip=True)[:200]
        return list(links.items())

    def _extract_navigation_links(self, soup: BeautifulSoup, base_url: str) -> set[str]:
        """Extract links from navigation elements (high priority pages).

        Args:
            soup: Parsed HTML of the page
            base_url: Base URL for resolving relative links

        Returns:
            Set of normalized URLs found in navigation
        """
        nav_links: set[str] = set()

        for selector in self.NAV_SELECTORS:
            for element in soup.select(selector):
                # Selectors ending in "a" pick links directly
                if element.name == "a" and element.get("href"):
                    links = [element]
                else:
                    links = element.find_all("a", href=True)

                for link in links:
                    absolute = resolve_link(link["href"], base_url)
                    if absolute and is_internal_url(absolute, base_url):
                        nav_links.add(normalize_url(absolute))

        return nav_links

    @staticmethod
    def _rank(items) -> list[DiscoveredUrl]:
        # Stable on equal priority: shallower first, then URL
        return sorted(items, key=lambda item: (-item.priority, item.depth, item.url))
