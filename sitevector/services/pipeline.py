"""Pipeline orchestration.

Sequences discovery, extraction, chunking and embedding for a website and
reports progress as it goes. A run always returns a ``PipelineResult``;
only cancellation propagates out of the entry points.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from sitevector.config import Settings
from sitevector.exceptions import DiscoveryError, DuplicateEntityError, InvalidUrlError
from sitevector.models import CrawlSession, Page, Website
from sitevector.repositories.base import Repositories
from sitevector.services.discovery import PageDiscoveryService
from sitevector.services.ingestion import ChunkEmbedOutcome, PageIngestor
from sitevector.services.progress import NullSink, PipelineCounters, ProgressEvent, ProgressSink
from sitevector.services.url_scoring import get_domain, manual_priority, normalize_url, validate_url

logger = logging.getLogger(__name__)

MANUAL_SESSION_MAX_PAGES = 999


@dataclass
class FullCrawlRequest:
    website_url: str
    max_pages: int | None = None
    max_depth: int | None = None


@dataclass
class AddPageRequest:
    website_url: str
    page_url: str
    priority: int | None = None


@dataclass
class PageSummary:
    """Outcome of processing one page."""
    page_id: str
    url: str
    title: str | None = None
    status: str = "discovered"
    chunks_created: int = 0
    embeddings_generated: int = 0
    extraction_quality: float = 0.0
    chunk_quality: float = 0.0
    token_count: int = 0
    processing_time_ms: int = 0
    error: str | None = None


@dataclass
class PipelineSummary:
    pages_discovered: int = 0
    pages_processed: int = 0
    pages_failed: int = 0
    pages_skipped: int = 0
    chunks_created: int = 0
    embeddings_generated: int = 0
    total_cost: float = 0.0
    avg_quality: float = 0.0
    processing_time_ms: int = 0


@dataclass
class PipelineResult:
    """What a pipeline run produced, including partial results on failure."""
    success: bool
    website: Website | None = None
    crawl_session: CrawlSession | None = None
    summary: PipelineSummary = field(default_factory=PipelineSummary)
    pages: list[PageSummary] = field(default_factory=list)
    discovery_method: str | None = None
    message: str = ""
    error: str | None = None


class _Run:
    """Mutable state of one pipeline run."""

    def __init__(self, sink: ProgressSink):
        self.sink = sink
        self.started = time.perf_counter()
        self.counters = PipelineCounters()
        self.percent = 0.0
        self.website: Website | None = None
        self.crawl_session: CrawlSession | None = None
        self.pages: dict[str, PageSummary] = {}

    async def emit(self, stage: str, message: str, percent: float | None = None, current_url: str | None = None) -> None:
        if percent is not None:
            self.percent = percent
        await self.sink.emit(
            ProgressEvent(
                stage=stage,
                message=message,
                percent=self.percent,
                counters=replace(self.counters, errors=list(self.counters.errors)),
                current_url=current_url,
            )
        )

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)

    def summary(self) -> PipelineSummary:
        processed = [p for p in self.pages.values() if p.status == "completed"]
        qualities = [p.chunk_quality for p in processed]
        return PipelineSummary(
            pages_discovered=self.counters.pages_discovered,
            pages_processed=self.counters.pages_processed,
            pages_failed=self.counters.pages_failed,
            pages_skipped=self.counters.pages_skipped,
            chunks_created=self.counters.chunks_created,
            embeddings_generated=self.counters.embeddings_generated,
            total_cost=self.counters.total_cost,
            avg_quality=round(sum(qualities) / len(qualities), 1) if qualities else 0.0,
            processing_time_ms=self.elapsed_ms(),
        )

    def result(self, success: bool, message: str, error: str | None = None, method: str | None = None) -> PipelineResult:
        return PipelineResult(
            success=success,
            website=self.website,
            crawl_session=self.crawl_session,
            summary=self.summary(),
            pages=list(self.pages.values()),
            discovery_method=method,
            message=message,
            error=error,
        )


class CrawlPipeline:
    """Runs full crawls and single-page additions for websites."""

    def __init__(
        self,
        settings: Settings,
        repositories: Repositories,
        discovery: PageDiscoveryService,
        ingestor: PageIngestor,
    ):
        self.settings = settings
        self.repos = repositories
        self.discovery = discovery
        self.ingestor = ingestor
        self.page_delay = settings.page_delay_seconds
        self.concurrency = settings.chunk_embed_concurrency

    async def run_full_crawl(
        self,
        request: FullCrawlRequest,
        progress: ProgressSink | None = None,
    ) -> PipelineResult:
        """Discover, extract, chunk and embed a website's pages."""
        run = _Run(progress or NullSink())
        max_pages = request.max_pages or self.settings.default_max_pages
        max_depth = self.settings.default_max_depth if request.max_depth is None else request.max_depth
        method: str | None = None

        try:
            base_url = normalize_url(validate_url(request.website_url))
            logger.info(f"=== Full crawl: {base_url} (max_pages={max_pages}, max_depth={max_depth}) ===")
            await run.emit("discovery", "Starting website discovery", 0)

            run.website = await self._ensure_website(base_url)
            run.website = await self.repos.websites.update(run.website.id, status="crawling")
            run.counters.website_id = run.website.id

            run.crawl_session = await self.repos.sessions.create(
                CrawlSession(website_id=run.website.id, max_pages=max_pages, max_depth=max_depth)
            )
            run.counters.session_id = run.crawl_session.id
            run.crawl_session = await self.repos.sessions.update_status(run.crawl_session.id, "discovering")

            # Stage 1: Discovery
            logger.info("=== Stage 1: Discovery ===")
            discovery = await self.discovery.discover(base_url, max_pages=max_pages, max_depth=max_depth)
            if not discovery.urls:
                raise DiscoveryError(f"No pages discovered for {base_url}")
            method = discovery.method

            pages = await self.repos.pages.create_batch([
                Page(
                    website_id=run.website.id,
                    crawl_session_id=run.crawl_session.id,
                    url=item.url,
                    depth_level=item.depth,
                    priority=item.priority,
                    discovery_method=item.method,
                    sitemap_lastmod=item.lastmod,
                    status="queued",
                )
                for item in discovery.urls
            ])
            for page in pages:
                run.pages[page.id] = PageSummary(page_id=page.id, url=page.url, status=page.status)
            run.counters.pages_discovered = len(pages)
            run.crawl_session = await self.repos.sessions.update_stats(
                run.crawl_session.id,
                pages_discovered=len(pages),
                discovery_method=discovery.method,
                discovery_time_ms=discovery.stats.duration_ms,
                extra={
                    "sitemaps_found": discovery.sitemaps_found,
                    "sitemap_urls": discovery.stats.sitemap_urls,
                    "crawled_pages": discovery.stats.crawled_pages,
                    "skipped_urls": discovery.stats.skipped_urls,
                    "error_urls": discovery.stats.error_urls,
                    "avg_response_time_ms": discovery.stats.avg_response_time_ms,
                    "success_rate": discovery.stats.success_rate,
                },
            )
            await run.emit("discovery", f"Discovered {len(pages)} pages via {discovery.method}", 20)

            # Stage 2: Extraction, one page at a time
            logger.info(f"=== Stage 2: Extraction ({len(pages)} pages) ===")
            run.crawl_session = await self.repos.sessions.update_status(run.crawl_session.id, "extracting")
            await run.emit("extraction", "Extracting page content", 25)
            await self._extract_all(run, pages)

            # Stage 3: Chunking and embedding with bounded concurrency
            logger.info("=== Stage 3: Chunking and embedding ===")
            run.crawl_session = await self.repos.sessions.update_status(run.crawl_session.id, "processing")
            await run.emit("chunking", "Chunking and embedding content", 50)
            ready = await self.repos.pages.list_by_session(
                run.crawl_session.id, status="processing", has_content=True
            )
            await self._chunk_and_embed_all(run, ready)

            # Finalize
            run.crawl_session = await self._finish_session(run, complete=True)
            run.website = await self._update_website_stats(run.website.id)

            message = (
                f"Processed {run.counters.pages_processed}/{run.counters.pages_discovered} pages, "
                f"{run.counters.chunks_created} chunks"
            )
            logger.info(f"=== Full crawl complete: {message} ===")
            await run.emit("completed", message, 100)
            return run.result(True, message, method=method)

        except asyncio.CancelledError:
            logger.warning(f"Full crawl cancelled for {request.website_url}")
            await self._abort(run, "cancelled", "Run cancelled")
            raise
        except Exception as e:
            logger.exception(f"Full crawl failed for {request.website_url}")
            error = str(e) or type(e).__name__
            await self._abort(run, "failed", error)
            return run.result(False, "Pipeline failed", error=error, method=method)

    async def run_add_page(
        self,
        request: AddPageRequest,
        progress: ProgressSink | None = None,
    ) -> PipelineResult:
        """Add one page to a website's manual session and process it.

        Idempotent per URL: a page that already completed is returned as is.
        """
        run = _Run(progress or NullSink())

        try:
            base_url = normalize_url(validate_url(request.website_url))
            page_url = normalize_url(validate_url(request.page_url))
            if get_domain(page_url) != get_domain(base_url):
                raise InvalidUrlError(f"Page {page_url} does not belong to {get_domain(base_url)}")

            logger.info(f"=== Add page: {page_url} ===")
            await run.emit("discovery", f"Registering {page_url}", 0, current_url=page_url)

            run.website = await self._ensure_website(base_url)
            run.counters.website_id = run.website.id
            run.crawl_session = await self._ensure_manual_session(run.website)
            run.counters.session_id = run.crawl_session.id

            page = await self.repos.pages.get_by_url_in_session(run.crawl_session.id, page_url)
            if page is not None and page.status == "completed":
                chunk_count = await self.repos.chunks.count_by_page(page.id)
                run.pages[page.id] = PageSummary(
                    page_id=page.id,
                    url=page.url,
                    title=page.title,
                    status=page.status,
                    chunks_created=chunk_count,
                    extraction_quality=page.extraction_quality or 0.0,
                    token_count=page.token_count,
                )
                message = "Page already exists"
                await run.emit("completed", message, 100, current_url=page_url)
                return run.result(True, message, method="manual")

            if page is None:
                page = await self.repos.pages.create(
                    Page(
                        website_id=run.website.id,
                        crawl_session_id=run.crawl_session.id,
                        url=page_url,
                        depth_level=0,
                        priority=request.priority if request.priority is not None else manual_priority(page_url),
                        discovery_method="manual",
                        status="queued",
                    )
                )
            run.pages[page.id] = PageSummary(page_id=page.id, url=page.url, status=page.status)
            run.counters.pages_discovered = 1

            await run.emit("extraction", f"Extracting {page_url}", 25, current_url=page_url)
            await self._extract_all(run, [page])

            summary = run.pages[page.id]
            if summary.status == "processing":
                await run.emit("chunking", f"Chunking and embedding {page_url}", 50, current_url=page_url)
                refreshed = await self.repos.pages.get_by_id(page.id)
                await self._chunk_and_embed_all(run, [refreshed])

            run.crawl_session = await self._finish_session(run, complete=False)
            run.website = await self._update_website_stats(run.website.id)

            summary = run.pages[page.id]
            message = f"Page {summary.status}" + (f": {summary.error}" if summary.error else "")
            logger.info(f"=== Add page complete: {page_url} ({summary.status}) ===")
            await run.emit("completed", message, 100, current_url=page_url)
            return run.result(True, message, method="manual")

        except asyncio.CancelledError:
            logger.warning(f"Add page cancelled for {request.page_url}")
            await self._abort(run, "cancelled", "Run cancelled", close_session=False)
            raise
        except Exception as e:
            logger.exception(f"Add page failed for {request.page_url}")
            error = str(e) or type(e).__name__
            await self._abort(run, "failed", error, close_session=False)
            return run.result(False, "Pipeline failed", error=error, method="manual")

    async def _extract_all(self, run: _Run, pages: list[Page]) -> None:
        """Extract pages sequentially with a politeness delay between them."""
        total = len(pages)
        for i, page in enumerate(pages):
            summary = run.pages[page.id]
            started = time.perf_counter()
            try:
                outcome = await self.ingestor.extract_page(page)
            except Exception as e:
                logger.exception(f"Unexpected error extracting {page.url}")
                summary.status = "failed"
                summary.error = str(e) or type(e).__name__
                await self._mark_failed(page.id, summary.error)
            else:
                summary.title = outcome.page.title
                summary.status = outcome.page.status
                summary.extraction_quality = outcome.quality
                summary.token_count = outcome.token_count
                summary.error = outcome.error
            summary.processing_time_ms += int((time.perf_counter() - started) * 1000)

            if summary.status == "skipped":
                run.counters.pages_skipped += 1
            elif summary.error:
                run.counters.pages_failed += 1
                run.counters.errors.append(f"{page.url}: {summary.error}")

            await run.emit(
                "extraction",
                f"Extracted {i + 1}/{total}: {page.url}",
                25 + 25 * (i + 1) / total,
                current_url=page.url,
            )
            if i < total - 1 and self.page_delay:
                await asyncio.sleep(self.page_delay)

    async def _chunk_and_embed_all(self, run: _Run, pages: list[Page]) -> None:
        """Chunk and embed pages, a bounded number at a time."""
        total = len(pages)
        if not total:
            return
        semaphore = asyncio.Semaphore(self.concurrency)
        done = 0

        async def process(page: Page) -> None:
            nonlocal done
            summary = run.pages[page.id]
            started = time.perf_counter()
            async with semaphore:
                try:
                    outcome = await self.ingestor.chunk_and_embed(page)
                except Exception as e:
                    logger.exception(f"Unexpected error chunking {page.url}")
                    outcome = ChunkEmbedOutcome(page=page, success=False, error=str(e) or type(e).__name__)
                    await self._mark_failed(page.id, outcome.error)

            summary.status = "completed" if outcome.success else "failed"
            summary.chunks_created = outcome.chunks_created
            summary.embeddings_generated = outcome.embeddings_generated
            summary.chunk_quality = round(outcome.quality, 1)
            summary.error = outcome.error
            summary.processing_time_ms += int((time.perf_counter() - started) * 1000)

            run.counters.chunks_created += outcome.chunks_created
            run.counters.embeddings_generated += outcome.embeddings_generated
            run.counters.total_cost += outcome.cost
            if outcome.success:
                run.counters.pages_processed += 1
            else:
                run.counters.pages_failed += 1
                run.counters.errors.append(f"{page.url}: {outcome.error}")

            done += 1
            await run.emit(
                "embedding",
                f"Processed {done}/{total}: {page.url}",
                50 + 40 * done / total,
                current_url=page.url,
            )

        await asyncio.gather(*(process(page) for page in pages))

    async def _ensure_website(self, base_url: str) -> Website:
        domain = get_domain(base_url)
        website = await self.repos.websites.get_by_domain(domain)
        if website is not None:
            return website
        try:
            website = await self.repos.websites.create(
                Website(domain=domain, base_url=base_url, title=domain)
            )
            logger.info(f"Registered website {domain}")
            return website
        except DuplicateEntityError:
            # Created concurrently by another run
            website = await self.repos.websites.get_by_domain(domain)
            if website is None:
                raise
            return website

    async def _ensure_manual_session(self, website: Website) -> CrawlSession:
        crawl_session = await self.repos.sessions.get_manual_session(website.id)
        if crawl_session is not None:
            return crawl_session

        crawl_session = await self.repos.sessions.create(
            CrawlSession(
                website_id=website.id,
                max_pages=MANUAL_SESSION_MAX_PAGES,
                max_depth=0,
                is_manual=True,
                discovery_method="manual",
            )
        )
        # Manual sessions stay open in processing to collect further pages
        return await self.repos.sessions.update_status(crawl_session.id, "processing")

    async def _finish_session(self, run: _Run, complete: bool) -> CrawlSession:
        session_id = run.crawl_session.id
        completed = await self.repos.pages.count_by_session(session_id, status="completed")
        failed = await self.repos.pages.count_by_session(session_id, status="failed")
        discovered = await self.repos.pages.count_by_session(session_id)

        # Page counts are recounted; run totals are added so parallel runs on a manual session both land
        await self.repos.sessions.update_stats(
            session_id,
            pages_discovered=discovered,
            pages_completed=completed,
            pages_failed=failed,
        )
        crawl_session = await self.repos.sessions.increment_stats(
            session_id,
            chunks_created=run.counters.chunks_created,
            total_cost=run.counters.total_cost,
            processing_time_ms=run.elapsed_ms(),
        )
        if complete:
            crawl_session = await self.repos.sessions.update_status(session_id, "completed")
        return crawl_session

    async def _update_website_stats(self, website_id: str) -> Website:
        total_pages = await self.repos.pages.count_completed_by_website(website_id)
        return await self.repos.websites.update(
            website_id,
            status="active",
            total_pages=total_pages,
            last_crawled_at=datetime.now(timezone.utc),
        )

    async def _mark_failed(self, page_id: str, error: str) -> None:
        try:
            await self.repos.pages.update_status(page_id, "failed", error_message=error)
        except Exception:
            logger.exception(f"Could not mark page {page_id} as failed")

    async def _abort(self, run: _Run, status: str, error: str, close_session: bool = True) -> None:
        """Record a run-level failure or cancellation, then emit the terminal event."""
        run.counters.errors.append(error)
        try:
            if run.crawl_session is not None and close_session and not run.crawl_session.is_terminal:
                run.crawl_session = await self.repos.sessions.update_status(
                    run.crawl_session.id, status, error_message=error
                )
            if run.website is not None and status == "failed" and close_session:
                run.website = await self.repos.websites.update(run.website.id, status="error")
            elif run.website is not None and run.website.status == "crawling":
                run.website = await self.repos.websites.update(run.website.id, status="active")
        except Exception:
            # Storage may be the reason the run failed
            logger.exception("Could not record pipeline failure")
        await run.emit(status, error)
