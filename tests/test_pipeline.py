"""End-to-end pipeline runs against a simulated site and memory storage."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from sitevector.services.embeddings import EmbeddingService
from sitevector.services.pipeline import AddPageRequest, FullCrawlRequest
from sitevector.services.progress import CallbackSink
from tests.conftest import BASE_URL, FakeEmbeddingsClient, article_page, sitemap_xml

XML = "application/xml"

SITE = {
    "/sitemap.xml": (200, sitemap_xml(["/", "/about", "/docs/guide"]), XML),
    "/": article_page("Welcome", "platform", links=[("/about", "About"), ("/docs/guide", "Guide")]),
    "/about": article_page("About Us", "company"),
    "/docs/guide": article_page("Guide", "documentation"),
}


@pytest.fixture
def pipeline(make_fetcher, build_pipeline):
    return build_pipeline(make_fetcher(SITE))


@pytest.fixture
def events():
    return []


@pytest.fixture
def sink(events):
    return CallbackSink(events.append)


async def test_full_crawl_processes_every_discovered_page(pipeline, repos, sink, events):
    result = await pipeline.run_full_crawl(FullCrawlRequest(BASE_URL, max_pages=5), progress=sink)

    assert result.success, result.error
    assert result.discovery_method == "sitemap"
    assert result.summary.pages_discovered == 3
    assert result.summary.pages_processed == 3
    assert result.summary.pages_failed == 0
    assert result.summary.chunks_created >= 3
    assert result.summary.embeddings_generated == result.summary.chunks_created

    assert result.crawl_session.status == "completed"
    assert result.crawl_session.pages_completed == 3
    assert result.crawl_session.discovery_method == "sitemap"
    assert result.website.status == "active"
    assert result.website.total_pages == 3

    pages = await repos.pages.list_by_session(result.crawl_session.id)
    assert {p.status for p in pages} == {"completed"}
    assert {p.title for p in pages} == {"Welcome", "About Us", "Guide"}
    for page in pages:
        chunks = await repos.chunks.list_by_page(page.id)
        assert chunks
        assert all(c.has_embedding for c in chunks)
        assert "Copyright Example Corp" not in page.content


async def test_full_crawl_reports_monotonic_progress(pipeline, sink, events):
    await pipeline.run_full_crawl(FullCrawlRequest(BASE_URL, max_pages=5), progress=sink)

    percents = [e.percent for e in events]
    assert percents == sorted(percents)
    assert events[0].stage == "discovery" and events[0].percent == 0
    assert events[-1].stage == "completed" and events[-1].percent == 100
    assert [e for e in events if e.is_terminal] == [events[-1]]
    assert {"discovery", "extraction", "chunking", "embedding"} <= {e.stage for e in events}
    assert events[-1].counters.pages_processed == 3
    # Events are snapshots, not views of the live counters
    assert events[0].counters.pages_processed == 0


async def test_recrawl_reuses_the_website(pipeline, repos):
    first = await pipeline.run_full_crawl(FullCrawlRequest(BASE_URL, max_pages=5))
    second = await pipeline.run_full_crawl(FullCrawlRequest(BASE_URL, max_pages=5))

    assert second.website.id == first.website.id
    assert second.crawl_session.id != first.crawl_session.id
    assert second.website.total_pages == 3
    assert len(await repos.sessions.list_by_website(first.website.id)) == 2


async def test_nothing_discovered_fails_the_run(make_fetcher, build_pipeline, sink, events):
    pipeline = build_pipeline(make_fetcher({}))

    result = await pipeline.run_full_crawl(FullCrawlRequest(BASE_URL), progress=sink)

    assert not result.success
    assert "No pages discovered" in result.error
    assert result.crawl_session.status == "failed"
    assert result.crawl_session.error_message == result.error
    assert result.website.status == "error"
    assert events[-1].stage == "failed"


async def test_invalid_url_fails_without_storage(pipeline, repos):
    result = await pipeline.run_full_crawl(FullCrawlRequest("ftp://example.com"))

    assert not result.success
    assert result.website is None
    assert await repos.websites.list_all() == []


async def test_cancellation_marks_session_and_propagates(pipeline, repos, events):
    async def cancel_on_extraction(event):
        events.append(event)
        if event.stage == "extraction" and len([e for e in events if e.stage == "extraction"]) == 1:
            raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await pipeline.run_full_crawl(FullCrawlRequest(BASE_URL, max_pages=5), progress=CallbackSink(cancel_on_extraction))

    website = await repos.websites.get_by_domain("example.com")
    sessions = await repos.sessions.list_by_website(website.id)
    assert [s.status for s in sessions] == ["cancelled"]
    assert website.status == "active"
    assert events[-1].stage == "cancelled"


async def test_embedding_failures_mark_pages_failed(pipeline, repos, embeddings_client):
    embeddings_client.fail_calls = set(range(1, 100))

    result = await pipeline.run_full_crawl(FullCrawlRequest(BASE_URL, max_pages=5))

    assert result.success
    assert result.summary.pages_processed == 0
    assert result.summary.pages_failed == 3
    assert all(p.status == "failed" for p in result.pages)
    assert all("Rate limit exceeded" in p.error for p in result.pages)
    assert result.website.total_pages == 0

    # Chunks were kept without vectors and can be embedded later
    embeddings_client.fail_calls = set()
    backfill = await pipeline.ingestor.embed_missing()

    assert backfill.attempted == result.summary.chunks_created
    assert backfill.embedded == backfill.attempted
    assert await repos.chunks.list_without_embeddings() == []


async def test_unreachable_page_is_recorded_and_others_continue(make_fetcher, build_pipeline):
    routes = dict(SITE)
    routes["/about"] = (500, "Internal error", "text/html")
    pipeline = build_pipeline(make_fetcher(routes))

    result = await pipeline.run_full_crawl(FullCrawlRequest(BASE_URL, max_pages=5))

    assert result.success
    assert result.summary.pages_processed == 2
    assert result.summary.pages_failed == 1
    failed = [p for p in result.pages if p.status == "failed"]
    assert [p.url for p in failed] == [f"{BASE_URL}/about"]


async def test_add_page_is_idempotent(pipeline, repos, sink, events):
    request = AddPageRequest(BASE_URL, f"{BASE_URL}/about")

    first = await pipeline.run_add_page(request, progress=sink)
    second = await pipeline.run_add_page(request)

    assert first.success and second.success
    assert first.discovery_method == "manual"
    assert first.pages[0].status == "completed"
    assert first.pages[0].chunks_created >= 1
    assert second.message == "Page already exists"
    assert second.pages[0].page_id == first.pages[0].page_id
    assert second.pages[0].chunks_created == first.pages[0].chunks_created

    crawl_session = first.crawl_session
    assert crawl_session.is_manual
    assert crawl_session.status == "processing"
    assert second.crawl_session.id == crawl_session.id
    assert await repos.pages.count_by_session(crawl_session.id) == 1
    assert first.website.total_pages == 1
    assert events[-1].stage == "completed"


async def test_add_page_uses_manual_priority(pipeline, repos):
    default = await pipeline.run_add_page(AddPageRequest(BASE_URL, f"{BASE_URL}/about"))
    explicit = await pipeline.run_add_page(AddPageRequest(BASE_URL, f"{BASE_URL}/docs/guide", priority=12))

    about = await repos.pages.get_by_id(default.pages[0].page_id)
    guide = await repos.pages.get_by_id(explicit.pages[0].page_id)
    assert about.priority == 90
    assert about.discovery_method == "manual"
    assert guide.priority == 12


async def test_add_page_rejects_foreign_host(pipeline, repos, sink, events):
    result = await pipeline.run_add_page(AddPageRequest(BASE_URL, "https://elsewhere.org/about"), progress=sink)

    assert not result.success
    assert "does not belong" in result.error
    assert await repos.websites.list_all() == []
    assert events[-1].stage == "failed"


async def test_malformed_homepage_link_does_not_abort_the_crawl(make_fetcher, build_pipeline):
    routes = dict(SITE)
    routes["/"] = article_page(
        "Welcome",
        "platform",
        links=[("/about", "About"), ("/docs/guide", "Guide"), ("http://example.com:abc/x", "Broken")],
    )
    pipeline = build_pipeline(make_fetcher(routes))

    result = await pipeline.run_full_crawl(FullCrawlRequest(BASE_URL, max_pages=5))

    assert result.success, result.error
    assert result.summary.pages_processed == 3
    assert result.summary.pages_failed == 0


async def test_non_html_page_is_counted_as_skipped(make_fetcher, build_pipeline):
    routes = dict(SITE)
    routes["/docs/guide"] = (200, "%PDF-1.4", "application/pdf")
    pipeline = build_pipeline(make_fetcher(routes))

    result = await pipeline.run_full_crawl(FullCrawlRequest(BASE_URL, max_pages=5))

    assert result.success
    assert result.summary.pages_processed == 2
    assert result.summary.pages_failed == 0
    assert result.summary.pages_skipped == 1
    assert [p.url for p in result.pages if p.status == "skipped"] == [f"{BASE_URL}/docs/guide"]


async def test_smaller_embedding_model_is_stored(settings, make_fetcher, build_pipeline, repos):
    small = settings.model_copy(update={"embedding_dimensions": 768})
    embedder = EmbeddingService(small, FakeEmbeddingsClient(dimensions=768))
    pipeline = build_pipeline(make_fetcher(SITE), settings=small, embedder=embedder)

    result = await pipeline.run_add_page(AddPageRequest(BASE_URL, f"{BASE_URL}/about"))

    assert result.success, result.error
    assert result.pages[0].status == "completed"
    chunks = await repos.chunks.list_by_page(result.pages[0].page_id)
    assert chunks
    assert all(len(c.embedding) == 768 for c in chunks)


async def test_failed_chunk_write_keeps_previous_chunks(pipeline, repos, monkeypatch):
    added = await pipeline.run_add_page(AddPageRequest(BASE_URL, f"{BASE_URL}/about"))
    page = await repos.pages.get_by_id(added.pages[0].page_id)
    before = [c.id for c in await repos.chunks.list_by_page(page.id)]
    assert before

    monkeypatch.setattr(repos.chunks, "create_batch", AsyncMock(side_effect=RuntimeError("disk full")))

    with pytest.raises(RuntimeError, match="disk full"):
        await pipeline.ingestor.chunk_and_embed(page)

    assert [c.id for c in await repos.chunks.list_by_page(page.id)] == before


async def test_parallel_add_pages_all_count_towards_the_session(pipeline, repos):
    first = await pipeline.run_add_page(AddPageRequest(BASE_URL, f"{BASE_URL}/"))
    second, third = await asyncio.gather(
        pipeline.run_add_page(AddPageRequest(BASE_URL, f"{BASE_URL}/about")),
        pipeline.run_add_page(AddPageRequest(BASE_URL, f"{BASE_URL}/docs/guide")),
    )

    assert first.success and second.success and third.success
    crawl_session = await repos.sessions.get_by_id(first.crawl_session.id)
    expected = sum(r.summary.chunks_created for r in (first, second, third))
    assert crawl_session.chunks_created == expected
    assert crawl_session.pages_completed == 3
