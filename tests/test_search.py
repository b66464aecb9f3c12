"""Tests for similarity search and context building."""

import pytest

from sitevector.exceptions import RetrievalError
from sitevector.models import Chunk, CrawlSession, Page, Website
from sitevector.repositories.base import ChunkMatch
from sitevector.services.embeddings import EmbeddingService
from sitevector.services.search import SearchService
from tests.conftest import FakeEmbeddingsClient, text_vector


async def store_chunks(repos, domain, texts):
    website = await repos.websites.create(Website(domain=domain, base_url=f"https://{domain}/"))
    crawl_session = await repos.sessions.create(CrawlSession(website_id=website.id))
    page = await repos.pages.create(
        Page(website_id=website.id, crawl_session_id=crawl_session.id, url=f"https://{domain}/pricing", title="Pricing")
    )
    await repos.chunks.create_batch([
        Chunk(page_id=page.id, content=text, chunk_index=i, embedding=text_vector(text))
        for i, text in enumerate(texts)
    ])
    return website


def match(content, similarity=0.9, title="Pricing", url="https://example.com/pricing"):
    return ChunkMatch(
        chunk_id="c",
        page_id="p",
        website_id="w",
        url=url,
        title=title,
        content=content,
        chunk_index=0,
        similarity=similarity,
    )


async def test_results_are_ranked_and_thresholded(repos, search_service):
    await store_chunks(repos, "example.com", ["pricing plans", "pricing plans and support", "company history team"])

    response = await search_service.search("pricing plans", threshold=0.7)

    assert [m.content for m in response.results] == ["pricing plans", "pricing plans and support"]
    assert response.results[0].similarity == pytest.approx(1.0)
    assert response.results[1].similarity == pytest.approx(0.7071, abs=1e-3)
    assert response.query == "pricing plans"
    assert response.search_time_ms >= 0


async def test_search_can_be_scoped_to_a_website(repos, search_service):
    first = await store_chunks(repos, "example.com", ["pricing plans"])
    await store_chunks(repos, "other.org", ["pricing plans"])

    scoped = await search_service.search("pricing plans", website_id=first.id)
    everywhere = await search_service.search("pricing plans")

    assert [m.website_id for m in scoped.results] == [first.id]
    assert len(everywhere.results) == 2


async def test_limit_caps_results(repos, search_service):
    await store_chunks(repos, "example.com", ["pricing plans"] * 4)

    response = await search_service.search("pricing plans", limit=2)

    assert len(response.results) == 2


@pytest.mark.parametrize("query", ["", "   "])
async def test_empty_query_is_rejected(search_service, query):
    with pytest.raises(RetrievalError):
        await search_service.search(query)


async def test_embedding_failure_raises(settings, repos):
    embedder = EmbeddingService(settings, FakeEmbeddingsClient(fail_calls={1}))
    service = SearchService(settings, embedder, repos.chunks)

    with pytest.raises(RetrievalError, match="Failed to embed query"):
        await service.search("pricing plans")


def test_build_context_numbers_sources():
    context = SearchService.build_context([
        match("Plans start at ten dollars."),
        match("Founded in 2010.", title=None, url="https://example.com/about"),
    ])

    assert context == (
        "--- Source 1 ---\n"
        "Title: Pricing\n"
        "URL: https://example.com/pricing\n"
        "Content: Plans start at ten dollars.\n\n"
        "--- Source 2 ---\n"
        "Title: Untitled\n"
        "URL: https://example.com/about\n"
        "Content: Founded in 2010."
    )
    assert SearchService.build_context([]) == ""


def test_sources_truncate_previews():
    long_text = "word " * 100
    sources = SearchService.sources([match(long_text, similarity=0.876543), match("short")])

    assert sources[0]["preview"] == long_text[:150] + "..."
    assert sources[0]["similarity"] == 0.8765
    assert sources[1]["preview"] == "short"
    assert sources[1]["url"] == "https://example.com/pricing"
