"""Shared fixtures: settings, simulated websites, a fake embeddings API and memory storage."""

import re
import zlib
from types import SimpleNamespace

import httpx
import pytest

from sitevector.config import Settings
from sitevector.repositories import memory_repositories
from sitevector.services.chunker import ChunkingOptions, TextChunker
from sitevector.services.discovery import PageDiscoveryService
from sitevector.services.embeddings import EmbeddingService
from sitevector.services.extractor import ContentExtractor
from sitevector.services.fetcher import HtmlFetcher
from sitevector.services.ingestion import PageIngestor
from sitevector.services.pipeline import CrawlPipeline
from sitevector.services.search import SearchService

DIMENSIONS = 1536
BASE_URL = "https://example.com"


def text_vector(text: str, dimensions: int = DIMENSIONS) -> list[float]:
    """Bag-of-words vector: identical word sets give identical vectors."""
    vector = [0.0] * dimensions
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        vector[zlib.crc32(word.encode()) % dimensions] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


class FakeEmbeddingsClient:
    """Stands in for ``AsyncOpenAI``; records every embeddings call."""

    def __init__(self, fail_calls: set[int] | None = None, dimensions: int = DIMENSIONS):
        self.calls: list[dict] = []
        self.fail_calls = fail_calls or set()
        self.dimensions = dimensions
        self.embeddings = SimpleNamespace(create=self.create)

    async def create(self, model: str, input: list[str], **kwargs):
        self.calls.append({"model": model, "input": list(input), **kwargs})
        if len(self.calls) in self.fail_calls:
            raise RuntimeError("Rate limit exceeded")

        data = [
            SimpleNamespace(index=i, embedding=text_vector(text, self.dimensions))
            for i, text in enumerate(input)
        ]
        # The API does not promise ordering; items carry their index
        data.reverse()
        tokens = sum(len(text.split()) for text in input)
        return SimpleNamespace(data=data, usage=SimpleNamespace(total_tokens=tokens))


def paragraph(topic: str, sentences: int = 8) -> str:
    return " ".join(
        f"Our {topic} team explains detail number {i} with clear and practical examples."
        for i in range(1, sentences + 1)
    )


def article_page(title: str, topic: str, links: list[tuple[str, str]] = (), paragraphs: int = 2) -> str:
    """A typical page: navigation, header, footer and a single article."""
    nav = "".join(f'<a href="{href}">{text}</a>' for href, text in links)
    body = "".join(f"<p>{paragraph(topic)}</p>" for _ in range(paragraphs))
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <title>{title} | Example Corp</title>
  <meta name="description" content="About {topic}">
  <script>var tracking = true;</script>
</head>
<body>
  <header><nav>{nav}</nav></header>
  <main><article><h1>{title}</h1>{body}</article></main>
  <footer><p>Copyright Example Corp. All rights reserved.</p></footer>
</body>
</html>"""


def sitemap_xml(paths: list[str], base_url: str = BASE_URL) -> str:
    urls = "".join(
        f"<url><loc>{base_url}{path}</loc><lastmod>2024-01-15</lastmod></url>" for path in paths
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{urls}</urlset>'
    )


def site_transport(routes: dict) -> httpx.MockTransport:
    """Serve a fake site keyed by path.

    A string value is served as HTML. A tuple is (status, body, content type).
    An exception instance is raised. Unknown paths return 404.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        route = routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, html="<html><body>Not found</body></html>")
        if isinstance(route, Exception):
            raise route
        if isinstance(route, str):
            return httpx.Response(200, html=route)
        status, body, content_type = route
        headers = {"content-type": content_type}
        if status in (301, 302):
            headers["location"] = body
            body = ""
        return httpx.Response(status, text=body, headers=headers)

    return httpx.MockTransport(handler)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        page_delay_seconds=0,
        embedding_batch_delay_seconds=0,
        discovery_timeout_seconds=5,
        fetch_timeout_seconds=5,
    )


@pytest.fixture
async def make_fetcher(settings):
    """Factory building an ``HtmlFetcher`` over a simulated site."""
    clients: list[httpx.AsyncClient] = []

    def factory(routes: dict) -> HtmlFetcher:
        client = httpx.AsyncClient(
            transport=site_transport(routes),
            follow_redirects=True,
            max_redirects=settings.max_redirects,
        )
        clients.append(client)
        return HtmlFetcher(settings, client)

    yield factory

    for client in clients:
        await client.aclose()


@pytest.fixture
def embeddings_client() -> FakeEmbeddingsClient:
    return FakeEmbeddingsClient()


@pytest.fixture
def embedder(settings, embeddings_client) -> EmbeddingService:
    return EmbeddingService(settings, embeddings_client)


@pytest.fixture
def repos():
    return memory_repositories()


@pytest.fixture
def build_pipeline(settings, repos, embedder):
    """Factory wiring a full pipeline against a simulated site and memory storage."""

    def factory(
        fetcher: HtmlFetcher,
        settings: Settings = settings,
        embedder: EmbeddingService = embedder,
    ) -> CrawlPipeline:
        ingestor = PageIngestor(
            settings,
            repos,
            fetcher=fetcher,
            extractor=ContentExtractor(),
            chunker=TextChunker(ChunkingOptions.from_settings(settings)),
            embedder=embedder,
        )
        return CrawlPipeline(
            settings,
            repos,
            discovery=PageDiscoveryService(settings, fetcher),
            ingestor=ingestor,
        )

    return factory


@pytest.fixture
def search_service(settings, embedder, repos) -> SearchService:
    return SearchService(settings, embedder, repos.chunks)
