"""Wiring of clients, repositories and services."""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx
from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncEngine

from sitevector.config import Settings
from sitevector.database import build_engine, build_session_factory
from sitevector.repositories import Repositories, postgres_repositories
from sitevector.services.chunker import ChunkingOptions, TextChunker
from sitevector.services.discovery import PageDiscoveryService
from sitevector.services.embeddings import EmbeddingService
from sitevector.services.extractor import ContentExtractor
from sitevector.services.fetcher import HtmlFetcher, build_http_client
from sitevector.services.ingestion import PageIngestor
from sitevector.services.pipeline import CrawlPipeline
from sitevector.services.progress import NullSink, ProgressSink, RedisProgressSink
from sitevector.services.search import SearchService

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything a command needs for one process lifetime."""
    settings: Settings
    engine: AsyncEngine
    repositories: Repositories
    pipeline: CrawlPipeline
    ingestor: PageIngestor
    search: SearchService
    progress: ProgressSink


def build_pipeline(
    settings: Settings,
    repositories: Repositories,
    http_client: httpx.AsyncClient,
    openai_client: AsyncOpenAI,
) -> tuple[CrawlPipeline, PageIngestor, SearchService]:
    """Assemble the pipeline and search service from injected clients."""
    fetcher = HtmlFetcher(settings, http_client)
    embedder = EmbeddingService(settings, openai_client)
    ingestor = PageIngestor(
        settings,
        repositories,
        fetcher=fetcher,
        extractor=ContentExtractor(),
        chunker=TextChunker(ChunkingOptions.from_settings(settings)),
        embedder=embedder,
    )
    pipeline = CrawlPipeline(
        settings,
        repositories,
        discovery=PageDiscoveryService(settings, fetcher),
        ingestor=ingestor,
    )
    search = SearchService(settings, embedder, repositories.chunks)
    return pipeline, ingestor, search


@asynccontextmanager
async def open_runtime(settings: Settings) -> AsyncIterator[Runtime]:
    """Open database, HTTP, OpenAI and optional Redis clients; close them on exit."""
    engine = build_engine(settings)
    http_client = build_http_client(settings)
    openai_client = AsyncOpenAI(api_key=settings.openai_api_key)
    progress: ProgressSink = NullSink()
    redis_sink = None
    if settings.redis_url:
        redis_sink = RedisProgressSink.from_url(settings.redis_url, ttl=settings.progress_ttl_seconds)
        progress = redis_sink

    try:
        repositories = postgres_repositories(
            build_session_factory(engine), batch_size=settings.storage_batch_size
        )
        pipeline, ingestor, search = build_pipeline(settings, repositories, http_client, openai_client)
        yield Runtime(
            settings=settings,
            engine=engine,
            repositories=repositories,
            pipeline=pipeline,
            ingestor=ingestor,
            search=search,
            progress=progress,
        )
    finally:
        if redis_sink is not None:
            await redis_sink.close()
        await openai_client.close()
        await http_client.aclose()
        await engine.dispose()
        logger.debug("Runtime closed")
