"""Similarity search over stored chunks."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from sitevector.config import Settings
from sitevector.exceptions import RetrievalError
from sitevector.repositories.base import ChunkMatch, ChunkRepository
from sitevector.services.embeddings import EmbeddingService

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 150


@dataclass
class SearchResponse:
    query: str
    results: list[ChunkMatch] = field(default_factory=list)
    search_time_ms: int = 0


class SearchService:
    """Embeds a query and returns the most similar chunks."""

    def __init__(self, settings: Settings, embedder: EmbeddingService, chunks: ChunkRepository):
        self.embedder = embedder
        self.chunks = chunks
        self.default_limit = settings.search_default_limit
        self.default_threshold = settings.search_similarity_threshold

    async def search(
        self,
        query: str,
        limit: int | None = None,
        threshold: float | None = None,
        website_id: str | None = None,
        page_id: str | None = None,
    ) -> SearchResponse:
        """Find chunks similar to ``query``.

        Results are ordered by similarity (highest first) and all meet the
        threshold.

        Raises:
            RetrievalError: if the query is empty or could not be embedded.
        """
        if not query or not query.strip():
            raise RetrievalError("Query is empty")

        limit = limit or self.default_limit
        threshold = self.default_threshold if threshold is None else threshold
        started = time.perf_counter()

        embedded = await self.embedder.embed(query)
        if not embedded.success:
            raise RetrievalError(f"Failed to embed query: {embedded.error}")

        matches = await self.chunks.search_similar(
            embedded.embedding,
            limit=limit,
            threshold=threshold,
            website_id=website_id,
            page_id=page_id,
        )
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(f"Search returned {len(matches)} chunks in {elapsed_ms}ms")
        return SearchResponse(query=query, results=matches, search_time_ms=elapsed_ms)

    @staticmethod
    def build_context(matches: list[ChunkMatch]) -> str:
        """Render matches as numbered source blocks for a prompt."""
        if not matches:
            return ""

        parts = []
        for i, match in enumerate(matches, start=1):
            parts.append(
                f"--- Source {i} ---\n"
                f"Title: {match.title or 'Untitled'}\n"
                f"URL: {match.url}\n"
                f"Content: {match.content}"
            )
        return "\n\n".join(parts)

    @staticmethod
    def sources(matches: list[ChunkMatch]) -> list[dict[str, Any]]:
        sources = []
        for match in matches:
            preview = match.content
            if len(preview) > PREVIEW_CHARS:
                preview = preview[:PREVIEW_CHARS] + "..."
            sources.append({
                "url": match.url,
                "title": match.title,
                "similarity": round(match.similarity, 4),
                "preview": preview,
            })
        return sources
