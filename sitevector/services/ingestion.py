"""Per-page processing: extraction, then chunking and embedding.

Every failure here is recorded on the page and returned as data; only
storage errors propagate.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from sitevector.config import Settings
from sitevector.models import Chunk, Page
from sitevector.repositories.base import Repositories
from sitevector.services.chunker import ChunkingOptions, TextChunker
from sitevector.services.embeddings import EmbeddingService
from sitevector.services.extractor import ContentExtractor
from sitevector.services.fetcher import HtmlFetcher

logger = logging.getLogger(__name__)


@dataclass
class ExtractionOutcome:
    page: Page
    success: bool
    quality: float = 0.0
    token_count: int = 0
    error: str | None = None


@dataclass
class ChunkEmbedOutcome:
    page: Page
    success: bool
    chunks_created: int = 0
    embeddings_generated: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    quality: float = 0.0
    processing_time_ms: int = 0
    error: str | None = None


@dataclass
class BackfillOutcome:
    attempted: int = 0
    embedded: int = 0
    failed: int = 0
    cost: float = 0.0


class PageIngestor:
    """Turns a stored page into content, chunks and embeddings."""

    def __init__(
        self,
        settings: Settings,
        repositories: Repositories,
        fetcher: HtmlFetcher,
        extractor: ContentExtractor,
        chunker: TextChunker,
        embedder: EmbeddingService,
    ):
        self.settings = settings
        self.repos = repositories
        self.fetcher = fetcher
        self.extractor = extractor
        self.chunker = chunker
        self.embedder = embedder
        self.chunking_options = ChunkingOptions.from_settings(settings)

    async def extract_page(self, page: Page) -> ExtractionOutcome:
        """Fetch and extract a page, storing its content.

        Fetch failures mark the page ``failed`` (or ``skipped`` for non-HTML
        responses); extraction failures mark it ``failed``.
        """
        page = await self.repos.pages.update_status(page.id, "processing")

        fetched = await self.fetcher.fetch(page.url)
        if not fetched.success:
            status = "skipped" if fetched.status_code and fetched.status_code < 400 else "failed"
            page = await self.repos.pages.update_content(
                page.id,
                status=status,
                error_message=fetched.error,
                http_status=fetched.status_code,
                content_type=fetched.content_type,
                response_time_ms=fetched.response_time_ms,
                crawled_at=datetime.now(timezone.utc),
            )
            logger.warning(f"Skipping {page.url}: {fetched.error}")
            return ExtractionOutcome(page=page, success=False, error=fetched.error)

        extracted = self.extractor.extract(fetched.html, fetched.final_url or page.url)
        if not extracted.success:
            page = await self.repos.pages.update_content(
                page.id,
                status="failed",
                error_message=extracted.error,
                title=extracted.title or page.title,
                raw_html=fetched.html,
                http_status=fetched.status_code,
                content_type=fetched.content_type,
                response_time_ms=fetched.response_time_ms,
                final_url=fetched.final_url,
                extraction_method=extracted.method,
                extraction_quality=0.0,
                crawled_at=datetime.now(timezone.utc),
            )
            logger.warning(f"Extraction failed for {page.url}: {extracted.error}")
            return ExtractionOutcome(page=page, success=False, error=extracted.error)

        metadata = extracted.metadata
        page = await self.repos.pages.update_content(
            page.id,
            title=extracted.title,
            content=extracted.clean_text,
            raw_html=fetched.html,
            token_count=extracted.estimated_tokens,
            crawled_at=datetime.now(timezone.utc),
            http_status=fetched.status_code,
            content_type=fetched.content_type,
            response_time_ms=fetched.response_time_ms,
            final_url=fetched.final_url,
            extraction_method=extracted.method,
            extraction_quality=float(extracted.quality_score),
            word_count=extracted.word_count,
            language=metadata.language,
            author=metadata.author,
            description=metadata.description,
            canonical_url=metadata.canonical_url,
            extra={
                "quality_reasons": extracted.quality_reasons,
                "heading_count": len(metadata.headings),
                "link_count": len(metadata.links),
                "image_count": len(metadata.images),
            },
        )
        logger.info(
            f"Extracted {page.url}: {extracted.word_count} words via {extracted.method} "
            f"(quality {extracted.quality_score})"
        )
        return ExtractionOutcome(
            page=page,
            success=True,
            quality=float(extracted.quality_score),
            token_count=extracted.estimated_tokens,
        )

    async def chunk_and_embed(self, page: Page) -> ChunkEmbedOutcome:
        """Chunk a page's content, embed the chunks and store them.

        Existing chunks for the page are replaced. The page ends up
        ``completed`` when at least one chunk was embedded, else ``failed``.
        """
        started = time.perf_counter()

        if not page.has_content:
            error = "No content available for chunking"
            page = await self.repos.pages.update_status(page.id, "failed", error_message=error)
            return ChunkEmbedOutcome(page=page, success=False, error=error)

        chunking = self.chunker.chunk(page.content, self.chunking_options)
        if not chunking.success:
            page = await self.repos.pages.update_status(page.id, "failed", error_message=chunking.error)
            return ChunkEmbedOutcome(page=page, success=False, error=chunking.error)

        embedded = await self.embedder.embed_batch([c.content for c in chunking.chunks])

        chunks = []
        for text_chunk, result in zip(chunking.chunks, embedded.results):
            chunks.append(
                Chunk(
                    page_id=page.id,
                    content=text_chunk.content,
                    chunk_index=text_chunk.index,
                    token_count=text_chunk.token_count,
                    start_position=text_chunk.start_position,
                    end_position=text_chunk.end_position,
                    embedding=result.embedding if result.success else None,
                    embedding_model=embedded.model if result.success else None,
                    heading_text=text_chunk.heading_text,
                    heading_level=text_chunk.heading_level,
                    paragraph_count=text_chunk.paragraph_count,
                    sentence_count=text_chunk.sentence_count,
                    overlap_start=text_chunk.overlap_start,
                    overlap_end=text_chunk.overlap_end,
                    split_reason=text_chunk.split_reason,
                    quality_score=float(text_chunk.quality_score),
                    completeness=float(text_chunk.completeness),
                    coherence=float(text_chunk.coherence),
                    extra={
                        "contains_lists": text_chunk.contains_lists,
                        "contains_links": text_chunk.contains_links,
                        **({"embedding_error": result.error} if not result.success else {}),
                    },
                )
            )

        await self.repos.chunks.replace_for_page(page.id, chunks)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        outcome = ChunkEmbedOutcome(
            page=page,
            success=embedded.success_count > 0,
            chunks_created=len(chunks),
            embeddings_generated=embedded.success_count,
            tokens_used=embedded.total_tokens,
            cost=embedded.cost_estimate,
            quality=chunking.average_quality,
            processing_time_ms=elapsed_ms,
        )

        if outcome.success:
            outcome.page = await self.repos.pages.update_status(page.id, "completed")
        else:
            first_error = next((r.error for r in embedded.results if r.error), "unknown error")
            outcome.error = f"Embedding failed: {first_error}"
            outcome.page = await self.repos.pages.update_status(page.id, "failed", error_message=outcome.error)

        logger.info(
            f"Stored {outcome.chunks_created} chunks for {page.url} "
            f"({outcome.embeddings_generated} embedded, ${outcome.cost:.6f})"
        )
        return outcome

    async def embed_missing(self, limit: int = 100) -> BackfillOutcome:
        """Embed stored chunks whose embedding is still missing."""
        chunks = await self.repos.chunks.list_without_embeddings(limit=limit)
        outcome = BackfillOutcome(attempted=len(chunks))
        if not chunks:
            return outcome

        embedded = await self.embedder.embed_batch([c.content for c in chunks])
        for chunk, result in zip(chunks, embedded.results):
            if result.success:
                await self.repos.chunks.update_embedding(chunk.id, result.embedding, embedded.model)
                outcome.embedded += 1
            else:
                outcome.failed += 1
        outcome.cost = embedded.cost_estimate
        logger.info(f"Backfilled {outcome.embedded}/{outcome.attempted} chunk embeddings")
        return outcome
