"""In-memory repository implementations.

Same semantics as the PostgreSQL adapters, held in process dictionaries.
Used by the test suite and for dry runs without a database.
"""

from datetime import datetime, timezone
from typing import Any

from sitevector.exceptions import DuplicateEntityError, NotFoundError
from sitevector.models import Chunk, CrawlSession, Page, Website
from sitevector.repositories.base import (
    ChunkMatch,
    ChunkStatistics,
    INCREMENTABLE_SESSION_FIELDS,
    Repositories,
    apply_fields,
    check_order_field,
)
from sitevector.services.embeddings import cosine_similarity

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class InMemoryStore:
    """Shared tables so that cascades can cross repositories."""

    def __init__(self):
        self.websites: dict[str, Website] = {}
        self.sessions: dict[str, CrawlSession] = {}
        self.pages: dict[str, Page] = {}
        self.chunks: dict[str, Chunk] = {}


class InMemoryWebsiteRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create(self, website: Website) -> Website:
        if await self.get_by_domain(website.domain):
            raise DuplicateEntityError(f"Website {website.domain} already exists")
        self.store.websites[website.id] = website
        return website

    async def get_by_id(self, website_id: str) -> Website | None:
        return self.store.websites.get(website_id)

    async def get_by_domain(self, domain: str) -> Website | None:
        for website in self.store.websites.values():
            if website.domain == domain:
                return website
        return None

    async def update(self, website_id: str, **fields: Any) -> Website:
        website = self.store.websites.get(website_id)
        if website is None:
            raise NotFoundError(f"Website {website_id} not found")
        apply_fields(website, fields)
        website.updated_at = datetime.now(timezone.utc)
        return website

    async def list_all(self, limit: int = 50, offset: int = 0) -> list[Website]:
        websites = sorted(self.store.websites.values(), key=lambda w: w.created_at, reverse=True)
        return websites[offset:offset + limit]

    async def delete(self, website_id: str) -> bool:
        if self.store.websites.pop(website_id, None) is None:
            return False
        session_ids = {s.id for s in self.store.sessions.values() if s.website_id == website_id}
        page_ids = {p.id for p in self.store.pages.values() if p.crawl_session_id in session_ids}
        for chunk_id in [c.id for c in self.store.chunks.values() if c.page_id in page_ids]:
            del self.store.chunks[chunk_id]
        for page_id in page_ids:
            del self.store.pages[page_id]
        for session_id in session_ids:
            del self.store.sessions[session_id]
        return True


class InMemoryCrawlSessionRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    def _get(self, session_id: str) -> CrawlSession:
        crawl_session = self.store.sessions.get(session_id)
        if crawl_session is None:
            raise NotFoundError(f"Crawl session {session_id} not found")
        return crawl_session

    async def create(self, crawl_session: CrawlSession) -> CrawlSession:
        if crawl_session.website_id not in self.store.websites:
            raise NotFoundError(f"Website {crawl_session.website_id} not found")
        self.store.sessions[crawl_session.id] = crawl_session
        return crawl_session

    async def get_by_id(self, session_id: str) -> CrawlSession | None:
        return self.store.sessions.get(session_id)

    async def get_manual_session(self, website_id: str) -> CrawlSession | None:
        candidates = [
            s for s in self.store.sessions.values()
            if s.website_id == website_id and s.is_manual and not s.is_terminal
        ]
        candidates.sort(key=lambda s: s.created_at)
        return candidates[0] if candidates else None

    async def update_status(
        self,
        session_id: str,
        status: str,
        error_message: str | None = None,
    ) -> CrawlSession:
        crawl_session = self._get(session_id)
        crawl_session.transition_to(status)
        if error_message is not None:
            crawl_session.error_message = error_message
        crawl_session.updated_at = datetime.now(timezone.utc)
        return crawl_session

    async def update_stats(self, session_id: str, **fields: Any) -> CrawlSession:
        crawl_session = self._get(session_id)
        apply_fields(crawl_session, fields)
        crawl_session.updated_at = datetime.now(timezone.utc)
        return crawl_session

    async def increment_stats(self, session_id: str, **deltas: float) -> CrawlSession:
        crawl_session = self._get(session_id)
        for key, delta in deltas.items():
            if key not in INCREMENTABLE_SESSION_FIELDS:
                raise ValueError(f"CrawlSession has no counter {key!r}")
            setattr(crawl_session, key, (getattr(crawl_session, key) or 0) + delta)
        crawl_session.updated_at = datetime.now(timezone.utc)
        return crawl_session

    async def list_by_website(self, website_id: str) -> list[CrawlSession]:
        sessions = [s for s in self.store.sessions.values() if s.website_id == website_id]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)


class InMemoryPageRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    def _get(self, page_id: str) -> Page:
        page = self.store.pages.get(page_id)
        if page is None:
            raise NotFoundError(f"Page {page_id} not found")
        return page

    async def create(self, page: Page) -> Page:
        if await self.get_by_url_in_session(page.crawl_session_id, page.url):
            raise DuplicateEntityError(f"Page {page.url} already exists in session {page.crawl_session_id}")
        self.store.pages[page.id] = page
        return page

    async def create_batch(self, pages: list[Page]) -> list[Page]:
        created = []
        for page in pages:
            if await self.get_by_url_in_session(page.crawl_session_id, page.url):
                continue
            self.store.pages[page.id] = page
            created.append(page)
        return created

    async def get_by_id(self, page_id: str) -> Page | None:
        return self.store.pages.get(page_id)

    async def get_by_url_in_session(self, session_id: str, url: str) -> Page | None:
        for page in self.store.pages.values():
            if page.crawl_session_id == session_id and page.url == url:
                return page
        return None

    async def update_content(self, page_id: str, **fields: Any) -> Page:
        page = self._get(page_id)
        apply_fields(page, fields)
        page.updated_at = datetime.now(timezone.utc)
        return page

    async def update_status(
        self,
        page_id: str,
        status: str,
        error_message: str | None = None,
    ) -> Page:
        page = self._get(page_id)
        page.status = status
        page.error_message = error_message
        page.updated_at = datetime.now(timezone.utc)
        return page

    async def list_by_session(
        self,
        session_id: str,
        status: str | None = None,
        has_content: bool | None = None,
        limit: int | None = None,
        offset: int = 0,
        order_by: str = "priority",
        descending: bool = True,
    ) -> list[Page]:
        check_order_field(order_by)
        pages = [p for p in self.store.pages.values() if p.crawl_session_id == session_id]
        if status is not None:
            pages = [p for p in pages if p.status == status]
        if has_content is not None:
            pages = [p for p in pages if p.has_content == has_content]

        def key(page: Page):
            value = getattr(page, order_by)
            if value is None:
                return _EPOCH if order_by.endswith("_at") else 0
            return value

        pages.sort(key=key, reverse=descending)
        end = None if limit is None else offset + limit
        return pages[offset:end]

    async def count_by_session(self, session_id: str, status: str | None = None) -> int:
        return len(await self.list_by_session(session_id, status=status))

    async def count_completed_by_website(self, website_id: str) -> int:
        return len({
            p.url for p in self.store.pages.values()
            if p.website_id == website_id and p.status == "completed"
        })


class InMemoryChunkRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create(self, chunk: Chunk) -> Chunk:
        self.store.chunks[chunk.id] = chunk
        return chunk

    async def create_batch(self, chunks: list[Chunk]) -> list[Chunk]:
        for chunk in chunks:
            self.store.chunks[chunk.id] = chunk
        return list(chunks)

    async def list_by_page(self, page_id: str) -> list[Chunk]:
        chunks = [c for c in self.store.chunks.values() if c.page_id == page_id]
        return sorted(chunks, key=lambda c: c.chunk_index)

    async def count_by_page(self, page_id: str) -> int:
        return len(await self.list_by_page(page_id))

    async def delete_by_page(self, page_id: str) -> int:
        chunk_ids = [c.id for c in self.store.chunks.values() if c.page_id == page_id]
        for chunk_id in chunk_ids:
            del self.store.chunks[chunk_id]
        return len(chunk_ids)

    async def replace_for_page(self, page_id: str, chunks: list[Chunk]) -> list[Chunk]:
        previous = {c.id: c for c in self.store.chunks.values() if c.page_id == page_id}
        await self.delete_by_page(page_id)
        try:
            return await self.create_batch(chunks)
        except Exception:
            # Roll back to the page's previous chunks
            for chunk in chunks:
                self.store.chunks.pop(chunk.id, None)
            self.store.chunks.update(previous)
            raise

    async def list_without_embeddings(self, limit: int = 100) -> list[Chunk]:
        missing = [c for c in self.store.chunks.values() if c.embedding is None]
        missing.sort(key=lambda c: (c.created_at, c.chunk_index))
        return missing[:limit]

    async def update_embedding(self, chunk_id: str, embedding: list[float], model: str) -> None:
        chunk = self.store.chunks.get(chunk_id)
        if chunk is None:
            raise NotFoundError(f"Chunk {chunk_id} not found")
        chunk.embedding = embedding
        chunk.embedding_model = model

    async def search_similar(
        self,
        query_vector: list[float],
        limit: int = 5,
        threshold: float = 0.7,
        website_id: str | None = None,
        page_id: str | None = None,
    ) -> list[ChunkMatch]:
        matches = []
        for chunk in self.store.chunks.values():
            if chunk.embedding is None:
                continue
            if page_id is not None and chunk.page_id != page_id:
                continue
            page = self.store.pages.get(chunk.page_id)
            if page is None or (website_id is not None and page.website_id != website_id):
                continue

            similarity = cosine_similarity(query_vector, list(chunk.embedding))
            if similarity < threshold:
                continue
            matches.append(
                ChunkMatch(
                    chunk_id=chunk.id,
                    page_id=page.id,
                    website_id=page.website_id,
                    url=page.url,
                    title=page.title,
                    content=chunk.content,
                    chunk_index=chunk.chunk_index,
                    similarity=similarity,
                    heading_text=chunk.heading_text,
                )
            )

        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:limit]

    async def statistics(self, website_id: str | None = None) -> ChunkStatistics:
        chunks = list(self.store.chunks.values())
        if website_id is not None:
            page_ids = {p.id for p in self.store.pages.values() if p.website_id == website_id}
            chunks = [c for c in chunks if c.page_id in page_ids]
        total_tokens = sum(c.token_count for c in chunks)
        return ChunkStatistics(
            total_chunks=len(chunks),
            embedded_chunks=sum(1 for c in chunks if c.embedding is not None),
            total_tokens=total_tokens,
            average_tokens=total_tokens / len(chunks) if chunks else 0.0,
        )


def memory_repositories(store: InMemoryStore | None = None) -> Repositories:
    """Build a repository bundle backed by one shared in-memory store."""
    store = store or InMemoryStore()
    return Repositories(
        websites=InMemoryWebsiteRepository(store),
        sessions=InMemoryCrawlSessionRepository(store),
        pages=InMemoryPageRepository(store),
        chunks=InMemoryChunkRepository(store),
    )
