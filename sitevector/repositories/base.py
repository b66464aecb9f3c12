"""Repository protocols.

The pipeline only talks to storage through these interfaces; each storage
backend provides one adapter module implementing all four.
"""

from dataclasses import dataclass
from typing import Any, Protocol

from sitevector.models import Chunk, CrawlSession, Page, Website

PAGE_ORDER_FIELDS = ("priority", "created_at", "depth_level", "crawled_at")
INCREMENTABLE_SESSION_FIELDS = ("chunks_created", "total_cost", "processing_time_ms")


@dataclass
class ChunkMatch:
    """A chunk returned by similarity search."""
    chunk_id: str
    page_id: str
    website_id: str
    url: str
    title: str | None
    content: str
    chunk_index: int
    similarity: float
    heading_text: str | None = None


@dataclass
class ChunkStatistics:
    total_chunks: int = 0
    embedded_chunks: int = 0
    total_tokens: int = 0
    average_tokens: float = 0.0


class WebsiteRepository(Protocol):
    async def create(self, website: Website) -> Website: ...

    async def get_by_id(self, website_id: str) -> Website | None: ...

    async def get_by_domain(self, domain: str) -> Website | None: ...

    async def update(self, website_id: str, **fields: Any) -> Website: ...

    async def list_all(self, limit: int = 50, offset: int = 0) -> list[Website]: ...

    async def delete(self, website_id: str) -> bool:
        """Delete a website and, by cascade, its sessions, pages and chunks."""
        ...


class CrawlSessionRepository(Protocol):
    async def create(self, crawl_session: CrawlSession) -> CrawlSession: ...

    async def get_by_id(self, session_id: str) -> CrawlSession | None: ...

    async def get_manual_session(self, website_id: str) -> CrawlSession | None:
        """The open (non-terminal) manual session for a website, if any."""
        ...

    async def update_status(
        self,
        session_id: str,
        status: str,
        error_message: str | None = None,
    ) -> CrawlSession:
        """Move a session through its state machine.

        Raises:
            InvalidStatusTransition: for backwards or post-terminal moves.
        """
        ...

    async def update_stats(self, session_id: str, **fields: Any) -> CrawlSession: ...

    async def increment_stats(self, session_id: str, **deltas: float) -> CrawlSession:
        """Add deltas to counter columns atomically."""
        ...

    async def list_by_website(self, website_id: str) -> list[CrawlSession]: ...


class PageRepository(Protocol):
    async def create(self, page: Page) -> Page: ...

    async def create_batch(self, pages: list[Page]) -> list[Page]:
        """Insert pages, skipping URLs already present in the same session."""
        ...

    async def get_by_id(self, page_id: str) -> Page | None: ...

    async def get_by_url_in_session(self, session_id: str, url: str) -> Page | None: ...

    async def update_content(self, page_id: str, **fields: Any) -> Page: ...

    async def update_status(
        self,
        page_id: str,
        status: str,
        error_message: str | None = None,
    ) -> Page: ...

    async def list_by_session(
        self,
        session_id: str,
        status: str | None = None,
        has_content: bool | None = None,
        limit: int | None = None,
        offset: int = 0,
        order_by: str = "priority",
        descending: bool = True,
    ) -> list[Page]: ...

    async def count_by_session(self, session_id: str, status: str | None = None) -> int: ...

    async def count_completed_by_website(self, website_id: str) -> int:
        """Distinct completed page URLs across all of a website's sessions."""
        ...


class ChunkRepository(Protocol):
    async def create(self, chunk: Chunk) -> Chunk: ...

    async def create_batch(self, chunks: list[Chunk]) -> list[Chunk]: ...

    async def list_by_page(self, page_id: str) -> list[Chunk]: ...

    async def count_by_page(self, page_id: str) -> int: ...

    async def delete_by_page(self, page_id: str) -> int: ...

    async def replace_for_page(self, page_id: str, chunks: list[Chunk]) -> list[Chunk]:
        """Atomically replace all of a page's chunks."""
        ...

    async def list_without_embeddings(self, limit: int = 100) -> list[Chunk]: ...

    async def update_embedding(self, chunk_id: str, embedding: list[float], model: str) -> None: ...

    async def search_similar(
        self,
        query_vector: list[float],
        limit: int = 5,
        threshold: float = 0.7,
        website_id: str | None = None,
        page_id: str | None = None,
    ) -> list[ChunkMatch]:
        """Nearest chunks by cosine similarity, highest first, all >= threshold."""
        ...

    async def statistics(self, website_id: str | None = None) -> ChunkStatistics: ...


@dataclass
class Repositories:
    """The four repositories a pipeline needs, from one backend."""
    websites: WebsiteRepository
    sessions: CrawlSessionRepository
    pages: PageRepository
    chunks: ChunkRepository


def check_order_field(order_by: str) -> str:
    if order_by not in PAGE_ORDER_FIELDS:
        raise ValueError(f"Cannot order pages by {order_by!r}; use one of {PAGE_ORDER_FIELDS}")
    return order_by


def apply_fields(entity: Any, fields: dict[str, Any]) -> None:
    """Set attributes on an entity, rejecting names that are not columns."""
    columns = entity.__table__.columns.keys()
    for key, value in fields.items():
        if key not in columns or key == "id":
            raise ValueError(f"{type(entity).__name__} has no updatable field {key!r}")
        setattr(entity, key, value)
