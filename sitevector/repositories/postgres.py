"""PostgreSQL repository implementations.

These implement the repository protocols for PostgreSQL with pgvector.
Each call runs in its own short-lived session from the injected factory,
so concurrent page workers never share a session.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

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

SessionFactory = async_sessionmaker[AsyncSession]


def _row(entity: Any) -> dict[str, Any]:
    return {column.key: getattr(entity, column.key) for column in entity.__table__.columns}


class PostgresWebsiteRepository:
    """PostgreSQL implementation of website repository."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def create(self, website: Website) -> Website:
        """Insert a website; domains are unique."""
        try:
            async with self.session_factory() as session, session.begin():
                session.add(website)
        except IntegrityError as e:
            raise DuplicateEntityError(f"Website {website.domain} already exists") from e
        return website

    async def get_by_id(self, website_id: str) -> Website | None:
        """Get a website by ID."""
        async with self.session_factory() as session:
            return await session.get(Website, website_id)

    async def get_by_domain(self, domain: str) -> Website | None:
        """Get a website by its (unique) domain."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Website).where(Website.domain == domain)
            )
            return result.scalar_one_or_none()

    async def update(self, website_id: str, **fields: Any) -> Website:
        async with self.session_factory() as session, session.begin():
            website = await session.get(Website, website_id)
            if website is None:
                raise NotFoundError(f"Website {website_id} not found")
            apply_fields(website, fields)
        return website

    async def list_all(self, limit: int = 50, offset: int = 0) -> list[Website]:
        """Get websites, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Website)
                .order_by(Website.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def delete(self, website_id: str) -> bool:
        """Delete a website; the foreign keys cascade to everything it owns."""
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                delete(Website).where(Website.id == website_id)
            )
            return result.rowcount > 0


class PostgresCrawlSessionRepository:
    """PostgreSQL implementation of crawl session repository."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def create(self, crawl_session: CrawlSession) -> CrawlSession:
        async with self.session_factory() as session, session.begin():
            session.add(crawl_session)
        return crawl_session

    async def get_by_id(self, session_id: str) -> CrawlSession | None:
        async with self.session_factory() as session:
            return await session.get(CrawlSession, session_id)

    async def get_manual_session(self, website_id: str) -> CrawlSession | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CrawlSession)
                .where(
                    CrawlSession.website_id == website_id,
                    CrawlSession.is_manual.is_(True),
                    CrawlSession.status.not_in(("completed", "failed", "cancelled")),
                )
                .order_by(CrawlSession.created_at.asc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def update_status(
        self,
        session_id: str,
        status: str,
        error_message: str | None = None,
    ) -> CrawlSession:
        async with self.session_factory() as session, session.begin():
            crawl_session = await session.get(CrawlSession, session_id, with_for_update=True)
            if crawl_session is None:
                raise NotFoundError(f"Crawl session {session_id} not found")
            crawl_session.transition_to(status)
            if error_message is not None:
                crawl_session.error_message = error_message
        return crawl_session

    async def update_stats(self, session_id: str, **fields: Any) -> CrawlSession:
        async with self.session_factory() as session, session.begin():
            crawl_session = await session.get(CrawlSession, session_id)
            if crawl_session is None:
                raise NotFoundError(f"Crawl session {session_id} not found")
            apply_fields(crawl_session, fields)
        return crawl_session

    async def increment_stats(self, session_id: str, **deltas: float) -> CrawlSession:
        """Add to counters in SQL so concurrent runs on one session do not lose updates."""
        values = {}
        for key, delta in deltas.items():
            if key not in INCREMENTABLE_SESSION_FIELDS:
                raise ValueError(f"CrawlSession has no counter {key!r}")
            values[key] = func.coalesce(getattr(CrawlSession, key), 0) + delta

        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(CrawlSession)
                .where(CrawlSession.id == session_id)
                .values(**values, updated_at=datetime.now(timezone.utc))
                .returning(CrawlSession)
            )
            crawl_session = result.scalar_one_or_none()
            if crawl_session is None:
                raise NotFoundError(f"Crawl session {session_id} not found")
        return crawl_session

    async def list_by_website(self, website_id: str) -> list[CrawlSession]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CrawlSession)
                .where(CrawlSession.website_id == website_id)
                .order_by(CrawlSession.created_at.desc())
            )
            return list(result.scalars().all())


class PostgresPageRepository:
    """PostgreSQL implementation of page repository."""

    def __init__(self, session_factory: SessionFactory, batch_size: int = 50):
        self.session_factory = session_factory
        self.batch_size = batch_size

    async def create(self, page: Page) -> Page:
        try:
            async with self.session_factory() as session, session.begin():
                session.add(page)
        except IntegrityError as e:
            raise DuplicateEntityError(
                f"Page {page.url} already exists in session {page.crawl_session_id}"
            ) from e
        return page

    async def create_batch(self, pages: list[Page]) -> list[Page]:
        """Insert pages in bounded batches, skipping (session, url) duplicates."""
        created: list[Page] = []
        for start in range(0, len(pages), self.batch_size):
            rows = [_row(page) for page in pages[start:start + self.batch_size]]
            stmt = (
                pg_insert(Page)
                .on_conflict_do_nothing(index_elements=["crawl_session_id", "url"])
                .returning(Page)
            )
            async with self.session_factory() as session, session.begin():
                result = await session.scalars(stmt, rows)
                created.extend(result.all())
        return created

    async def get_by_id(self, page_id: str) -> Page | None:
        async with self.session_factory() as session:
            return await session.get(Page, page_id)

    async def get_by_url_in_session(self, session_id: str, url: str) -> Page | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Page).where(
                    Page.crawl_session_id == session_id,
                    Page.url == url,
                )
            )
            return result.scalar_one_or_none()

    async def update_content(self, page_id: str, **fields: Any) -> Page:
        async with self.session_factory() as session, session.begin():
            page = await session.get(Page, page_id)
            if page is None:
                raise NotFoundError(f"Page {page_id} not found")
            apply_fields(page, fields)
        return page

    async def update_status(
        self,
        page_id: str,
        status: str,
        error_message: str | None = None,
    ) -> Page:
        async with self.session_factory() as session, session.begin():
            page = await session.get(Page, page_id)
            if page is None:
                raise NotFoundError(f"Page {page_id} not found")
            page.status = status
            page.error_message = error_message
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
        column = getattr(Page, check_order_field(order_by))
        stmt = select(Page).where(Page.crawl_session_id == session_id)
        if status is not None:
            stmt = stmt.where(Page.status == status)
        if has_content is True:
            stmt = stmt.where(Page.content.is_not(None), func.length(func.trim(Page.content)) > 0)
        elif has_content is False:
            stmt = stmt.where((Page.content.is_(None)) | (func.length(func.trim(Page.content)) == 0))
        stmt = stmt.order_by(column.desc() if descending else column.asc(), Page.url.asc())
        stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_by_session(self, session_id: str, status: str | None = None) -> int:
        stmt = select(func.count()).select_from(Page).where(Page.crawl_session_id == session_id)
        if status is not None:
            stmt = stmt.where(Page.status == status)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one()

    async def count_completed_by_website(self, website_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(func.distinct(Page.url))).where(
                    Page.website_id == website_id,
                    Page.status == "completed",
                )
            )
            return result.scalar_one()


class PostgresChunkRepository:
    """PostgreSQL + pgvector implementation of chunk repository."""

    def __init__(self, session_factory: SessionFactory, batch_size: int = 50):
        self.session_factory = session_factory
        self.batch_size = batch_size

    async def create(self, chunk: Chunk) -> Chunk:
        async with self.session_factory() as session, session.begin():
            session.add(chunk)
        return chunk

    async def create_batch(self, chunks: list[Chunk]) -> list[Chunk]:
        """Insert chunks in bounded transactions."""
        for start in range(0, len(chunks), self.batch_size):
            async with self.session_factory() as session, session.begin():
                session.add_all(chunks[start:start + self.batch_size])
        return list(chunks)

    async def list_by_page(self, page_id: str) -> list[Chunk]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Chunk)
                .where(Chunk.page_id == page_id)
                .order_by(Chunk.chunk_index.asc())
            )
            return list(result.scalars().all())

    async def count_by_page(self, page_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(Chunk).where(Chunk.page_id == page_id)
            )
            return result.scalar_one()

    async def delete_by_page(self, page_id: str) -> int:
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                delete(Chunk).where(Chunk.page_id == page_id)
            )
            return result.rowcount

    async def replace_for_page(self, page_id: str, chunks: list[Chunk]) -> list[Chunk]:
        """Swap a page's chunks in one transaction; a failed insert keeps the old ones."""
        async with self.session_factory() as session, session.begin():
            await session.execute(delete(Chunk).where(Chunk.page_id == page_id))
            session.add_all(chunks)
        return list(chunks)

    async def list_without_embeddings(self, limit: int = 100) -> list[Chunk]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Chunk)
                .where(Chunk.embedding.is_(None))
                .order_by(Chunk.created_at.asc(), Chunk.chunk_index.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def update_embedding(self, chunk_id: str, embedding: list[float], model: str) -> None:
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(Chunk)
                .where(Chunk.id == chunk_id)
                .values(embedding=embedding, embedding_model=model)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Chunk {chunk_id} not found")

    async def search_similar(
        self,
        query_vector: list[float],
        limit: int = 5,
        threshold: float = 0.7,
        website_id: str | None = None,
        page_id: str | None = None,
    ) -> list[ChunkMatch]:
        """Nearest chunks by cosine distance (similarity = 1 - distance)."""
        distance = Chunk.embedding.cosine_distance(query_vector)
        stmt = (
            select(
                Chunk,
                Page.url,
                Page.title,
                Page.website_id,
                (1 - distance).label("similarity"),
            )
            .join(Page, Page.id == Chunk.page_id)
            .where(Chunk.embedding.is_not(None), distance <= 1 - threshold)
        )
        if website_id is not None:
            stmt = stmt.where(Page.website_id == website_id)
        if page_id is not None:
            stmt = stmt.where(Chunk.page_id == page_id)
        stmt = stmt.order_by(distance.asc()).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        return [
            ChunkMatch(
                chunk_id=row.Chunk.id,
                page_id=row.Chunk.page_id,
                website_id=row.website_id,
                url=row.url,
                title=row.title,
                content=row.Chunk.content,
                chunk_index=row.Chunk.chunk_index,
                similarity=float(row.similarity),
                heading_text=row.Chunk.heading_text,
            )
            for row in rows
        ]

    async def statistics(self, website_id: str | None = None) -> ChunkStatistics:
        stmt = select(
            func.count(Chunk.id),
            func.count(Chunk.embedding),
            func.coalesce(func.sum(Chunk.token_count), 0),
        )
        if website_id is not None:
            stmt = stmt.join(Page, Page.id == Chunk.page_id).where(Page.website_id == website_id)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            total, embedded, tokens = result.one()

        return ChunkStatistics(
            total_chunks=total,
            embedded_chunks=embedded,
            total_tokens=int(tokens),
            average_tokens=tokens / total if total else 0.0,
        )


def postgres_repositories(session_factory: SessionFactory, batch_size: int = 50) -> Repositories:
    """Build a repository bundle sharing one session factory."""
    return Repositories(
        websites=PostgresWebsiteRepository(session_factory),
        sessions=PostgresCrawlSessionRepository(session_factory),
        pages=PostgresPageRepository(session_factory, batch_size=batch_size),
        chunks=PostgresChunkRepository(session_factory, batch_size=batch_size),
    )
