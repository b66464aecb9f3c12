"""Page model for discovered and processed website pages."""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from sitevector.database import Base, check_extra

PAGE_STATUSES = ("discovered", "queued", "processing", "completed", "failed", "skipped")
DISCOVERY_METHODS = ("manual", "sitemap", "crawling", "robots")


class Page(Base):
    """A discovered page belonging to one crawl session."""

    __tablename__ = "pages"
    __table_args__ = (
        UniqueConstraint("crawl_session_id", "url", name="uq_pages_session_url"),
    )

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    website_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("websites.id", ondelete="CASCADE"),
        index=True,
    )
    crawl_session_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("crawl_sessions.id", ondelete="CASCADE"),
        index=True,
    )

    # Page data
    url: Mapped[str] = mapped_column(String(2048), index=True)
    title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_count: Mapped[int] = mapped_column(Integer, default=0)

    # Discovery
    depth_level: Mapped[int] = mapped_column(Integer, default=0)
    priority: Mapped[int] = mapped_column(Integer, default=50, index=True)
    discovery_method: Mapped[str] = mapped_column(
        String(50), default="crawling"
    )  # manual, sitemap, crawling, robots
    sitemap_lastmod: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Status
    status: Mapped[str] = mapped_column(
        String(50), default="discovered", index=True
    )  # discovered, queued, processing, completed, failed, skipped
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    crawled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # HTTP response details
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    final_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    # Extraction details
    extraction_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    extraction_quality: Mapped[float | None] = mapped_column(Float, nullable=True)
    word_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    language: Mapped[str | None] = mapped_column(String(35), nullable=True)
    author: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    canonical_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    extra: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    crawl_session: Mapped["CrawlSession"] = relationship(
        "CrawlSession", back_populates="pages"
    )
    chunks: Mapped[list["Chunk"]] = relationship(
        "Chunk",
        back_populates="page",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Chunk.chunk_index",
    )

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        if value not in PAGE_STATUSES:
            raise ValueError(f"Unknown page status: {value}")
        return value

    @validates("priority")
    def _validate_priority(self, key: str, value: int) -> int:
        return max(0, min(100, int(value)))

    @validates("discovery_method")
    def _validate_discovery_method(self, key: str, value: str) -> str:
        if value not in DISCOVERY_METHODS:
            raise ValueError(f"Unknown discovery method: {value}")
        return value

    @validates("extra")
    def _validate_extra(self, key: str, value: dict[str, Any] | None) -> dict[str, Any]:
        return check_extra(value)


# Forward references
from sitevector.models.chunk import Chunk  # noqa: E402
from sitevector.models.crawl_session import CrawlSession  # noqa: E402
