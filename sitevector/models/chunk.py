"""Chunk model for embedded text passages."""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from sitevector.database import Base, check_extra


class Chunk(Base):
    """A retrievable passage of a page's text and its embedding."""

    __tablename__ = "chunks"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    page_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("pages.id", ondelete="CASCADE"),
        index=True,
    )

    content: Mapped[str] = mapped_column(Text)
    chunk_index: Mapped[int] = mapped_column(Integer)
    token_count: Mapped[int] = mapped_column(Integer, default=0)
    start_position: Mapped[int] = mapped_column(Integer, default=0)
    end_position: Mapped[int] = mapped_column(Integer, default=0)

    # Embedding
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(), nullable=True
    )
    embedding_model: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Structure
    heading_text: Mapped[str | None] = mapped_column(String(512), nullable=True)
    heading_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    paragraph_count: Mapped[int] = mapped_column(Integer, default=0)
    sentence_count: Mapped[int] = mapped_column(Integer, default=0)
    overlap_start: Mapped[int] = mapped_column(Integer, default=0)
    overlap_end: Mapped[int] = mapped_column(Integer, default=0)
    split_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Quality
    quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    completeness: Mapped[float | None] = mapped_column(Float, nullable=True)
    coherence: Mapped[float | None] = mapped_column(Float, nullable=True)

    extra: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    page: Mapped["Page"] = relationship("Page", back_populates="chunks")

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    @validates("embedding")
    def _validate_embedding(self, key: str, value: list[float] | None) -> list[float] | None:
        # Width is checked by EmbeddingService against the configured model
        if value is not None and len(value) == 0:
            raise ValueError("Embedding must not be empty")
        return value

    @validates("extra")
    def _validate_extra(self, key: str, value: dict[str, Any] | None) -> dict[str, Any]:
        return check_extra(value)


# Forward reference
from sitevector.models.page import Page  # noqa: E402
