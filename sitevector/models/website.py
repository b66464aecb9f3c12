"""Website model for crawl targets."""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from sitevector.database import Base, check_extra

WEBSITE_STATUSES = ("active", "inactive", "crawling", "error")


class Website(Base):
    """A website whose pages are turned into searchable chunks."""

    __tablename__ = "websites"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    domain: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    base_url: Mapped[str] = mapped_column(String(2048))
    title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Status
    status: Mapped[str] = mapped_column(
        String(50), default="active"
    )  # active, inactive, crawling, error
    total_pages: Mapped[int] = mapped_column(Integer, default=0)
    last_crawled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

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
    crawl_sessions: Mapped[list["CrawlSession"]] = relationship(
        "CrawlSession",
        back_populates="website",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        if value not in WEBSITE_STATUSES:
            raise ValueError(f"Unknown website status: {value}")
        return value

    @validates("extra")
    def _validate_extra(self, key: str, value: dict[str, Any] | None) -> dict[str, Any]:
        return check_extra(value)


# Forward reference
from sitevector.models.crawl_session import CrawlSession  # noqa: E402
