"""CrawlSession model for tracking discovery and processing runs."""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from sitevector.database import Base, check_extra
from sitevector.exceptions import InvalidStatusTransition

# Forward order of a run; failed/cancelled are reachable from any non-terminal state
SESSION_FLOW = ("pending", "discovering", "extracting", "processing", "completed")
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


class CrawlSession(Base):
    """One discovery and processing run against a website."""

    __tablename__ = "crawl_sessions"

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

    # Configuration
    max_pages: Mapped[int] = mapped_column(Integer, default=10)
    max_depth: Mapped[int] = mapped_column(Integer, default=1)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False)

    # Job status
    status: Mapped[str] = mapped_column(
        String(50), default="pending"
    )  # pending, discovering, extracting, processing, completed, failed, cancelled

    # Progress tracking
    pages_discovered: Mapped[int] = mapped_column(Integer, default=0)
    pages_completed: Mapped[int] = mapped_column(Integer, default=0)
    pages_failed: Mapped[int] = mapped_column(Integer, default=0)
    chunks_created: Mapped[int] = mapped_column(Integer, default=0)

    # Discovery and performance
    discovery_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    discovery_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_cost: Mapped[float] = mapped_column(Float, default=0.0)

    # Error tracking
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timing
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
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
    website: Mapped["Website"] = relationship("Website", back_populates="crawl_sessions")
    pages: Mapped[list["Page"]] = relationship(
        "Page",
        back_populates="crawl_session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, status: str) -> bool:
        """Check whether moving to ``status`` respects the run state machine."""
        if self.is_terminal:
            return False
        if status in ("failed", "cancelled"):
            return True
        if status not in SESSION_FLOW:
            return False
        return SESSION_FLOW.index(status) > SESSION_FLOW.index(self.status)

    def transition_to(self, status: str) -> None:
        """Move to a new status, stamping start/completion times."""
        if not self.can_transition_to(status):
            raise InvalidStatusTransition(
                f"Crawl session {self.id} cannot move from {self.status} to {status}"
            )
        now = datetime.now(timezone.utc)
        if self.status == "pending" and self.started_at is None:
            self.started_at = now
        self.status = status
        if status in TERMINAL_STATUSES:
            self.completed_at = now

    def complete(self) -> None:
        """Mark the session as completed."""
        self.transition_to("completed")

    def fail(self, error_message: str) -> None:
        """Mark the session as failed."""
        self.transition_to("failed")
        self.error_message = error_message

    def cancel(self) -> None:
        """Mark the session as cancelled."""
        self.transition_to("cancelled")

    @validates("extra")
    def _validate_extra(self, key: str, value: dict[str, Any] | None) -> dict[str, Any]:
        return check_extra(value)


# Forward references
from sitevector.models.page import Page  # noqa: E402
from sitevector.models.website import Website  # noqa: E402
