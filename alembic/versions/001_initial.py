"""Initial schema - websites, crawl sessions, pages and chunks.

Revision ID: 001
Revises:
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBEDDING_DIMENSIONS = 1536


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # Websites table
    op.create_table(
        "websites",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("domain", sa.String(255), nullable=False),
        sa.Column("base_url", sa.String(2048), nullable=False),
        sa.Column("title", sa.String(512), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="active"),
        sa.Column("total_pages", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_crawled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("extra", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_websites_domain", "websites", ["domain"], unique=True)

    # Crawl sessions table
    op.create_table(
        "crawl_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "website_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("websites.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("max_pages", sa.Integer, nullable=False, server_default="10"),
        sa.Column("max_depth", sa.Integer, nullable=False, server_default="1"),
        sa.Column("is_manual", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("status", sa.String(50), nullable=False, server_default="pending"),
        sa.Column("pages_discovered", sa.Integer, nullable=False, server_default="0"),
        sa.Column("pages_completed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("pages_failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("chunks_created", sa.Integer, nullable=False, server_default="0"),
        sa.Column("discovery_method", sa.String(50), nullable=True),
        sa.Column("discovery_time_ms", sa.Integer, nullable=True),
        sa.Column("processing_time_ms", sa.Integer, nullable=True),
        sa.Column("total_cost", sa.Float, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("extra", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    # Pages table
    op.create_table(
        "pages",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "website_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("websites.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "crawl_session_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("crawl_sessions.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("url", sa.String(2048), nullable=False, index=True),
        sa.Column("title", sa.String(512), nullable=True),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("raw_html", sa.Text, nullable=True),
        sa.Column("token_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("depth_level", sa.Integer, nullable=False, server_default="0"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="50", index=True),
        sa.Column("discovery_method", sa.String(50), nullable=False, server_default="crawling"),
        sa.Column("sitemap_lastmod", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="discovered", index=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("crawled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("content_type", sa.String(255), nullable=True),
        sa.Column("http_status", sa.Integer, nullable=True),
        sa.Column("response_time_ms", sa.Integer, nullable=True),
        sa.Column("final_url", sa.String(2048), nullable=True),
        sa.Column("extraction_method", sa.String(50), nullable=True),
        sa.Column("extraction_quality", sa.Float, nullable=True),
        sa.Column("word_count", sa.Integer, nullable=True),
        sa.Column("language", sa.String(35), nullable=True),
        sa.Column("author", sa.String(255), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("canonical_url", sa.String(2048), nullable=True),
        sa.Column("extra", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("crawl_session_id", "url", name="uq_pages_session_url"),
    )

    # Chunks table
    op.create_table(
        "chunks",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "page_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("pages.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("chunk_index", sa.Integer, nullable=False),
        sa.Column("token_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("start_position", sa.Integer, nullable=False, server_default="0"),
        sa.Column("end_position", sa.Integer, nullable=False, server_default="0"),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=True),
        sa.Column("embedding_model", sa.String(100), nullable=True),
        sa.Column("heading_text", sa.String(512), nullable=True),
        sa.Column("heading_level", sa.Integer, nullable=True),
        sa.Column("paragraph_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("sentence_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("overlap_start", sa.Integer, nullable=False, server_default="0"),
        sa.Column("overlap_end", sa.Integer, nullable=False, server_default="0"),
        sa.Column("split_reason", sa.String(50), nullable=True),
        sa.Column("quality_score", sa.Float, nullable=True),
        sa.Column("completeness", sa.Float, nullable=True),
        sa.Column("coherence", sa.Float, nullable=True),
        sa.Column("extra", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    # Approximate nearest-neighbour index for cosine similarity search
    op.execute(
        "CREATE INDEX ix_chunks_embedding_cosine ON chunks "
        "USING ivfflat (embedding vector_cosine_ops) WITH (lists = 100)"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_chunks_embedding_cosine")
    op.drop_table("chunks")
    op.drop_table("pages")
    op.drop_table("crawl_sessions")
    op.drop_index("ix_websites_domain", table_name="websites")
    op.drop_table("websites")
