"""Repository implementations for data access."""

from sitevector.repositories.base import (
    ChunkMatch,
    ChunkRepository,
    ChunkStatistics,
    CrawlSessionRepository,
    PageRepository,
    Repositories,
    WebsiteRepository,
)
from sitevector.repositories.memory import memory_repositories
from sitevector.repositories.postgres import postgres_repositories

__all__ = [
    "ChunkMatch",
    "ChunkStatistics",
    "Repositories",
    "WebsiteRepository",
    "CrawlSessionRepository",
    "PageRepository",
    "ChunkRepository",
    "memory_repositories",
    "postgres_repositories",
]
