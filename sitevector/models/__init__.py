"""SQLAlchemy models."""

from sitevector.models.chunk import Chunk
from sitevector.models.crawl_session import CrawlSession
from sitevector.models.page import Page
from sitevector.models.website import Website

__all__ = [
    "Website",
    "CrawlSession",
    "Page",
    "Chunk",
]
