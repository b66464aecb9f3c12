"""Website crawling, chunking and embedding for similarity search."""

__version__ = "1.0.0"
