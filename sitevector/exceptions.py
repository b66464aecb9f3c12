"""Exceptions raised for structural and run-level failures.

Per-item failures (a page that cannot be fetched, a batch that cannot be
embedded) are reported as result objects instead.
"""


class SiteVectorError(Exception):
    """Base class for all sitevector errors."""


class InvalidUrlError(SiteVectorError, ValueError):
    """A website or page URL is malformed or outside the website."""


class DiscoveryError(SiteVectorError):
    """Page discovery could not produce any candidate URLs."""


class InvalidStatusTransition(SiteVectorError):
    """A crawl session was asked to move backwards or out of a terminal state."""


class NotFoundError(SiteVectorError, LookupError):
    """A referenced entity does not exist."""


class RetrievalError(SiteVectorError):
    """A similarity search could not be performed."""


class DuplicateEntityError(SiteVectorError):
    """An entity with the same unique key already exists."""
