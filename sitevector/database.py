"""Database engine, session factory and declarative base."""

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from sitevector.config import Settings

logger = logging.getLogger(__name__)

MAX_EXTRA_KEYS = 32


class Base(DeclarativeBase):
    """Declarative base for all models.

    Python-side column defaults are applied at construction time so that
    instances are complete before they are flushed (the in-memory
    repositories never flush).
    """

    def __init__(self, **kwargs: Any):
        for column in self.__table__.columns:
            if column.key in kwargs or column.default is None:
                continue
            default = column.default
            if default.is_callable:
                kwargs[column.key] = default.arg(None)
            elif default.is_scalar:
                kwargs[column.key] = default.arg
        cls = type(self)
        for key, value in kwargs.items():
            if not hasattr(cls, key):
                raise TypeError(f"{key!r} is an invalid keyword argument for {cls.__name__}")
            setattr(self, key, value)


def check_extra(value: dict[str, Any] | None) -> dict[str, Any]:
    """Validate the bounded extension map carried by every entity."""
    if value is None:
        return {}
    if len(value) > MAX_EXTRA_KEYS:
        raise ValueError(f"extra holds at most {MAX_EXTRA_KEYS} keys, got {len(value)}")
    for key in value:
        if not isinstance(key, str):
            raise ValueError(f"extra keys must be strings, got {key!r}")
    return dict(value)


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database."""
    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory whose objects stay usable after commit."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create the vector extension and all tables."""
    # Import models so they register with the metadata
    import sitevector.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema created")
