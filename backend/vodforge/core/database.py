"""Async SQLAlchemy engine and session factory for the metadata store."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base for all metadata models."""


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the metadata store."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Concurrent pipeline writers wait on the SQLite write lock
        connect_args["timeout"] = 30
    return create_async_engine(database_url, echo=echo, connect_args=connect_args)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to ``engine``."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create all metadata tables."""
    # Import models so they register on Base.metadata
    from vodforge.modules.video import models as _video_models  # noqa: F401
    from vodforge.modules.upload import models as _upload_models  # noqa: F401
    from vodforge.modules.transcoding import models as _transcoding_models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
