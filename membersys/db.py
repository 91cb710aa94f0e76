"""SQLAlchemy 2.x async engine setup for the relational backend.

This module builds engines and session factories from ``PostgresSettings``
but does not hard-code any connection credentials.
"""

from __future__ import annotations

import ssl

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import PostgresSettings


def create_engine_from_settings(config: PostgresSettings) -> AsyncEngine:
    """Create the async engine; pooled options only apply to server databases."""
    kwargs: dict = {"echo": config.echo, "pool_pre_ping": True}
    if not config.url.startswith("sqlite"):
        kwargs["pool_size"] = config.pool_size
        kwargs["max_overflow"] = config.max_overflow
    if config.ssl:
        kwargs["connect_args"] = {"ssl": ssl.create_default_context()}
    return create_async_engine(config.url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
