"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the application from ``DATABASE_URL``.  Postgres URLs are
normalised to the psycopg async driver and plain SQLite URLs to
aiosqlite.  A fallback to a local SQLite file is permitted in
development if configured.
"""

from __future__ import annotations

import logging
import os
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from itemize.core.config import settings

logger = logging.getLogger(__name__)


def normalize_database_url(raw_url: str) -> str:
    """Return ``raw_url`` rewritten for an async driver.

    ``sqlite://`` becomes ``sqlite+aiosqlite://`` and any Postgres flavour
    becomes ``postgresql+psycopg://`` with ``sslmode`` defaulting to
    ``prefer``.  Unknown schemes are returned unchanged.
    """
    try:
        url_obj = make_url(raw_url)
    except Exception:
        return raw_url
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        return url_obj.set(drivername="sqlite+aiosqlite").render_as_string(hide_password=False)
    if driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        if not q.get("sslmode"):
            q["sslmode"] = "prefer"
        url_obj = url_obj.set(drivername="postgresql+psycopg", query=q)
        return url_obj.render_as_string(hide_password=False)
    return raw_url


db_url: Optional[str] = settings.DATABASE_URL or os.getenv("DATABASE_URL")

if not db_url:
    # Fail fast when no DB URL is provided and fallback is disabled.
    if not settings.DB_DEV_FALLBACK_SQLITE:
        raise RuntimeError(
            "No database URL provided via DATABASE_URL; set "
            "DB_DEV_FALLBACK_SQLITE=true to use a local SQLite file."
        )
    db_url = "sqlite+aiosqlite:///./itemize.db"

db_url = normalize_database_url(db_url)

engine_kwargs: dict[str, Any] = dict(echo=False, pool_pre_ping=True)

logger.info("Creating async engine for %s", make_url(db_url).set(password=None))
engine = create_async_engine(db_url, **engine_kwargs)

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields a database session.

    Each session is scoped to the request and closed after use.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create all tables defined on the declarative ``Base``.

    Typically called during application startup.
    """
    async with engine.begin() as conn:
        # Import all models to ensure metadata is populated
        from itemize.models import tables  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)
