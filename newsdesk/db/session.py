from __future__ import annotations

from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from newsdesk.core.config import get_settings

from .utils import normalize_database_url


def build_engine(url: str) -> AsyncEngine:
    normalized = normalize_database_url(url)
    if normalized.startswith("sqlite"):
        return create_async_engine(normalized)
    return create_async_engine(normalized, pool_pre_ping=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Blob backends and services share loaded rows across commits.
    return async_sessionmaker(bind=engine, expire_on_commit=False)


settings = get_settings()
async_engine = build_engine(settings.database_dsn)
AsyncSessionLocal = build_session_factory(async_engine)


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session
