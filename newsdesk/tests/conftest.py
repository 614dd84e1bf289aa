from __future__ import annotations

from collections.abc import AsyncIterator

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from newsdesk.db.base import Base
from newsdesk.db.models import Article
from newsdesk.db.session import build_engine, build_session_factory
from newsdesk.features.storage import (
    BlobStore,
    DatabaseBlobBackend,
    FilesystemBlobBackend,
    StorageBackend,
)


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'newsdesk.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as db_session:
        yield db_session


@pytest_asyncio.fixture
async def blob_store(session_factory, tmp_path) -> AsyncIterator[BlobStore]:
    store = BlobStore(
        {
            StorageBackend.DATABASE: DatabaseBlobBackend(session_factory, chunk_size=4),
            StorageBackend.FILESYSTEM: FilesystemBlobBackend(tmp_path / "uploads"),
        }
    )
    await store.start()
    try:
        yield store
    finally:
        await store.close()


@pytest_asyncio.fixture
async def article(session) -> Article:
    row = Article(title="Spring fundraiser", attachment_ids=[])
    session.add(row)
    await session.commit()
    await session.refresh(row)
    return row
