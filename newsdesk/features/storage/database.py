from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from newsdesk.db.models import BlobChunk, BlobFile
from newsdesk.features.shared.errors import BlobNotFound, StorageFailure

from .types import BlobInfo, StorageBackend

logger = logging.getLogger(__name__)


class DatabaseBlobBackend:
    """Blobs stored inside the database as a file row plus ordered chunk rows.

    Every operation uses its own session so blob writes commit independently of
    attachment metadata.
    """

    kind = StorageBackend.DATABASE

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        chunk_size: int = 255 * 1024,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive.")
        self._sessions = session_factory
        self.chunk_size = chunk_size
        self._ready = False

    @property
    def available(self) -> bool:
        return self._ready

    async def start(self) -> None:
        try:
            async with self._sessions() as session:
                await session.execute(select(BlobFile.id).limit(1))
        except SQLAlchemyError:
            logger.warning(
                "Database blob store is unavailable; uploads will use the filesystem.",
                exc_info=True,
            )
            return
        self._ready = True
        logger.info("Database blob store initialized.")

    async def close(self) -> None:
        self._ready = False

    def _require_ready(self) -> None:
        if not self._ready:
            raise StorageFailure("Database blob store is not initialized.")

    async def write(self, content: bytes, suggested_name: str, content_type: str | None = None) -> str:
        self._require_ready()
        blob_ref = uuid4().hex
        try:
            async with self._sessions() as session:
                session.add(
                    BlobFile(
                        id=blob_ref,
                        filename=suggested_name[:512],
                        content_type=content_type,
                        length=len(content),
                        chunk_size=self.chunk_size,
                        uploaded_at=datetime.now(timezone.utc),
                    )
                )
                # Flush the parent row first; chunk rows reference it.
                await session.flush()
                for n, offset in enumerate(range(0, len(content), self.chunk_size)):
                    session.add(
                        BlobChunk(
                            file_id=blob_ref,
                            n=n,
                            data=content[offset : offset + self.chunk_size],
                        )
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Could not write blob '{suggested_name}': {exc}") from exc
        logger.debug("Stored %d bytes as database blob %s", len(content), blob_ref)
        return blob_ref

    async def read_all(self, blob_ref: str) -> bytes:
        self._require_ready()
        try:
            async with self._sessions() as session:
                blob = await session.get(BlobFile, blob_ref)
                if blob is None:
                    raise BlobNotFound(f"Blob '{blob_ref}' was not found.")
                rows = (
                    await session.execute(
                        select(BlobChunk.data)
                        .where(BlobChunk.file_id == blob_ref)
                        .order_by(BlobChunk.n)
                    )
                ).scalars().all()
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Could not read blob '{blob_ref}': {exc}") from exc

        payload = b"".join(rows)
        if len(payload) != blob.length:
            raise StorageFailure(
                f"Blob '{blob_ref}' is incomplete: {len(payload)} of {blob.length} bytes."
            )
        return payload

    async def open_stream(self, blob_ref: str) -> AsyncIterator[bytes]:
        self._require_ready()
        try:
            async with self._sessions() as session:
                blob = await session.get(BlobFile, blob_ref)
                if blob is None:
                    raise BlobNotFound(f"Blob '{blob_ref}' was not found.")
                stored_chunks = (
                    await session.execute(
                        select(func.count())
                        .select_from(BlobChunk)
                        .where(BlobChunk.file_id == blob_ref)
                    )
                ).scalar_one()
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Could not open blob '{blob_ref}': {exc}") from exc
        chunk_count = -(-blob.length // blob.chunk_size)
        # Fail before any byte is sent.
        if stored_chunks != chunk_count:
            raise StorageFailure(
                f"Blob '{blob_ref}' is incomplete: {stored_chunks} of {chunk_count} chunks."
            )
        return self._iter_chunks(blob_ref, chunk_count)

    async def _iter_chunks(self, blob_ref: str, chunk_count: int) -> AsyncIterator[bytes]:
        async with self._sessions() as session:
            for n in range(chunk_count):
                chunk = await session.get(BlobChunk, (blob_ref, n))
                if chunk is None:
                    logger.error("Blob %s lost chunk %d while streaming", blob_ref, n)
                    raise StorageFailure(f"Blob '{blob_ref}' is missing chunk {n}.")
                yield chunk.data
                # Drop the chunk from the identity map so memory stays flat.
                session.expunge(chunk)

    async def delete(self, blob_ref: str) -> bool:
        self._require_ready()
        try:
            async with self._sessions() as session:
                blob = await session.get(BlobFile, blob_ref)
                if blob is None:
                    logger.warning("Blob not found in database store: %s", blob_ref)
                    return False
                await session.execute(delete(BlobChunk).where(BlobChunk.file_id == blob_ref))
                await session.delete(blob)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Could not delete blob '{blob_ref}': {exc}") from exc
        logger.info("Deleted blob from database store: %s", blob_ref)
        return True

    async def exists(self, blob_ref: str) -> bool:
        self._require_ready()
        try:
            async with self._sessions() as session:
                return await session.get(BlobFile, blob_ref) is not None
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Could not look up blob '{blob_ref}': {exc}") from exc

    async def list_blobs(self) -> list[BlobInfo]:
        self._require_ready()
        try:
            async with self._sessions() as session:
                rows = (
                    await session.execute(
                        select(BlobFile.id, BlobFile.length, BlobFile.uploaded_at).order_by(
                            BlobFile.uploaded_at
                        )
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Could not list database blobs: {exc}") from exc
        return [
            BlobInfo(ref=row.id, size=row.length, created_at=_as_utc(row.uploaded_at))
            for row in rows
        ]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
