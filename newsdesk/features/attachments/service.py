from __future__ import annotations

import logging
import mimetypes
import re
from collections.abc import AsyncIterator
from pathlib import Path
from uuid import UUID

from fastapi import UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.db.models import Attachment
from newsdesk.features.articles import repo as articles_repo
from newsdesk.features.cleanup import repo as cleanup_repo
from newsdesk.features.cleanup.types import OrphanReason
from newsdesk.features.shared.errors import (
    BlobMissing,
    BlobNotFound,
    NotFound,
    PayloadTooLarge,
    StorageFailure,
    UnsupportedView,
    UploadFailed,
    ValidationFailed,
)
from newsdesk.features.shared.ids import parse_uuid
from newsdesk.features.storage import BlobStore, StorageBackend

from . import repo
from .schemas import AttachmentOut, AttachmentStream, AttachmentText
from .types import DeletionStage, UploadStage

logger = logging.getLogger(__name__)

_IMAGE_MIME_PREFIX = "image/"
_TEXT_MIME = "text/plain"
_TEXT_EXTENSION = ".txt"
_ALLOWED_TYPES = {
    _TEXT_EXTENSION,
    _TEXT_MIME,
    ".pdf",
    "application/pdf",
    ".doc",
    "application/msword",
    ".docx",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "image/jpeg",
    "image/png",
    "image/gif",
}
_READ_CHUNK_SIZE = 1024 * 1024


def _normalize_filename(filename: str) -> str:
    cleaned = re.sub(r"[^\w.\- ]+", "_", Path(filename).name).strip()
    return cleaned or "upload"


def _file_extension(filename: str) -> str:
    return Path(filename).suffix.lower()


def _resolve_mime_type(declared: str | None, filename: str) -> str:
    from_upload = (declared or "").split(";", 1)[0].strip().lower()
    if from_upload:
        return from_upload
    guessed, _ = mimetypes.guess_type(filename)
    return (guessed or "application/octet-stream").lower()


def _is_allowed(mime_type: str, extension: str) -> bool:
    return mime_type in _ALLOWED_TYPES or extension in _ALLOWED_TYPES


def is_image(mime_type: str) -> bool:
    return mime_type.lower().startswith(_IMAGE_MIME_PREFIX)


def is_text(mime_type: str, filename: str) -> bool:
    return mime_type.lower() == _TEXT_MIME or filename.lower().endswith(_TEXT_EXTENSION)


def to_attachment_out(attachment: Attachment) -> AttachmentOut:
    return AttachmentOut(
        id=str(attachment.id),
        article_id=str(attachment.article_id),
        filename=attachment.filename,
        mime_type=attachment.mime_type,
        size=attachment.size,
        backend=StorageBackend(attachment.backend),
        created_at=attachment.created_at,
    )


async def read_upload_limited(upload: UploadFile, *, max_size: int) -> bytes:
    total = 0
    chunks: list[bytes] = []
    while True:
        chunk = await upload.read(_READ_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if total > max_size:
            raise PayloadTooLarge(
                f"File '{upload.filename or 'upload'}' exceeds max size of {max_size} bytes."
            )
        chunks.append(chunk)
    return b"".join(chunks)


async def _write_blob(
    blobs: BlobStore,
    *,
    content: bytes,
    filename: str,
    mime_type: str,
) -> tuple[StorageBackend, str]:
    candidates = blobs.upload_candidates()
    if not candidates:
        raise UploadFailed("No storage backend is available.", stage=UploadStage.PENDING.value)

    for backend in candidates:
        try:
            blob_ref = await backend.write(content, filename, mime_type)
        except StorageFailure:
            logger.warning(
                "Blob write to %s backend failed; trying next backend.",
                backend.kind.value,
                exc_info=True,
            )
            continue
        return backend.kind, blob_ref

    raise UploadFailed(
        f"Could not store '{filename}' in any storage backend.",
        stage=UploadStage.PENDING.value,
    )


async def upload_attachment(
    session: AsyncSession,
    blobs: BlobStore,
    *,
    article_id: UUID | str,
    content: bytes,
    filename: str | None,
    mime_type: str | None,
) -> AttachmentOut:
    """Store a file for an article: blob, then record, then article list.

    The steps are not atomic. A failure after the blob write leaves an orphaned
    blob; a failure after the record write leaves a record the article does not
    list. Both are reported as ``UploadFailed`` with the last completed stage and
    left for reconciliation to find.
    """
    if not filename:
        raise ValidationFailed("Uploaded file is missing a filename.")
    if not content:
        raise ValidationFailed(f"File '{filename}' is empty.")

    normalized_name = _normalize_filename(filename)
    resolved_mime = _resolve_mime_type(mime_type, normalized_name)
    if not _is_allowed(resolved_mime, _file_extension(normalized_name)):
        raise ValidationFailed(
            f"Invalid file type: {resolved_mime}. Only text files, documents and images are allowed."
        )

    article_uuid = parse_uuid(article_id, field_name="article_id")
    await articles_repo.ensure_article(session, article_uuid)

    stage = UploadStage.PENDING
    backend, blob_ref = await _write_blob(
        blobs,
        content=content,
        filename=normalized_name,
        mime_type=resolved_mime,
    )
    stage = UploadStage.BLOB_WRITTEN

    try:
        record = await repo.create_attachment(
            session,
            article_id=article_uuid,
            filename=normalized_name,
            blob_ref=blob_ref,
            backend=backend.value,
            mime_type=resolved_mime,
            size=len(content),
        )
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error(
            "Attachment record write failed at stage %s; blob %s:%s is now orphaned.",
            stage.value,
            backend.value,
            blob_ref,
            exc_info=True,
        )
        raise UploadFailed("Could not save attachment metadata.", stage=stage.value) from exc
    stage = UploadStage.RECORD_CREATED
    attachment = to_attachment_out(record)

    try:
        await articles_repo.append_attachment(
            session,
            article_id=article_uuid,
            attachment_id=record.id,
        )
    except (SQLAlchemyError, NotFound) as exc:
        await session.rollback()
        logger.error(
            "Article list update failed at stage %s; attachment %s is unreachable from article %s.",
            stage.value,
            attachment.id,
            article_uuid,
            exc_info=True,
        )
        raise UploadFailed("Could not link attachment to its article.", stage=stage.value) from exc
    stage = UploadStage.LIST_UPDATED

    logger.info(
        "Attachment %s stored for article %s in %s backend (%d bytes, %s).",
        attachment.id,
        article_uuid,
        backend.value,
        attachment.size,
        stage.value,
    )
    return attachment


async def list_attachments(session: AsyncSession, *, article_id: UUID | str) -> list[AttachmentOut]:
    article_uuid = parse_uuid(article_id, field_name="article_id")
    article = await articles_repo.ensure_article(session, article_uuid)

    linked_ids: list[UUID] = []
    for item in article.attachment_ids or []:
        try:
            linked_ids.append(UUID(item))
        except ValueError:
            logger.warning("Article %s lists malformed attachment id %r.", article_uuid, item)
    rows = await repo.list_for_ids(session, linked_ids)
    by_id = {row.id: row for row in rows}
    return [to_attachment_out(by_id[item]) for item in linked_ids if item in by_id]


async def _load_record(session: AsyncSession, attachment_id: UUID | str) -> Attachment:
    attachment_uuid = parse_uuid(attachment_id, field_name="attachment_id")
    record = await repo.get_attachment(session, attachment_uuid)
    if record is None:
        raise NotFound(f"Attachment '{attachment_id}' was not found.")
    return record


def _blob_missing(record: Attachment, exc: Exception) -> BlobMissing:
    logger.error(
        "Attachment %s references %s blob %s that could not be read: %s",
        record.id,
        record.backend,
        record.blob_ref,
        exc,
    )
    return BlobMissing(f"Attachment file for '{record.id}' is missing.")


async def _open_stream(blobs: BlobStore, record: Attachment) -> AsyncIterator[bytes]:
    try:
        return await blobs.get(record.backend).open_stream(record.blob_ref)
    except (BlobNotFound, StorageFailure) as exc:
        raise _blob_missing(record, exc) from exc


async def open_download(
    session: AsyncSession,
    blobs: BlobStore,
    *,
    attachment_id: UUID | str,
) -> AttachmentStream:
    record = await _load_record(session, attachment_id)
    chunks = await _open_stream(blobs, record)
    return AttachmentStream(
        attachment=to_attachment_out(record),
        chunks=chunks,
        disposition="attachment",
    )


async def view_attachment(
    session: AsyncSession,
    blobs: BlobStore,
    *,
    attachment_id: UUID | str,
) -> AttachmentStream | AttachmentText:
    """Inline view: images stream, plain text comes back whole as text."""
    record = await _load_record(session, attachment_id)

    if is_image(record.mime_type):
        chunks = await _open_stream(blobs, record)
        return AttachmentStream(
            attachment=to_attachment_out(record),
            chunks=chunks,
            disposition="inline",
            cross_origin=True,
        )

    if is_text(record.mime_type, record.filename):
        try:
            payload = await blobs.get(record.backend).read_all(record.blob_ref)
        except (BlobNotFound, StorageFailure) as exc:
            raise _blob_missing(record, exc) from exc
        return AttachmentText(
            content=payload.decode("utf-8", errors="replace"),
            filename=record.filename,
        )

    raise UnsupportedView(
        f"Attachment type '{record.mime_type}' cannot be viewed inline; download it instead."
    )


async def delete_blob(
    session: AsyncSession,
    blobs: BlobStore,
    *,
    backend: StorageBackend | str,
    blob_ref: str,
    article_id: UUID | str | None = None,
) -> bool:
    """Delete a blob without raising. A failed delete is tracked as an orphan."""
    try:
        return await blobs.get(backend).delete(blob_ref)
    except StorageFailure as exc:
        logger.error("Error deleting %s blob %s: %s", backend, blob_ref, exc)
        try:
            await cleanup_repo.track_orphan(
                session,
                file_id=blob_ref,
                storage_type=StorageBackend(backend).value,
                reason=OrphanReason.DELETE_FAILED,
                entity_id=str(article_id) if article_id is not None else None,
                details={"error": str(exc)},
            )
        except SQLAlchemyError:
            await session.rollback()
            logger.error("Failed to track orphaned blob %s.", blob_ref, exc_info=True)
        return False


async def delete_attachment(
    session: AsyncSession,
    blobs: BlobStore,
    *,
    article_id: UUID | str,
    attachment_id: UUID | str,
) -> bool:
    """Unlink, delete the blob, then delete the record.

    The record is removed even when the blob could not be deleted. Returns
    whether the blob deletion succeeded.
    """
    article_uuid = parse_uuid(article_id, field_name="article_id")
    attachment_uuid = parse_uuid(attachment_id, field_name="attachment_id")
    await articles_repo.ensure_article(session, article_uuid)
    record = await repo.get_attachment(session, attachment_uuid)
    if record is None or record.article_id != article_uuid:
        raise NotFound(f"Attachment '{attachment_id}' was not found.")
    backend, blob_ref = record.backend, record.blob_ref

    stage = DeletionStage.PENDING
    await articles_repo.remove_attachment(
        session,
        article_id=article_uuid,
        attachment_id=attachment_uuid,
    )
    stage = DeletionStage.LIST_UPDATED

    file_deleted = await delete_blob(
        session,
        blobs,
        backend=backend,
        blob_ref=blob_ref,
        article_id=article_uuid,
    )
    stage = DeletionStage.BLOB_DELETED if file_deleted else DeletionStage.BLOB_MISSING
    if not file_deleted:
        logger.warning(
            "File deletion failed but continuing with record deletion: %s:%s",
            backend,
            blob_ref,
        )

    await repo.delete_attachment(session, attachment_uuid)
    stage = DeletionStage.RECORD_DELETED
    logger.info("Attachment %s deleted (%s).", attachment_uuid, stage.value)
    return file_deleted


async def discard_record(
    session: AsyncSession,
    blobs: BlobStore,
    *,
    attachment_id: UUID | str,
    remove_blob: bool,
) -> bool:
    """Remove a record reconciliation flagged. Returns False if it is already gone."""
    attachment_uuid = parse_uuid(attachment_id, field_name="attachment_id")
    record = await repo.get_attachment(session, attachment_uuid)
    if record is None:
        return False
    article_id, backend, blob_ref = record.article_id, record.backend, record.blob_ref

    try:
        await articles_repo.remove_attachment(
            session,
            article_id=article_id,
            attachment_id=attachment_uuid,
        )
    except NotFound:
        logger.info("Article %s is gone; discarding attachment %s anyway.", article_id, attachment_uuid)

    if remove_blob:
        await blobs.get(backend).delete(blob_ref)

    await repo.delete_attachment(session, attachment_uuid)
    logger.info("Discarded attachment record %s.", attachment_uuid)
    return True


async def discard_blob(
    blobs: BlobStore,
    *,
    backend: StorageBackend | str,
    blob_ref: str,
) -> bool:
    """Delete an unreferenced blob. Raises ``StorageFailure`` on driver errors."""
    return await blobs.get(backend).delete(blob_ref)


async def drop_reference(
    session: AsyncSession,
    *,
    article_id: UUID | str,
    attachment_id: str,
) -> bool:
    article_uuid = parse_uuid(article_id, field_name="article_id")
    try:
        return await articles_repo.remove_attachment(
            session,
            article_id=article_uuid,
            attachment_id=attachment_id,
        )
    except NotFound:
        return False
