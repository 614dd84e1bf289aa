from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.db.models import Attachment, OrphanedFile
from newsdesk.features.articles import repo as articles_repo
from newsdesk.features.attachments import repo as attachments_repo
from newsdesk.features.attachments import service as attachments_service
from newsdesk.features.shared.errors import DomainError, NotFound, StorageFailure
from newsdesk.features.shared.ids import parse_uuid
from newsdesk.features.storage import BlobBackend, BlobStore, StorageBackend

from . import repo
from .types import (
    OrphanReason,
    OrphanedFileList,
    OrphanedFileOut,
    Pagination,
    ProcessError,
    ProcessResult,
    ResolvedFilter,
    ScanResult,
)

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 100
_MAX_PROCESS_LIMIT = 500


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_orphan_out(row: OrphanedFile) -> OrphanedFileOut:
    return OrphanedFileOut(
        id=str(row.id),
        file_id=row.file_id,
        storage_type=row.storage_type,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        reason=row.reason,
        resolved=row.resolved,
        resolved_at=row.resolved_at,
        metadata=dict(row.details or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class _ScanState:
    def __init__(self) -> None:
        self.result = ScanResult()
        self.found: Counter[str] = Counter()

    async def register(
        self,
        session: AsyncSession,
        *,
        reason: OrphanReason,
        file_id: str,
        storage_type: StorageBackend | str,
        entity_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.found[reason.value] += 1
        _, created = await repo.track_orphan(
            session,
            file_id=file_id,
            storage_type=StorageBackend(storage_type).value,
            reason=reason,
            entity_id=entity_id,
            details=details,
        )
        if created:
            self.result.registered += 1


async def scan(
    session: AsyncSession,
    blobs: BlobStore,
    *,
    grace_seconds: int,
    now: datetime | None = None,
) -> ScanResult:
    """Compare records, article lists and stored blobs; register mismatches.

    Only reads attachments and blobs. Blobs and unlinked records younger than
    ``grace_seconds`` are skipped since an upload may still be in flight, so a
    blob orphaned by a failed upload is only reported once it is that old
    (``ORPHAN_GRACE_SECONDS``, one hour by default).
    """
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=max(0, grace_seconds))
    state = _ScanState()

    records = list(await attachments_repo.list_all(session))
    links = await articles_repo.list_attachment_links(session)
    state.result.records_checked = len(records)

    records_by_backend: dict[str, list[Attachment]] = {}
    for record in records:
        records_by_backend.setdefault(record.backend, []).append(record)

    for backend in blobs.backends():
        kind = backend.kind.value
        if not backend.available:
            state.result.skipped_backends.append(kind)
            continue
        try:
            await _scan_backend(
                session,
                backend,
                records_by_backend.get(kind, []),
                state=state,
                cutoff=cutoff,
            )
        except StorageFailure:
            logger.warning("Skipping %s backend during scan.", kind, exc_info=True)
            state.result.skipped_backends.append(kind)

    record_ids = {str(record.id) for record in records}
    for record in records:
        linked = links.get(record.article_id)
        if linked is not None and str(record.id) in linked:
            continue
        if _as_utc(record.created_at) > cutoff:
            continue
        await state.register(
            session,
            reason=OrphanReason.DANGLING_RECORD,
            file_id=str(record.id),
            storage_type=record.backend,
            entity_id=str(record.article_id),
            details={"blob_ref": record.blob_ref, "article_exists": linked is not None},
        )

    for article_id, attachment_ids in links.items():
        for attachment_id in attachment_ids:
            if attachment_id in record_ids:
                continue
            # The inconsistency lives in the metadata database.
            await state.register(
                session,
                reason=OrphanReason.DANGLING_REFERENCE,
                file_id=attachment_id,
                storage_type=StorageBackend.DATABASE,
                entity_id=str(article_id),
            )

    state.result.found = dict(state.found)
    logger.info(
        "Reconciliation scan checked %d records and %d blobs; found %s, registered %d new.",
        state.result.records_checked,
        state.result.blobs_checked,
        state.result.found,
        state.result.registered,
    )
    return state.result


async def _scan_backend(
    session: AsyncSession,
    backend: BlobBackend,
    records: list[Attachment],
    *,
    state: _ScanState,
    cutoff: datetime,
) -> None:
    for record in records:
        if await backend.exists(record.blob_ref):
            continue
        await state.register(
            session,
            reason=OrphanReason.BLOB_MISSING,
            file_id=str(record.id),
            storage_type=backend.kind,
            entity_id=str(record.article_id),
            details={"blob_ref": record.blob_ref},
        )

    referenced = {record.blob_ref for record in records}
    stored = await backend.list_blobs()
    state.result.blobs_checked += len(stored)
    for blob in stored:
        if blob.ref in referenced or blob.created_at > cutoff:
            continue
        await state.register(
            session,
            reason=OrphanReason.ORPHANED_BLOB,
            file_id=blob.ref,
            storage_type=backend.kind,
            details={"size": blob.size},
        )


async def _resolve_blob(
    session: AsyncSession,
    blobs: BlobStore,
    entry: OrphanedFile,
) -> tuple[bool, str]:
    backend = blobs.get(entry.storage_type)
    if not backend.available:
        raise StorageFailure(f"{backend.kind.value} blob store is not initialized.")
    owner = await attachments_repo.find_by_blob(
        session,
        backend=entry.storage_type,
        blob_ref=entry.file_id,
    )
    if owner is not None:
        return False, f"Blob is referenced by attachment {owner.id}"
    if not await backend.exists(entry.file_id):
        return False, f"File not found in {entry.storage_type}"
    deleted = await attachments_service.discard_blob(
        blobs,
        backend=entry.storage_type,
        blob_ref=entry.file_id,
    )
    if not deleted:
        return False, f"File not found in {entry.storage_type}"
    return True, f"Successfully deleted from {entry.storage_type}"


async def _resolve_blob_missing(
    session: AsyncSession,
    blobs: BlobStore,
    entry: OrphanedFile,
) -> tuple[bool, str]:
    record = await attachments_repo.get_attachment(session, parse_uuid(entry.file_id, field_name="file_id"))
    if record is None:
        return False, "Attachment record already removed"
    backend = blobs.get(record.backend)
    if not backend.available:
        raise StorageFailure(f"{backend.kind.value} blob store is not initialized.")
    if await backend.exists(record.blob_ref):
        return False, "Blob is present again"
    await attachments_service.discard_record(
        session,
        blobs,
        attachment_id=record.id,
        remove_blob=False,
    )
    return True, "Removed attachment record with missing blob"


async def _resolve_dangling_record(
    session: AsyncSession,
    blobs: BlobStore,
    entry: OrphanedFile,
) -> tuple[bool, str]:
    record = await attachments_repo.get_attachment(session, parse_uuid(entry.file_id, field_name="file_id"))
    if record is None:
        return False, "Attachment record already removed"
    article = await articles_repo.get_article(session, record.article_id)
    if article is not None and str(record.id) in (article.attachment_ids or []):
        return False, "Attachment is linked to its article"
    await attachments_service.discard_record(
        session,
        blobs,
        attachment_id=record.id,
        remove_blob=True,
    )
    return True, "Removed unlinked attachment record and its blob"


async def _resolve_dangling_reference(
    session: AsyncSession,
    entry: OrphanedFile,
) -> tuple[bool, str]:
    if entry.entity_id is None:
        raise NotFound("Dangling reference has no owning article.")
    try:
        attachment_uuid = UUID(entry.file_id)
    except ValueError:
        attachment_uuid = None
    if attachment_uuid is not None and await attachments_repo.get_attachment(session, attachment_uuid):
        return False, "Attachment record exists"
    dropped = await attachments_service.drop_reference(
        session,
        article_id=entry.entity_id,
        attachment_id=entry.file_id,
    )
    if not dropped:
        return False, "Reference already removed"
    return True, "Removed dangling reference from article"


async def _resolve_entry(
    session: AsyncSession,
    blobs: BlobStore,
    entry: OrphanedFile,
) -> tuple[bool, str]:
    """Returns (acted, note). ``acted`` is False when nothing was left to fix."""
    reason = OrphanReason(entry.reason)
    if reason in (OrphanReason.ORPHANED_BLOB, OrphanReason.DELETE_FAILED):
        return await _resolve_blob(session, blobs, entry)
    if reason is OrphanReason.BLOB_MISSING:
        return await _resolve_blob_missing(session, blobs, entry)
    if reason is OrphanReason.DANGLING_RECORD:
        return await _resolve_dangling_record(session, blobs, entry)
    return await _resolve_dangling_reference(session, entry)


async def process_orphans(
    session: AsyncSession,
    blobs: BlobStore,
    *,
    limit: int = 50,
) -> ProcessResult:
    """Try to resolve up to ``limit`` unresolved entries, oldest first.

    Individual failures are logged and counted; they never abort the batch.
    """
    safe_limit = max(1, min(limit, _MAX_PROCESS_LIMIT))
    result = ProcessResult()
    entry_ids = [row.id for row in await repo.list_unresolved(session, limit=safe_limit)]
    if not entry_ids:
        return result

    logger.info("Processing %d orphaned files", len(entry_ids))
    for orphan_id in entry_ids:
        result.processed += 1
        entry_id = str(orphan_id)
        # Reload each entry; a rollback below expires everything loaded so far.
        entry = await repo.get_orphan(session, orphan_id)
        if entry is None:
            result.not_found += 1
            continue
        reason = entry.reason
        try:
            acted, note = await _resolve_entry(session, blobs, entry)
            await repo.set_resolution(
                session,
                entry,
                resolved=True,
                details={"resolution": note, "resolution_method": "automatic"},
            )
        except (DomainError, SQLAlchemyError, ValueError) as exc:
            if isinstance(exc, SQLAlchemyError):
                await session.rollback()
            logger.error(
                "Failed to resolve orphaned file %s (%s): %s",
                entry_id,
                reason,
                exc,
            )
            result.failed += 1
            result.errors.append(ProcessError(orphan_id=entry_id, error=str(exc)))
            continue

        if acted:
            result.succeeded += 1
        else:
            result.not_found += 1
    return result


async def run_reconciliation(
    session: AsyncSession,
    blobs: BlobStore,
    *,
    limit: int,
    grace_seconds: int,
) -> tuple[ScanResult, ProcessResult]:
    scan_result = await scan(session, blobs, grace_seconds=grace_seconds)
    process_result = await process_orphans(session, blobs, limit=limit)
    return scan_result, process_result


def _resolved_flag(value: ResolvedFilter) -> bool | None:
    if value == "true":
        return True
    if value == "false":
        return False
    return None


async def list_orphaned_files(
    session: AsyncSession,
    *,
    resolved: ResolvedFilter = "false",
    page: int = 1,
    limit: int = 20,
) -> OrphanedFileList:
    safe_page = max(1, page)
    safe_limit = max(1, min(limit, _MAX_PAGE_SIZE))
    rows, total = await repo.list_orphans(
        session,
        resolved=_resolved_flag(resolved),
        limit=safe_limit,
        offset=(safe_page - 1) * safe_limit,
    )
    return OrphanedFileList(
        orphaned_files=[to_orphan_out(row) for row in rows],
        pagination=Pagination(
            total=total,
            page=safe_page,
            limit=safe_limit,
            pages=math.ceil(total / safe_limit),
        ),
    )


async def update_orphaned_file(
    session: AsyncSession,
    *,
    orphan_id: UUID | str,
    resolved: bool,
    resolution: str | None = None,
    resolved_by: str | None = None,
) -> OrphanedFileOut:
    orphan_uuid = parse_uuid(orphan_id, field_name="orphaned file ID")
    orphan = await repo.get_orphan(session, orphan_uuid)
    if orphan is None:
        raise NotFound("Orphaned file not found")
    note = (resolution or "").strip() or "Manually resolved"
    updated = await repo.set_resolution(
        session,
        orphan,
        resolved=resolved,
        details={"resolution": note, "resolved_by": resolved_by},
    )
    return to_orphan_out(updated)


async def delete_orphaned_file(session: AsyncSession, *, orphan_id: UUID | str) -> str:
    """Remove the tracking record only. Returns the tracked file id."""
    orphan_uuid = parse_uuid(orphan_id, field_name="orphaned file ID")
    orphan = await repo.delete_orphan(session, orphan_uuid)
    if orphan is None:
        raise NotFound("Orphaned file not found")
    return orphan.file_id
