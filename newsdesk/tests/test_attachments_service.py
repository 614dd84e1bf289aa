from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from starlette.datastructures import UploadFile

from newsdesk.db.models import Attachment, OrphanedFile
from newsdesk.features.articles import repo as articles_repo
from newsdesk.features.attachments import repo as attachments_repo
from newsdesk.features.attachments import service
from newsdesk.features.attachments.schemas import AttachmentStream, AttachmentText
from newsdesk.features.cleanup import service as cleanup_service
from newsdesk.features.shared.errors import (
    BlobMissing,
    NotFound,
    PayloadTooLarge,
    StorageFailure,
    UnsupportedView,
    UploadFailed,
    ValidationFailed,
)
from newsdesk.features.storage import StorageBackend

_PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24


async def _collect(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


async def _attachment_rows(session) -> list[Attachment]:
    return list((await session.execute(select(Attachment))).scalars().all())


async def _upload(session, blob_store, article, *, content=b"hello note", filename="note.txt", mime_type="text/plain"):
    return await service.upload_attachment(
        session,
        blob_store,
        article_id=article.id,
        content=content,
        filename=filename,
        mime_type=mime_type,
    )


@pytest.mark.asyncio
async def test_upload_then_view_plain_text(session, blob_store, article):
    uploaded = await _upload(session, blob_store, article)

    assert uploaded.size == 10
    assert uploaded.mime_type == "text/plain"
    assert uploaded.backend is StorageBackend.DATABASE
    assert uploaded.article_id == str(article.id)

    view = await service.view_attachment(session, blob_store, attachment_id=uploaded.id)
    assert view == AttachmentText(content="hello note", filename="note.txt")

    await session.refresh(article)
    assert article.attachment_ids == [uploaded.id]


@pytest.mark.asyncio
async def test_upload_falls_back_to_filesystem_when_database_is_down(session, blob_store, article, tmp_path):
    await blob_store.get(StorageBackend.DATABASE).close()

    uploaded = await _upload(session, blob_store, article, content=b"on disk", filename="disk.txt")

    assert uploaded.backend is StorageBackend.FILESYSTEM
    record = (await _attachment_rows(session))[0]
    assert (tmp_path / "uploads" / record.blob_ref).read_bytes() == b"on disk"
    stream = await service.open_download(session, blob_store, attachment_id=uploaded.id)
    assert stream.disposition == "attachment"
    assert await _collect(stream.chunks) == b"on disk"


@pytest.mark.asyncio
async def test_upload_falls_back_when_database_write_fails(session, blob_store, article, monkeypatch):
    async def _broken_write(*_args, **_kwargs):
        raise StorageFailure("database write failed")

    monkeypatch.setattr(blob_store.get(StorageBackend.DATABASE), "write", _broken_write)

    uploaded = await _upload(session, blob_store, article)

    assert uploaded.backend is StorageBackend.FILESYSTEM


@pytest.mark.asyncio
async def test_upload_fails_without_any_writable_backend(session, blob_store, article, monkeypatch):
    async def _broken_write(*_args, **_kwargs):
        raise StorageFailure("write failed")

    for backend in blob_store.backends():
        monkeypatch.setattr(backend, "write", _broken_write)

    with pytest.raises(UploadFailed) as exc_info:
        await _upload(session, blob_store, article)

    assert exc_info.value.stage == "pending"
    assert await _attachment_rows(session) == []


@pytest.mark.asyncio
async def test_record_failure_leaves_orphaned_blob_for_scan(session, blob_store, article, monkeypatch):
    async def _broken_create(*_args, **_kwargs):
        raise SQLAlchemyError("metadata insert failed")

    monkeypatch.setattr(attachments_repo, "create_attachment", _broken_create)

    with pytest.raises(UploadFailed) as exc_info:
        await _upload(session, blob_store, article)
    assert exc_info.value.stage == "blob-written"
    assert await _attachment_rows(session) == []

    result = await cleanup_service.scan(
        session,
        blob_store,
        grace_seconds=0,
        now=datetime.now(timezone.utc) + timedelta(seconds=5),
    )

    assert result.found == {"blob-written": 1}
    orphans = (await session.execute(select(OrphanedFile))).scalars().all()
    assert [(row.reason, row.storage_type, row.resolved) for row in orphans] == [
        ("blob-written", "database", False)
    ]


@pytest.mark.asyncio
async def test_list_failure_leaves_unlinked_record_for_scan(session, blob_store, article, monkeypatch):
    async def _broken_append(*_args, **_kwargs):
        raise SQLAlchemyError("list update failed")

    monkeypatch.setattr(articles_repo, "append_attachment", _broken_append)

    with pytest.raises(UploadFailed) as exc_info:
        await _upload(session, blob_store, article)
    assert exc_info.value.stage == "record-created"
    assert len(await _attachment_rows(session)) == 1

    result = await cleanup_service.scan(
        session,
        blob_store,
        grace_seconds=0,
        now=datetime.now(timezone.utc) + timedelta(seconds=5),
    )
    assert result.found == {"record-created": 1}


@pytest.mark.asyncio
async def test_list_attachments_follows_article_order(session, blob_store, article):
    first = await _upload(session, blob_store, article, filename="first.txt")
    second = await _upload(session, blob_store, article, filename="second.txt")

    listed = await service.list_attachments(session, article_id=str(article.id))

    assert [item.id for item in listed] == [first.id, second.id]


@pytest.mark.asyncio
async def test_image_view_streams_inline_with_cross_origin(session, blob_store, article):
    uploaded = await _upload(session, blob_store, article, content=_PNG, filename="logo.png", mime_type="image/png")

    view = await service.view_attachment(session, blob_store, attachment_id=uploaded.id)

    assert isinstance(view, AttachmentStream)
    assert view.disposition == "inline"
    assert view.cross_origin is True
    assert await _collect(view.chunks) == _PNG


@pytest.mark.asyncio
async def test_pdf_cannot_be_viewed_inline(session, blob_store, article):
    uploaded = await _upload(
        session,
        blob_store,
        article,
        content=b"%PDF-1.7",
        filename="brief.pdf",
        mime_type="application/pdf",
    )

    with pytest.raises(UnsupportedView):
        await service.view_attachment(session, blob_store, attachment_id=uploaded.id)


@pytest.mark.asyncio
async def test_missing_blob_surfaces_as_blob_missing(session, blob_store, article):
    uploaded = await _upload(session, blob_store, article)
    record = (await _attachment_rows(session))[0]
    await blob_store.get(record.backend).delete(record.blob_ref)

    with pytest.raises(BlobMissing):
        await service.open_download(session, blob_store, attachment_id=uploaded.id)
    with pytest.raises(BlobMissing):
        await service.view_attachment(session, blob_store, attachment_id=uploaded.id)


@pytest.mark.asyncio
async def test_delete_with_missing_file_still_removes_record(session, blob_store, article, tmp_path):
    await blob_store.get(StorageBackend.DATABASE).close()
    uploaded = await _upload(session, blob_store, article)
    record = (await _attachment_rows(session))[0]
    (tmp_path / "uploads" / record.blob_ref).unlink()

    file_deleted = await service.delete_attachment(
        session,
        blob_store,
        article_id=article.id,
        attachment_id=uploaded.id,
    )

    assert file_deleted is False
    assert await _attachment_rows(session) == []
    await session.refresh(article)
    assert article.attachment_ids == []

    with pytest.raises(NotFound):
        await service.delete_attachment(
            session,
            blob_store,
            article_id=article.id,
            attachment_id=uploaded.id,
        )


@pytest.mark.asyncio
async def test_delete_removes_blob_record_and_reference(session, blob_store, article):
    uploaded = await _upload(session, blob_store, article)
    record = (await _attachment_rows(session))[0]
    backend = blob_store.get(record.backend)

    file_deleted = await service.delete_attachment(
        session,
        blob_store,
        article_id=str(article.id),
        attachment_id=uploaded.id,
    )

    assert file_deleted is True
    assert await backend.exists(record.blob_ref) is False
    assert await _attachment_rows(session) == []


@pytest.mark.asyncio
async def test_failed_blob_delete_is_tracked(session, blob_store, article, monkeypatch):
    uploaded = await _upload(session, blob_store, article)
    record = (await _attachment_rows(session))[0]
    blob_ref = record.blob_ref

    async def _broken_delete(_blob_ref):
        raise StorageFailure("disk is read-only")

    monkeypatch.setattr(blob_store.get(record.backend), "delete", _broken_delete)

    file_deleted = await service.delete_attachment(
        session,
        blob_store,
        article_id=article.id,
        attachment_id=uploaded.id,
    )

    assert file_deleted is False
    assert await _attachment_rows(session) == []
    orphans = (await session.execute(select(OrphanedFile))).scalars().all()
    assert [(row.file_id, row.reason, row.entity_id) for row in orphans] == [
        (blob_ref, "delete-failed", str(article.id))
    ]


@pytest.mark.asyncio
async def test_delete_rejects_attachment_of_another_article(session, blob_store, article):
    uploaded = await _upload(session, blob_store, article)
    with pytest.raises(NotFound):
        await service.delete_attachment(
            session,
            blob_store,
            article_id=uuid4(),
            attachment_id=uploaded.id,
        )
    assert len(await _attachment_rows(session)) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("content", "filename", "mime_type"),
    [
        (b"", "empty.txt", "text/plain"),
        (b"data", None, "text/plain"),
        (b"MZ", "tool.exe", "application/x-msdownload"),
    ],
)
async def test_upload_validation_errors(session, blob_store, article, content, filename, mime_type):
    with pytest.raises(ValidationFailed):
        await _upload(session, blob_store, article, content=content, filename=filename, mime_type=mime_type)
    assert await _attachment_rows(session) == []


@pytest.mark.asyncio
async def test_upload_requires_existing_article(session, blob_store):
    with pytest.raises(ValidationFailed):
        await service.upload_attachment(
            session,
            blob_store,
            article_id="not-a-uuid",
            content=b"data",
            filename="a.txt",
            mime_type="text/plain",
        )
    with pytest.raises(NotFound):
        await service.upload_attachment(
            session,
            blob_store,
            article_id=uuid4(),
            content=b"data",
            filename="a.txt",
            mime_type="text/plain",
        )
    assert [blob for backend in blob_store.backends() for blob in await backend.list_blobs()] == []


@pytest.mark.asyncio
async def test_unknown_attachment_is_not_found(session, blob_store):
    with pytest.raises(NotFound):
        await service.open_download(session, blob_store, attachment_id=uuid4())


@pytest.mark.asyncio
async def test_read_upload_limited_rejects_oversized_files():
    upload = UploadFile(file=io.BytesIO(b"x" * 10), filename="big.txt")

    with pytest.raises(PayloadTooLarge):
        await service.read_upload_limited(upload, max_size=5)


def test_filename_is_reduced_to_a_safe_basename():
    assert service._normalize_filename("../../etc/pass wd?.txt") == "pass wd_.txt"
    assert service._normalize_filename("///") == "upload"


@pytest.mark.asyncio
async def test_delete_blob_is_safe_to_repeat(session, blob_store):
    backend = blob_store.get(StorageBackend.FILESYSTEM)
    blob_ref = await backend.write(b"twice", "twice.txt")

    assert await service.delete_blob(session, blob_store, backend="filesystem", blob_ref=blob_ref) is True
    assert await service.delete_blob(session, blob_store, backend="filesystem", blob_ref=blob_ref) is False
    assert (await session.execute(select(OrphanedFile))).scalars().all() == []
