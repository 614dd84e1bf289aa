from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Response, UploadFile, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.api.deps import get_blob_store
from newsdesk.core.config import get_settings
from newsdesk.db.session import get_db_session
from newsdesk.features.shared.errors import ValidationFailed
from newsdesk.features.storage import BlobStore

from .schemas import AttachmentDeleteResult, AttachmentOut, AttachmentStream, AttachmentText
from .service import (
    delete_attachment,
    list_attachments,
    open_download,
    read_upload_limited,
    upload_attachment,
    view_attachment,
)

router = APIRouter(prefix="/api", tags=["attachments"])


def _content_disposition(disposition: str, filename: str) -> str:
    fallback = filename.encode("ascii", errors="replace").decode("ascii").replace('"', "_")
    if fallback == filename:
        return f'{disposition}; filename="{filename}"'
    return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


def _stream_response(stream: AttachmentStream) -> StreamingResponse:
    headers = {
        "Content-Disposition": _content_disposition(stream.disposition, stream.attachment.filename),
    }
    if stream.cross_origin:
        headers["Access-Control-Allow-Origin"] = "*"
        headers["Cross-Origin-Resource-Policy"] = "cross-origin"
    return StreamingResponse(
        stream.chunks,
        media_type=stream.attachment.mime_type,
        headers=headers,
    )


@router.post(
    "/articles/{article_id}/attachments",
    response_model=AttachmentOut,
    status_code=status.HTTP_201_CREATED,
)
async def post_attachment(
    article_id: str,
    file: UploadFile | None = File(default=None),
    session: AsyncSession = Depends(get_db_session),
    blobs: BlobStore = Depends(get_blob_store),
) -> AttachmentOut:
    if file is None:
        raise ValidationFailed("No file uploaded")
    settings = get_settings()
    content = await read_upload_limited(file, max_size=settings.upload_max_size_bytes)
    return await upload_attachment(
        session,
        blobs,
        article_id=article_id,
        content=content,
        filename=file.filename,
        mime_type=file.content_type,
    )


@router.get("/articles/{article_id}/attachments", response_model=list[AttachmentOut])
async def get_attachments(
    article_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> list[AttachmentOut]:
    return await list_attachments(session, article_id=article_id)


@router.delete(
    "/articles/{article_id}/attachments/{attachment_id}",
    response_model=AttachmentDeleteResult,
)
async def remove_attachment(
    article_id: str,
    attachment_id: str,
    session: AsyncSession = Depends(get_db_session),
    blobs: BlobStore = Depends(get_blob_store),
) -> AttachmentDeleteResult:
    file_deleted = await delete_attachment(
        session,
        blobs,
        article_id=article_id,
        attachment_id=attachment_id,
    )
    return AttachmentDeleteResult(
        message="Attachment deleted successfully",
        file_deleted=file_deleted,
    )


@router.get("/attachments/{attachment_id}/content", response_model=None)
async def get_attachment_content(
    attachment_id: str,
    session: AsyncSession = Depends(get_db_session),
    blobs: BlobStore = Depends(get_blob_store),
) -> Response | AttachmentText:
    view = await view_attachment(session, blobs, attachment_id=attachment_id)
    if isinstance(view, AttachmentText):
        return view
    return _stream_response(view)


@router.get("/attachments/{attachment_id}/download", response_model=None)
async def download_attachment(
    attachment_id: str,
    session: AsyncSession = Depends(get_db_session),
    blobs: BlobStore = Depends(get_blob_store),
) -> Response:
    stream = await open_download(session, blobs, attachment_id=attachment_id)
    return _stream_response(stream)
