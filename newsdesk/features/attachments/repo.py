from __future__ import annotations

from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.db.models import Attachment


async def create_attachment(
    session: AsyncSession,
    *,
    article_id: UUID,
    filename: str,
    blob_ref: str,
    backend: str,
    mime_type: str,
    size: int,
) -> Attachment:
    attachment = Attachment(
        article_id=article_id,
        filename=filename,
        blob_ref=blob_ref,
        backend=backend,
        mime_type=mime_type,
        size=size,
    )
    session.add(attachment)
    await session.commit()
    await session.refresh(attachment)
    return attachment


async def get_attachment(session: AsyncSession, attachment_id: UUID) -> Attachment | None:
    return await session.get(Attachment, attachment_id)


async def list_for_ids(session: AsyncSession, attachment_ids: Sequence[UUID]) -> Sequence[Attachment]:
    if not attachment_ids:
        return []
    stmt = select(Attachment).where(Attachment.id.in_(list(attachment_ids)))
    return (await session.execute(stmt)).scalars().all()


async def list_all(session: AsyncSession) -> Sequence[Attachment]:
    stmt = select(Attachment).order_by(Attachment.created_at, Attachment.id)
    return (await session.execute(stmt)).scalars().all()


async def delete_attachment(session: AsyncSession, attachment_id: UUID) -> bool:
    result = await session.execute(delete(Attachment).where(Attachment.id == attachment_id))
    await session.commit()
    return bool(result.rowcount)


async def find_by_blob(session: AsyncSession, *, backend: str, blob_ref: str) -> Attachment | None:
    stmt = (
        select(Attachment)
        .where(Attachment.backend == backend, Attachment.blob_ref == blob_ref)
        .limit(1)
    )
    return (await session.execute(stmt)).scalars().first()
