from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.db.models import OrphanedFile

from .types import ENTITY_TYPE_NEWS, OrphanReason

logger = logging.getLogger(__name__)


async def find_unresolved(
    session: AsyncSession,
    *,
    file_id: str,
    storage_type: str,
    reason: OrphanReason | str,
) -> OrphanedFile | None:
    stmt = (
        select(OrphanedFile)
        .where(
            OrphanedFile.file_id == file_id,
            OrphanedFile.storage_type == storage_type,
            OrphanedFile.reason == OrphanReason(reason).value,
            OrphanedFile.resolved.is_(False),
        )
        .limit(1)
    )
    return (await session.execute(stmt)).scalars().first()


async def track_orphan(
    session: AsyncSession,
    *,
    file_id: str,
    storage_type: str,
    reason: OrphanReason | str,
    entity_type: str = ENTITY_TYPE_NEWS,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> tuple[OrphanedFile, bool]:
    """Register an inconsistency once. Returns the entry and whether it is new."""
    existing = await find_unresolved(
        session,
        file_id=file_id,
        storage_type=storage_type,
        reason=reason,
    )
    if existing is not None:
        return existing, False

    orphan = OrphanedFile(
        file_id=file_id,
        storage_type=storage_type,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=OrphanReason(reason).value,
        resolved=False,
        details=dict(details or {}),
    )
    session.add(orphan)
    await session.commit()
    await session.refresh(orphan)
    logger.info(
        "Tracked orphaned file: %s (%s, %s, %s)",
        file_id,
        storage_type,
        entity_type,
        orphan.reason,
    )
    return orphan, True


async def list_orphans(
    session: AsyncSession,
    *,
    resolved: bool | None,
    limit: int,
    offset: int,
) -> tuple[Sequence[OrphanedFile], int]:
    stmt = select(OrphanedFile)
    count_stmt = select(func.count()).select_from(OrphanedFile)
    if resolved is not None:
        stmt = stmt.where(OrphanedFile.resolved.is_(resolved))
        count_stmt = count_stmt.where(OrphanedFile.resolved.is_(resolved))

    stmt = stmt.order_by(OrphanedFile.created_at.desc(), OrphanedFile.id).offset(offset).limit(limit)
    rows = (await session.execute(stmt)).scalars().all()
    total = int((await session.execute(count_stmt)).scalar_one())
    return rows, total


async def list_unresolved(session: AsyncSession, *, limit: int) -> Sequence[OrphanedFile]:
    stmt = (
        select(OrphanedFile)
        .where(OrphanedFile.resolved.is_(False))
        .order_by(OrphanedFile.created_at, OrphanedFile.id)
        .limit(limit)
    )
    return (await session.execute(stmt)).scalars().all()


async def get_orphan(session: AsyncSession, orphan_id: UUID) -> OrphanedFile | None:
    return await session.get(OrphanedFile, orphan_id)


async def set_resolution(
    session: AsyncSession,
    orphan: OrphanedFile,
    *,
    resolved: bool,
    details: dict[str, Any],
) -> OrphanedFile:
    orphan.resolved = resolved
    orphan.resolved_at = datetime.now(timezone.utc) if resolved else None
    orphan.details = {**(orphan.details or {}), **details}
    orphan.updated_at = datetime.now(timezone.utc)
    await session.commit()
    await session.refresh(orphan)
    return orphan


async def delete_orphan(session: AsyncSession, orphan_id: UUID) -> OrphanedFile | None:
    orphan = await session.get(OrphanedFile, orphan_id)
    if orphan is None:
        return None
    await session.delete(orphan)
    await session.commit()
    return orphan
