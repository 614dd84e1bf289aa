from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.api.deps import get_blob_store, get_principal
from newsdesk.core.config import get_settings
from newsdesk.db.session import get_db_session
from newsdesk.features.storage import BlobStore

from .service import (
    delete_orphaned_file,
    list_orphaned_files,
    process_orphans,
    scan,
    update_orphaned_file,
)
from .types import (
    OrphanedFileList,
    OrphanedFileUpdateInput,
    ProcessOrphansInput,
    ResolvedFilter,
)

router = APIRouter(prefix="/api/admin/cleanup", tags=["admin-cleanup"])


@router.get("/orphaned-files", response_model=OrphanedFileList)
async def get_orphaned_files(
    resolved: ResolvedFilter = Query(default="false"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_db_session),
) -> OrphanedFileList:
    return await list_orphaned_files(session, resolved=resolved, page=page, limit=limit)


@router.post("/process-orphaned")
async def post_process_orphaned(
    payload: ProcessOrphansInput | None = Body(default=None),
    session: AsyncSession = Depends(get_db_session),
    blobs: BlobStore = Depends(get_blob_store),
) -> dict:
    limit = payload.limit if payload is not None else ProcessOrphansInput().limit
    results = await process_orphans(session, blobs, limit=limit)
    return {"message": "Orphaned files processed", "results": results.model_dump()}


@router.post("/scan")
async def post_scan(
    session: AsyncSession = Depends(get_db_session),
    blobs: BlobStore = Depends(get_blob_store),
) -> dict:
    settings = get_settings()
    results = await scan(session, blobs, grace_seconds=settings.orphan_grace_seconds)
    return {"message": "Scan completed", "results": results.model_dump()}


@router.put("/orphaned-files/{orphan_id}")
async def put_orphaned_file(
    orphan_id: str,
    payload: OrphanedFileUpdateInput,
    session: AsyncSession = Depends(get_db_session),
    principal: str | None = Depends(get_principal),
) -> dict:
    orphaned_file = await update_orphaned_file(
        session,
        orphan_id=orphan_id,
        resolved=payload.resolved,
        resolution=payload.resolution,
        resolved_by=principal,
    )
    return {"message": "Orphaned file updated", "orphaned_file": orphaned_file.model_dump(mode="json")}


@router.delete("/orphaned-files/{orphan_id}")
async def remove_orphaned_file(
    orphan_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> dict:
    file_id = await delete_orphaned_file(session, orphan_id=orphan_id)
    return {"message": "Orphaned file record deleted", "file_id": file_id}
