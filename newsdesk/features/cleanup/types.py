from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from newsdesk.features.attachments.types import DeletionStage, UploadStage

ENTITY_TYPE_NEWS = "news"


class OrphanReason(str, Enum):
    """Kinds of inconsistency, named after the stage the data got stuck in."""

    # Blob stored, no record references it.
    ORPHANED_BLOB = UploadStage.BLOB_WRITTEN.value
    # Record stored, its article list never got the id.
    DANGLING_RECORD = UploadStage.RECORD_CREATED.value
    # Record stored, its blob is gone.
    BLOB_MISSING = DeletionStage.BLOB_MISSING.value
    # Article list holds an id with no record.
    DANGLING_REFERENCE = "dangling-reference"
    # Blob delete raised during attachment deletion.
    DELETE_FAILED = "delete-failed"


ResolvedFilter = Literal["true", "false", "all"]


class OrphanedFileOut(BaseModel):
    id: str
    file_id: str
    storage_type: str
    entity_type: str
    entity_id: str | None
    reason: str
    resolved: bool
    resolved_at: datetime | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class OrphanedFileList(BaseModel):
    orphaned_files: list[OrphanedFileOut]
    pagination: Pagination


class OrphanedFileUpdateInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resolved: bool
    resolution: str | None = Field(default=None, max_length=1_000)


class ProcessOrphansInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: int = Field(default=50, ge=1, le=500)


class ProcessError(BaseModel):
    orphan_id: str | None = None
    error: str


class ProcessResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    not_found: int = 0
    failed: int = 0
    errors: list[ProcessError] = Field(default_factory=list)


class ScanResult(BaseModel):
    records_checked: int = 0
    blobs_checked: int = 0
    registered: int = 0
    found: dict[str, int] = Field(default_factory=dict)
    skipped_backends: list[str] = Field(default_factory=list)
