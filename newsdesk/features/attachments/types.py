from __future__ import annotations

from enum import Enum


class UploadStage(str, Enum):
    """Progress markers for the three non-atomic upload steps."""

    PENDING = "pending"
    BLOB_WRITTEN = "blob-written"
    RECORD_CREATED = "record-created"
    LIST_UPDATED = "list-updated"


class DeletionStage(str, Enum):
    PENDING = "pending"
    LIST_UPDATED = "list-updated"
    BLOB_DELETED = "blob-deleted"
    BLOB_MISSING = "blob-missing"
    RECORD_DELETED = "record-deleted"
