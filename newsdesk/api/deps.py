from __future__ import annotations

from fastapi import Request

from newsdesk.features.shared.errors import StorageFailure
from newsdesk.features.storage import BlobStore


def get_blob_store(request: Request) -> BlobStore:
    blob_store = getattr(request.app.state, "blob_store", None)
    if blob_store is None:
        raise StorageFailure("Blob store is not initialized.")
    return blob_store


def get_principal(request: Request) -> str | None:
    """Operator id set on the request by the upstream auth layer, if any."""
    principal = getattr(request.state, "principal", None)
    return str(principal) if principal is not None else None
