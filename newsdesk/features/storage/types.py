from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol


class StorageBackend(str, Enum):
    DATABASE = "database"
    FILESYSTEM = "filesystem"


@dataclass(frozen=True)
class BlobInfo:
    ref: str
    size: int
    created_at: datetime


class BlobBackend(Protocol):
    """Contract shared by every blob backend.

    ``write`` raises ``StorageFailure`` on I/O or driver errors and never
    truncates. ``read_all`` and ``open_stream`` raise ``BlobNotFound`` when the
    reference does not resolve; ``open_stream`` resolves the reference before
    returning so callers can fail before sending any bytes. ``delete`` returns
    ``False`` when the blob is already gone.
    """

    kind: StorageBackend

    @property
    def available(self) -> bool: ...

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def write(self, content: bytes, suggested_name: str, content_type: str | None = None) -> str: ...

    async def read_all(self, blob_ref: str) -> bytes: ...

    async def open_stream(self, blob_ref: str) -> AsyncIterator[bytes]: ...

    async def delete(self, blob_ref: str) -> bool: ...

    async def exists(self, blob_ref: str) -> bool: ...

    async def list_blobs(self) -> list[BlobInfo]: ...
