from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from newsdesk.core.config import Settings
from newsdesk.features.shared.errors import StorageFailure

from .database import DatabaseBlobBackend
from .filesystem import FilesystemBlobBackend
from .types import BlobBackend, StorageBackend

logger = logging.getLogger(__name__)

# Order matters: uploads try these in turn.
UPLOAD_PREFERENCE: tuple[StorageBackend, ...] = (
    StorageBackend.DATABASE,
    StorageBackend.FILESYSTEM,
)


class BlobStore:
    """Holds one backend per ``StorageBackend`` and owns their lifecycle."""

    def __init__(self, backends: dict[StorageBackend, BlobBackend]) -> None:
        self._backends = dict(backends)

    def get(self, backend: StorageBackend | str) -> BlobBackend:
        try:
            return self._backends[StorageBackend(backend)]
        except (KeyError, ValueError) as exc:
            raise StorageFailure(f"Unknown storage backend '{backend}'.") from exc

    def backends(self) -> list[BlobBackend]:
        return list(self._backends.values())

    def upload_candidates(self) -> list[BlobBackend]:
        return [
            self._backends[kind]
            for kind in UPLOAD_PREFERENCE
            if kind in self._backends and self._backends[kind].available
        ]

    def status(self) -> dict[str, bool]:
        return {kind.value: backend.available for kind, backend in self._backends.items()}

    async def start(self) -> None:
        for backend in self._backends.values():
            await backend.start()
        logger.info("Blob store started: %s", self.status())

    async def close(self) -> None:
        for backend in self._backends.values():
            await backend.close()


def resolve_upload_root(settings: Settings) -> Path:
    root = Path(settings.upload_storage_dir)
    if not root.is_absolute():
        project_root = Path(__file__).resolve().parents[3]
        root = project_root / root
    return root


def build_blob_store(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> BlobStore:
    return BlobStore(
        {
            StorageBackend.DATABASE: DatabaseBlobBackend(
                session_factory,
                chunk_size=settings.blob_chunk_size_bytes,
            ),
            StorageBackend.FILESYSTEM: FilesystemBlobBackend(resolve_upload_root(settings)),
        }
    )
