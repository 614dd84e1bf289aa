from __future__ import annotations

import logging
import re
import secrets
import time
from collections.abc import AsyncIterator
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path

import aiofiles
import aiofiles.os

from newsdesk.features.shared.errors import BlobNotFound, StorageFailure

from .types import BlobInfo, StorageBackend

logger = logging.getLogger(__name__)

_STREAM_CHUNK_SIZE = 64 * 1024
_PARTIAL_SUFFIX = ".part"
_SAFE_REF = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")
_SAFE_EXTENSION = re.compile(r"^\.[A-Za-z0-9]{1,16}$")


def _extension_for(suggested_name: str) -> str:
    extension = Path(suggested_name).suffix.lower()
    return extension if _SAFE_EXTENSION.match(extension) else ""


def generate_blob_filename(suggested_name: str) -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}{_extension_for(suggested_name)}"


class FilesystemBlobBackend:
    """Blobs stored as uniquely named files under one managed directory."""

    kind = StorageBackend.FILESYSTEM

    def __init__(self, root: Path) -> None:
        self.root = root
        self._ready = False

    @property
    def available(self) -> bool:
        return self._ready

    async def start(self) -> None:
        try:
            await aiofiles.os.makedirs(self.root, exist_ok=True)
        except OSError:
            logger.exception("Could not create uploads directory %s", self.root)
            return
        self._ready = True

    async def close(self) -> None:
        self._ready = False

    def _path_for(self, blob_ref: str) -> Path:
        if not _SAFE_REF.match(blob_ref) or blob_ref.endswith(_PARTIAL_SUFFIX):
            raise BlobNotFound(f"Blob '{blob_ref}' was not found.")
        return self.root / blob_ref

    async def write(self, content: bytes, suggested_name: str, content_type: str | None = None) -> str:
        blob_ref = generate_blob_filename(suggested_name)
        final_path = self.root / blob_ref
        partial_path = self.root / f"{blob_ref}{_PARTIAL_SUFFIX}"
        try:
            await aiofiles.os.makedirs(self.root, exist_ok=True)
            async with aiofiles.open(partial_path, "wb") as handle:
                await handle.write(content)
            written = (await aiofiles.os.stat(partial_path)).st_size
            if written != len(content):
                await self._discard_partial(partial_path)
                raise StorageFailure(
                    f"Short write for '{blob_ref}': {written} of {len(content)} bytes."
                )
            await aiofiles.os.replace(partial_path, final_path)
        except OSError as exc:
            await self._discard_partial(partial_path)
            raise StorageFailure(f"Could not write '{blob_ref}' to disk: {exc}") from exc
        logger.debug("Wrote %d bytes to %s", len(content), final_path)
        return blob_ref

    async def _discard_partial(self, partial_path: Path) -> None:
        # Scans skip .part files.
        try:
            with suppress(FileNotFoundError):
                await aiofiles.os.remove(partial_path)
        except OSError:
            logger.error("Could not remove partial upload %s", partial_path, exc_info=True)

    async def read_all(self, blob_ref: str) -> bytes:
        path = self._path_for(blob_ref)
        try:
            async with aiofiles.open(path, "rb") as handle:
                return await handle.read()
        except FileNotFoundError as exc:
            raise BlobNotFound(f"Blob '{blob_ref}' was not found.") from exc
        except OSError as exc:
            raise StorageFailure(f"Could not read '{blob_ref}': {exc}") from exc

    async def open_stream(self, blob_ref: str) -> AsyncIterator[bytes]:
        path = self._path_for(blob_ref)
        if not await aiofiles.os.path.isfile(path):
            raise BlobNotFound(f"Blob '{blob_ref}' was not found.")
        return self._iter_file(path)

    async def _iter_file(self, path: Path) -> AsyncIterator[bytes]:
        async with aiofiles.open(path, "rb") as handle:
            while True:
                chunk = await handle.read(_STREAM_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    async def delete(self, blob_ref: str) -> bool:
        try:
            path = self._path_for(blob_ref)
        except BlobNotFound:
            return False
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            logger.warning("File not found in filesystem: %s", path)
            return False
        except OSError as exc:
            raise StorageFailure(f"Could not delete '{blob_ref}': {exc}") from exc
        logger.info("Deleted file from filesystem: %s", path)
        return True

    async def exists(self, blob_ref: str) -> bool:
        try:
            path = self._path_for(blob_ref)
        except BlobNotFound:
            return False
        return await aiofiles.os.path.isfile(path)

    async def list_blobs(self) -> list[BlobInfo]:
        try:
            names = await aiofiles.os.listdir(self.root)
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StorageFailure(f"Could not list {self.root}: {exc}") from exc

        blobs: list[BlobInfo] = []
        for name in sorted(names):
            if not _SAFE_REF.match(name) or name.endswith(_PARTIAL_SUFFIX):
                continue
            path = self.root / name
            if not await aiofiles.os.path.isfile(path):
                continue
            try:
                stat = await aiofiles.os.stat(path)
            except FileNotFoundError:
                continue
            blobs.append(
                BlobInfo(
                    ref=name,
                    size=stat.st_size,
                    created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return blobs
