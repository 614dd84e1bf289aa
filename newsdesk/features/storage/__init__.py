from .database import DatabaseBlobBackend
from .filesystem import FilesystemBlobBackend
from .store import BlobStore, build_blob_store, resolve_upload_root
from .types import BlobBackend, BlobInfo, StorageBackend

__all__ = [
    "BlobBackend",
    "BlobInfo",
    "BlobStore",
    "DatabaseBlobBackend",
    "FilesystemBlobBackend",
    "StorageBackend",
    "build_blob_store",
    "resolve_upload_root",
]
