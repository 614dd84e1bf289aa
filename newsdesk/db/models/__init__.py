from .articles import Article
from .attachments import Attachment
from .blobs import BlobChunk, BlobFile
from .cleanup import OrphanedFile

__all__ = [
    "Article",
    "Attachment",
    "BlobChunk",
    "BlobFile",
    "OrphanedFile",
]
