from .base import Base
from .models import Article, Attachment, BlobChunk, BlobFile, OrphanedFile

__all__ = [
    "Base",
    "Article",
    "Attachment",
    "BlobChunk",
    "BlobFile",
    "OrphanedFile",
]
