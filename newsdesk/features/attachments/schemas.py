from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from pydantic import BaseModel

from newsdesk.features.storage.types import StorageBackend


class AttachmentOut(BaseModel):
    id: str
    article_id: str
    filename: str
    mime_type: str
    size: int
    backend: StorageBackend
    created_at: datetime


class AttachmentText(BaseModel):
    content: str
    filename: str


class AttachmentDeleteResult(BaseModel):
    message: str
    file_deleted: bool


@dataclass
class AttachmentStream:
    attachment: AttachmentOut
    chunks: AsyncIterator[bytes]
    disposition: Literal["attachment", "inline"]
    cross_origin: bool = False
