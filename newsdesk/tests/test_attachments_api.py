from __future__ import annotations

import importlib
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

attachments_api = importlib.import_module("newsdesk.features.attachments.api")
from newsdesk.core.config import get_settings
from newsdesk.features.attachments.schemas import AttachmentOut, AttachmentStream, AttachmentText
from newsdesk.features.shared.errors import BlobMissing, NotFound, UnsupportedView, UploadFailed
from newsdesk.features.storage import StorageBackend
from newsdesk.main import app


class _DummySession:
    pass


class _DummyBlobStore:
    pass


def _attachment(article_id: str, *, filename="note.txt", mime_type="text/plain", size=10) -> AttachmentOut:
    return AttachmentOut(
        id=str(uuid4()),
        article_id=article_id,
        filename=filename,
        mime_type=mime_type,
        size=size,
        backend=StorageBackend.DATABASE,
        created_at=datetime.now(timezone.utc),
    )


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


class _AttachmentsStore:
    def __init__(self):
        self.items: dict[str, AttachmentOut] = {}
        self.payloads: dict[str, bytes] = {}

    async def upload_attachment(self, _session, _blobs, *, article_id, content, filename, mime_type):
        if mime_type == "application/x-msdownload":
            raise UploadFailed("Could not store file.", stage="pending")
        item = _attachment(article_id, filename=filename, mime_type=mime_type, size=len(content))
        self.items[item.id] = item
        self.payloads[item.id] = content
        return item

    async def list_attachments(self, _session, *, article_id):
        return [item for item in self.items.values() if item.article_id == article_id]

    async def delete_attachment(self, _session, _blobs, *, article_id, attachment_id):
        if self.items.pop(attachment_id, None) is None:
            raise NotFound(f"Attachment '{attachment_id}' was not found.")
        self.payloads.pop(attachment_id, None)
        return False

    def _get(self, attachment_id):
        item = self.items.get(attachment_id)
        if item is None:
            raise NotFound(f"Attachment '{attachment_id}' was not found.")
        if item.filename == "gone.txt":
            raise BlobMissing(f"Attachment file for '{attachment_id}' is missing.")
        return item

    async def view_attachment(self, _session, _blobs, *, attachment_id):
        item = self._get(attachment_id)
        if item.mime_type.startswith("image/"):
            return AttachmentStream(
                attachment=item,
                chunks=_chunks(self.payloads[attachment_id]),
                disposition="inline",
                cross_origin=True,
            )
        if item.mime_type == "text/plain":
            return AttachmentText(content=self.payloads[attachment_id].decode(), filename=item.filename)
        raise UnsupportedView(f"Attachment type '{item.mime_type}' cannot be viewed inline; download it instead.")

    async def open_download(self, _session, _blobs, *, attachment_id):
        item = self._get(attachment_id)
        payload = self.payloads[attachment_id]
        return AttachmentStream(
            attachment=item,
            chunks=_chunks(payload[:3], payload[3:]),
            disposition="attachment",
        )


@pytest.fixture
def store(monkeypatch):
    fake = _AttachmentsStore()
    monkeypatch.setattr(attachments_api, "upload_attachment", fake.upload_attachment)
    monkeypatch.setattr(attachments_api, "list_attachments", fake.list_attachments)
    monkeypatch.setattr(attachments_api, "delete_attachment", fake.delete_attachment)
    monkeypatch.setattr(attachments_api, "view_attachment", fake.view_attachment)
    monkeypatch.setattr(attachments_api, "open_download", fake.open_download)

    async def _override_db():
        yield _DummySession()

    app.dependency_overrides[attachments_api.get_db_session] = _override_db
    app.dependency_overrides[attachments_api.get_blob_store] = lambda: _DummyBlobStore()
    yield fake
    app.dependency_overrides.clear()


def test_upload_list_view_and_delete(store):
    client = TestClient(app)
    article_id = str(uuid4())

    created = client.post(
        f"/api/articles/{article_id}/attachments",
        files={"file": ("note.txt", b"hello note", "text/plain")},
    )
    assert created.status_code == 201
    body = created.json()
    assert body["size"] == 10
    assert body["backend"] == "database"
    attachment_id = body["id"]

    listed = client.get(f"/api/articles/{article_id}/attachments")
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [attachment_id]

    viewed = client.get(f"/api/attachments/{attachment_id}/content")
    assert viewed.status_code == 200
    assert viewed.json() == {"content": "hello note", "filename": "note.txt"}

    deleted = client.delete(f"/api/articles/{article_id}/attachments/{attachment_id}")
    assert deleted.status_code == 200
    assert deleted.json() == {"message": "Attachment deleted successfully", "file_deleted": False}

    again = client.delete(f"/api/articles/{article_id}/attachments/{attachment_id}")
    assert again.status_code == 404
    assert "was not found" in again.json()["detail"]


def test_upload_without_file_is_rejected(store):
    client = TestClient(app)

    response = client.post(f"/api/articles/{uuid4()}/attachments", data={"caption": "no file"})

    assert response.status_code == 400
    assert response.json() == {"detail": "No file uploaded"}


def test_upload_over_size_limit_is_rejected(store, monkeypatch):
    monkeypatch.setattr(get_settings(), "upload_max_size_bytes", 4)
    client = TestClient(app)

    response = client.post(
        f"/api/articles/{uuid4()}/attachments",
        files={"file": ("note.txt", b"hello note", "text/plain")},
    )

    assert response.status_code == 413
    assert store.items == {}


def test_upload_failure_reports_server_error(store):
    client = TestClient(app)

    response = client.post(
        f"/api/articles/{uuid4()}/attachments",
        files={"file": ("tool.exe", b"MZ", "application/x-msdownload")},
    )

    assert response.status_code == 500
    assert response.json() == {"detail": "Could not store file."}


def test_image_view_streams_inline_for_other_origins(store):
    client = TestClient(app)
    article_id = str(uuid4())
    created = client.post(
        f"/api/articles/{article_id}/attachments",
        files={"file": ("logo.png", b"\x89PNG-bytes", "image/png")},
    ).json()

    response = client.get(f"/api/attachments/{created['id']}/content")

    assert response.status_code == 200
    assert response.content == b"\x89PNG-bytes"
    assert response.headers["content-type"] == "image/png"
    assert response.headers["content-disposition"] == 'inline; filename="logo.png"'
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.headers["cross-origin-resource-policy"] == "cross-origin"


def test_pdf_view_is_rejected_but_download_streams(store):
    client = TestClient(app)
    article_id = str(uuid4())
    created = client.post(
        f"/api/articles/{article_id}/attachments",
        files={"file": ("brief.pdf", b"%PDF-1.7", "application/pdf")},
    ).json()

    view = client.get(f"/api/attachments/{created['id']}/content")
    assert view.status_code == 400

    download = client.get(f"/api/attachments/{created['id']}/download")
    assert download.status_code == 200
    assert download.content == b"%PDF-1.7"
    assert download.headers["content-disposition"] == 'attachment; filename="brief.pdf"'
    assert "access-control-allow-origin" not in download.headers


def test_missing_blob_and_unknown_attachment_are_not_found(store):
    client = TestClient(app)
    article_id = str(uuid4())
    created = client.post(
        f"/api/articles/{article_id}/attachments",
        files={"file": ("gone.txt", b"lost", "text/plain")},
    ).json()

    missing_blob = client.get(f"/api/attachments/{created['id']}/download")
    assert missing_blob.status_code == 404
    assert missing_blob.json()["detail"].endswith("is missing.")

    unknown = client.get(f"/api/attachments/{uuid4()}/content")
    assert unknown.status_code == 404


def test_content_disposition_encodes_non_ascii_names():
    header = attachments_api._content_disposition("attachment", "Résumé.pdf")

    assert header == "attachment; filename=\"R?sum?.pdf\"; filename*=UTF-8''R%C3%A9sum%C3%A9.pdf"
