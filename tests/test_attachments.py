from __future__ import annotations

import asyncio
import base64
import hashlib
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest

from chat_client.attachments import (
    CloudinaryAttachmentService,
    LocalAttachmentService,
    cloudinary_signature,
    create_attachment_service,
    decode_upload_payload,
)
from chat_client.errors import ConfigError, UploadError, ValidationError

PNG = b"\x89PNG\r\n\x1a\nfake-image-bytes"


def test_decode_data_url():
    payload = "data:image/png;base64," + base64.b64encode(PNG).decode()
    data, ctype = decode_upload_payload(payload)
    assert data == PNG
    assert ctype == "image/png"


def test_decode_raw_base64():
    data, ctype = decode_upload_payload(base64.b64encode(PNG).decode())
    assert data == PNG
    assert ctype == "application/octet-stream"


@pytest.mark.parametrize("payload", ["", "   ", "not*base64!", "data:image/png,rawtext"])
def test_decode_rejects_bad_payloads(payload: str):
    with pytest.raises(ValidationError):
        decode_upload_payload(payload)


def test_local_upload_writes_file_and_returns_url(tmp_path: Path):
    svc = LocalAttachmentService(tmp_path / "uploads", "/uploads/")
    att = asyncio.run(svc.upload(PNG, "image/png"))
    assert att.url.startswith("/uploads/") and att.url.endswith(".png")
    assert (tmp_path / "uploads" / att.public_id).read_bytes() == PNG
    # same bytes, same name
    assert asyncio.run(svc.upload(PNG, "image/png")) == att


def test_local_upload_rejects_empty(tmp_path: Path):
    with pytest.raises(UploadError):
        asyncio.run(LocalAttachmentService(tmp_path).upload(b""))


def test_cloudinary_signature_matches_sorted_params():
    expected = hashlib.sha1(b"folder=chat_uploads&timestamp=1700000000secret").hexdigest()
    assert cloudinary_signature({"timestamp": 1700000000, "folder": "chat_uploads"}, "secret") == expected


def _cloudinary(handler) -> CloudinaryAttachmentService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CloudinaryAttachmentService("demo", "key123", "secret", folder="chat_uploads", client=client)


def test_cloudinary_upload_posts_signed_form():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["form"] = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        return httpx.Response(
            200,
            json={"secure_url": "https://res.cloudinary.com/demo/image/upload/v1/chat_uploads/abc.png", "public_id": "chat_uploads/abc"},
        )

    att = asyncio.run(_cloudinary(handler).upload(PNG, "image/png"))
    assert att.url.startswith("https://res.cloudinary.com/")
    assert att.public_id == "chat_uploads/abc"
    assert seen["url"] == "https://api.cloudinary.com/v1_1/demo/image/upload"
    form = seen["form"]
    assert form["api_key"] == "key123"
    assert form["folder"] == "chat_uploads"
    assert form["file"].startswith("data:image/png;base64,")
    assert form["signature"] == cloudinary_signature(
        {"folder": "chat_uploads", "timestamp": form["timestamp"]}, "secret"
    )


def test_cloudinary_error_response_is_upload_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid Signature"}})

    with pytest.raises(UploadError, match="Invalid Signature"):
        asyncio.run(_cloudinary(handler).upload(PNG, "image/png"))


def test_cloudinary_transport_error_is_upload_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route", request=request)

    with pytest.raises(UploadError):
        asyncio.run(_cloudinary(handler).upload(PNG, "image/png"))


def test_factory_selects_provider(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    local = create_attachment_service({"attachments": {"provider": "local", "upload_dir": str(tmp_path)}})
    assert isinstance(local, LocalAttachmentService)

    monkeypatch.setenv("CLOUDINARY_CLOUD_NAME", "demo")
    monkeypatch.setenv("CLOUDINARY_API_KEY", "k")
    monkeypatch.setenv("CLOUDINARY_API_SECRET", "s")
    remote = create_attachment_service({"attachments": {"provider": "cloudinary"}})
    assert isinstance(remote, CloudinaryAttachmentService)
    assert remote.endpoint.endswith("/demo/image/upload")

    with pytest.raises(ConfigError):
        create_attachment_service({"attachments": {"provider": "ftp"}})


def test_cloudinary_requires_credentials():
    with pytest.raises(ConfigError):
        CloudinaryAttachmentService("demo", "", "")
