"""Image attachment upload: turns raw bytes into a stable public URL."""
from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx

from .errors import ConfigError, UploadError, ValidationError

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
CLOUDINARY_API = "https://api.cloudinary.com/v1_1"

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^,;]+)*);base64,(?P<data>.*)$", re.S)
_EXT_BY_MIME = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


@dataclass(frozen=True)
class Attachment:
    url: str
    public_id: str


class AttachmentService(Protocol):
    async def upload(self, data: bytes, content_type: str = "application/octet-stream") -> Attachment: ...


def decode_upload_payload(payload: str) -> Tuple[bytes, str]:
    """Decode a base64 string or ``data:`` URL into ``(bytes, content_type)``."""
    payload = (payload or "").strip()
    if not payload:
        raise ValidationError("No file provided")

    content_type = "application/octet-stream"
    m = _DATA_URL_RE.match(payload)
    if m:
        content_type = m.group("mime") or content_type
        payload = m.group("data")
    elif payload.startswith("data:"):
        raise ValidationError("Only base64 data URLs are supported")

    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Invalid base64 payload: {e}") from e
    if not data:
        raise ValidationError("No file provided")
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationError(f"File too large ({len(data)} bytes, max {MAX_UPLOAD_BYTES})")
    return data, content_type


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:24]


# -----------------------------
# Local disk
# -----------------------------
class LocalAttachmentService:
    """Stores uploads in a directory the host serves at ``public_base_url``."""

    def __init__(self, upload_dir: str | Path, public_base_url: str = "/uploads") -> None:
        self.root = Path(upload_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)

    async def upload(self, data: bytes, content_type: str = "application/octet-stream") -> Attachment:
        if not data:
            raise UploadError("Upload failed: empty file")
        name = _digest(data) + _EXT_BY_MIME.get(content_type, "")
        path = self.root / name
        try:
            # Same bytes always map to the same name, so re-uploads are no-ops.
            if not path.exists():
                self._write(path, data)
        except OSError as e:
            logger.error("Upload error: %s", e)
            raise UploadError(f"Upload failed: {e}") from e
        return Attachment(url=f"{self.public_base_url}/{name}", public_id=name)


# -----------------------------
# Cloudinary
# -----------------------------
def cloudinary_signature(params: Dict[str, Any], api_secret: str) -> str:
    """SHA-1 signature over the alphabetically sorted ``key=value`` params."""
    to_sign = "&".join(f"{k}={params[k]}" for k in sorted(params) if params[k] not in (None, ""))
    return hashlib.sha1((to_sign + api_secret).encode("utf-8")).hexdigest()


class CloudinaryAttachmentService:
    """Signed uploads to Cloudinary's image upload REST endpoint."""

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        *,
        folder: str = "chat_uploads",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not (cloud_name and api_key and api_secret):
            raise ConfigError("Cloudinary requires cloud_name, api_key and api_secret")
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.folder = folder
        self.timeout = timeout
        self._client = client

    @property
    def endpoint(self) -> str:
        return f"{CLOUDINARY_API}/{self.cloud_name}/image/upload"

    def _form(self, data: bytes, content_type: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {"folder": self.folder, "timestamp": int(time.time())}
        form = dict(params)
        form["signature"] = cloudinary_signature(params, self.api_secret)
        form["api_key"] = self.api_key
        encoded = base64.b64encode(data).decode("ascii")
        form["file"] = f"data:{content_type};base64,{encoded}"
        return form

    async def upload(self, data: bytes, content_type: str = "application/octet-stream") -> Attachment:
        if not data:
            raise UploadError("Upload failed: empty file")
        form = self._form(data, content_type)
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            resp = await client.post(self.endpoint, data=form)
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Upload error: %s", e)
            raise UploadError(f"Upload failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if resp.status_code >= 400 or "secure_url" not in body:
            detail = (body.get("error") or {}).get("message") if isinstance(body, dict) else None
            logger.error("Upload rejected (%s): %s", resp.status_code, detail)
            raise UploadError(f"Upload failed: {detail or resp.status_code}")
        return Attachment(url=str(body["secure_url"]), public_id=str(body.get("public_id", "")))


def create_attachment_service(cfg: Dict[str, Any]) -> AttachmentService:
    """Create the configured attachment service (``attachments.provider``)."""
    a_cfg = cfg.get("attachments", {})
    provider = str(a_cfg.get("provider", "local")).lower()
    if provider == "local":
        return LocalAttachmentService(
            a_cfg.get("upload_dir") or "data/uploads",
            a_cfg.get("public_base_url") or "/uploads",
        )
    if provider == "cloudinary":
        c = a_cfg.get("cloudinary", {}) or {}
        return CloudinaryAttachmentService(
            c.get("cloud_name") or os.environ.get("CLOUDINARY_CLOUD_NAME", ""),
            c.get("api_key") or os.environ.get("CLOUDINARY_API_KEY", ""),
            c.get("api_secret") or os.environ.get("CLOUDINARY_API_SECRET", ""),
            folder=a_cfg.get("folder") or "chat_uploads",
        )
    raise ConfigError(f"Unknown attachments.provider: {provider!r}")
