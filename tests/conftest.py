"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_client.attachments import Attachment  # noqa: E402
from chat_client.errors import StorageError, UploadError  # noqa: E402
from chat_client.store import JsonlTranscriptStore  # noqa: E402


class ScriptedInference:
    """Replays one scripted reply per request and records what was sent.

    A reply is a list of deltas; an exception instance in the list is raised
    at that point of the stream.
    """

    def __init__(self, *replies: List[Any]) -> None:
        self.replies = list(replies)
        self.requests: List[List[Dict[str, str]]] = []

    async def stream(self, messages):
        self.requests.append([dict(m) for m in messages])
        reply = self.replies.pop(0) if self.replies else ["ok"]
        for item in reply:
            if isinstance(item, BaseException):
                raise item
            yield item


class GatedInference:
    """Emits whatever the test pushes: a delta, an exception, or None to finish."""

    def __init__(self) -> None:
        self.queue: Optional[asyncio.Queue] = None
        self.requests: List[List[Dict[str, str]]] = []

    async def push(self, item: Any) -> None:
        if self.queue is None:
            self.queue = asyncio.Queue()
        await self.queue.put(item)

    async def stream(self, messages):
        self.requests.append([dict(m) for m in messages])
        if self.queue is None:
            self.queue = asyncio.Queue()
        while True:
            item = await self.queue.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item


class FailingStore:
    """Store whose writes always fail."""

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def append(self, record):
        raise StorageError("disk full")

    def list_recent(self, limit):
        return []


class FakeAttachments:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.uploads: List[bytes] = []

    async def upload(self, data: bytes, content_type: str = "application/octet-stream") -> Attachment:
        if self.fail:
            raise UploadError("Upload failed")
        self.uploads.append(data)
        n = len(self.uploads)
        return Attachment(url=f"https://img.test/{n}.png", public_id=f"chat_uploads/{n}")


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for the transcript store during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def store(tmp_data_dir: Path):
    s = JsonlTranscriptStore(tmp_data_dir)
    s.open()
    yield s
    s.close()


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "CHAT_CLIENT_CONFIG" or var.startswith("CHAT_CLIENT__"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    yield
