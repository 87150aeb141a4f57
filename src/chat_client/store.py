"""Durable transcript store: an append-only JSONL log queried by recency."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from .errors import StorageError

logger = logging.getLogger(__name__)


class TranscriptStore(Protocol):
    """What the session manager and host need from persistent storage."""

    def open(self) -> None: ...

    def close(self) -> None: ...

    def append(self, record: Dict[str, Any]) -> None: ...

    def list_recent(self, limit: int) -> List[Dict[str, Any]]: ...


# -----------------------------
# Helpers
# -----------------------------
def _append_jsonl(path: Path, item: Dict[str, Any]) -> None:
    """Append a JSON-serializable dict as one line to a JSONL file."""
    try:
        line = json.dumps(item, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise StorageError(f"Failed to serialize record to JSON: {e}") from e

    try:
        with path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
    except OSError as e:
        raise StorageError(f"Failed to write to {path}: {e}") from e


def _iter_jsonl(path: Path) -> Iterator[Dict[str, Any]]:
    with path.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError as e:
                # Skip corrupt lines but log context
                logger.warning("Skipping corrupt line %d in %s: %s", line_no, path, e)
                continue
            if isinstance(row, dict):
                yield row


# -----------------------------
# JsonlTranscriptStore
# -----------------------------
class JsonlTranscriptStore:
    """Append-only message log on disk.

    Layout:
        data_dir/
          messages.jsonl   # one persisted record per line, oldest first

    The host constructs the store, calls :meth:`open` at startup and
    :meth:`close` at shutdown. Records are written once and never rewritten.
    """

    def __init__(self, data_dir: str | Path, *, filename: str = "messages.jsonl") -> None:
        self.root = Path(data_dir)
        self.path = self.root / filename
        self._lock = threading.RLock()
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> None:
        with self._lock:
            if self._opened:
                return
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                self.path.touch(exist_ok=True)
            except OSError as e:
                raise StorageError(f"Failed to open transcript store at {self.path}: {e}") from e
            self._opened = True
            logger.info("Transcript store opened at %s", self.path)

    def close(self) -> None:
        with self._lock:
            if self._opened:
                logger.info("Transcript store closed (%s)", self.path)
            self._opened = False

    def __enter__(self) -> "JsonlTranscriptStore":
        self.open()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self._opened:
            raise StorageError("Transcript store is not open")

    # --------- core API ----------
    def append(self, record: Dict[str, Any]) -> None:
        if not isinstance(record, dict):
            raise TypeError("record must be a dict")
        with self._lock:
            self._require_open()
            _append_jsonl(self.path, record)

    def list_recent(self, limit: int) -> List[Dict[str, Any]]:
        """Return up to ``limit`` records, most recent first."""
        if limit <= 0:
            return []
        with self._lock:
            self._require_open()
            try:
                rows = list(_iter_jsonl(self.path))
            except OSError as e:
                raise StorageError(f"Failed to read {self.path}: {e}") from e
        return list(reversed(rows[-limit:]))

    def count(self) -> int:
        with self._lock:
            self._require_open()
            return sum(1 for _ in _iter_jsonl(self.path))


def create_store(cfg: Dict[str, Any], data_dir: Optional[str] = None) -> JsonlTranscriptStore:
    st_cfg = cfg.get("storage", {})
    return JsonlTranscriptStore(
        data_dir or st_cfg.get("data_dir") or "data",
        filename=st_cfg.get("filename") or "messages.jsonl",
    )
