from __future__ import annotations

from pathlib import Path

import pytest

from chat_client.errors import StorageError
from chat_client.store import JsonlTranscriptStore, create_store


def _rec(i: int) -> dict:
    return {"id": f"m{i}", "role": "user", "text": f"t{i}", "parts": [{"type": "text", "text": f"t{i}"}]}


def test_append_and_list_recent_newest_first(tmp_path: Path):
    with JsonlTranscriptStore(tmp_path) as store:
        for i in range(5):
            store.append(_rec(i))
        assert [r["id"] for r in store.list_recent(3)] == ["m4", "m3", "m2"]
        assert [r["id"] for r in store.list_recent(50)] == ["m4", "m3", "m2", "m1", "m0"]
        assert store.list_recent(0) == []
        assert store.count() == 5


def test_records_survive_reopen(tmp_path: Path):
    with JsonlTranscriptStore(tmp_path) as store:
        store.append(_rec(1))
    with JsonlTranscriptStore(tmp_path) as again:
        assert again.list_recent(10) == [_rec(1)]


def test_store_must_be_opened(tmp_path: Path):
    store = JsonlTranscriptStore(tmp_path)
    with pytest.raises(StorageError):
        store.append(_rec(1))
    store.open()
    store.append(_rec(1))
    store.close()
    assert not store.is_open
    with pytest.raises(StorageError):
        store.list_recent(5)


def test_corrupt_lines_are_skipped(tmp_path: Path, caplog: pytest.LogCaptureFixture):
    store = JsonlTranscriptStore(tmp_path)
    store.open()
    store.append(_rec(1))
    with store.path.open("a", encoding="utf-8") as f:
        f.write("{not json\n\n")
    store.append(_rec(2))
    assert [r["id"] for r in store.list_recent(10)] == ["m2", "m1"]
    assert any("corrupt" in r.getMessage() for r in caplog.records)


def test_unserializable_record_is_a_storage_error(tmp_path: Path):
    with JsonlTranscriptStore(tmp_path) as store:
        with pytest.raises(StorageError):
            store.append({"id": "x", "blob": object()})
        with pytest.raises(TypeError):
            store.append(["not", "a", "dict"])  # type: ignore[arg-type]


def test_create_store_from_config(tmp_path: Path):
    cfg = {"storage": {"data_dir": str(tmp_path / "d"), "filename": "log.jsonl"}}
    store = create_store(cfg)
    store.open()
    assert store.path == tmp_path / "d" / "log.jsonl"
    assert store.path.exists()
