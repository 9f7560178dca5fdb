from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from filelock import FileLock

from agent_coordinator.config import StoreSettings
from agent_coordinator.coordination.errors import StoreConflictError
from agent_coordinator.coordination.storage import (
    JsonDocumentStore,
    append_jsonl,
    read_jsonl,
    write_json_atomic,
)

pytestmark = [
    allure.epic("Task Coordination"),
    allure.feature("Persistence & Locking"),
]


def _store(path: Path, settings: StoreSettings | None = None, sleeper=None) -> JsonDocumentStore:
    kwargs = {"sleeper": sleeper} if sleeper is not None else {}
    return JsonDocumentStore(
        path=path,
        empty_factory=lambda: {"revision": 0, "items": []},
        settings=settings or StoreSettings(),
        **kwargs,
    )


def test_read_missing_document_returns_empty_factory(tmp_path: Path) -> None:
    store = _store(tmp_path / "doc.json")

    assert store.read() == {"revision": 0, "items": []}
    assert not (tmp_path / "doc.json").exists()


def test_transaction_commits_and_bumps_revision(tmp_path: Path) -> None:
    path = tmp_path / "doc.json"
    store = _store(path)

    with store.transaction() as document:
        document["items"].append("a")
    with store.transaction() as document:
        document["items"].append("b")

    saved = json.loads(path.read_text("utf-8"))
    assert saved["items"] == ["a", "b"]
    assert saved["revision"] == 2
    assert saved["last_updated"]
    assert (tmp_path / "doc.json.lock").exists()


def test_unchanged_transaction_writes_nothing(tmp_path: Path) -> None:
    path = tmp_path / "doc.json"
    store = _store(path)

    with store.transaction() as document:
        assert document["items"] == []

    assert not path.exists()


def test_failed_transaction_leaves_document_untouched(tmp_path: Path) -> None:
    path = tmp_path / "doc.json"
    store = _store(path)
    with store.transaction() as document:
        document["items"].append("kept")
    before = path.read_text("utf-8")

    with pytest.raises(RuntimeError, match="boom"):
        with store.transaction() as document:
            document["items"].append("dropped")
            raise RuntimeError("boom")

    assert path.read_text("utf-8") == before


def test_held_lock_raises_store_conflict_after_backoff(tmp_path: Path) -> None:
    path = tmp_path / "doc.json"
    delays: list[float] = []
    store = _store(
        path,
        StoreSettings(
            lock_timeout_seconds=0.05,
            conflict_retries=2,
            retry_backoff_seconds=0.01,
            retry_backoff_max_seconds=0.015,
        ),
        sleeper=delays.append,
    )
    holder = FileLock(str(tmp_path / "doc.json.lock"))
    holder.acquire()
    try:
        with pytest.raises(StoreConflictError, match="after 3 attempts"):
            with store.transaction() as document:
                document["items"].append("never")
    finally:
        holder.release()

    assert delays == [0.01, 0.015]
    assert not path.exists()


def test_write_json_atomic_leaves_no_temp_files(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "doc.json"

    write_json_atomic(path, {"z": 1, "a": "ü"})

    assert json.loads(path.read_text("utf-8")) == {"a": "ü", "z": 1}
    assert [item.name for item in path.parent.iterdir()] == ["doc.json"]


def test_read_jsonl_skips_malformed_lines(tmp_path: Path) -> None:
    path = tmp_path / "log.jsonl"
    append_jsonl(path, {"n": 1}, settings=StoreSettings())
    with path.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n\n[1, 2]\n")
    append_jsonl(path, {"n": 2}, settings=StoreSettings())

    assert read_jsonl(path) == [{"n": 1}, {"n": 2}]
    assert read_jsonl(tmp_path / "missing.jsonl") == []
