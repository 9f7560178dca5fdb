"""Locked JSON documents shared between coordinator and worker processes."""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from agent_coordinator.config import StoreSettings
from agent_coordinator.coordination.errors import StoreConflictError

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = "1.0"


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def optional_iso(value: object) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"Expected ISO timestamp string, got {type(value).__name__}")
    return from_iso(value)


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload via temp file + rename so readers never see partial writes."""

    path.parent.mkdir(parents=True, exist_ok=True)
    encoded = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(encoded)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


class FileLockGuard:
    """Sidecar `<file>.lock` advisory lock with bounded wait and backoff retries."""

    def __init__(
        self,
        *,
        target: Path,
        settings: StoreSettings,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.target = target
        self.lock_path = target.with_name(f"{target.name}.lock")
        self.settings = settings
        self._sleeper = sleeper

    @contextmanager
    def hold(self) -> Iterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_path), timeout=self.settings.lock_timeout_seconds)
        attempts = self.settings.conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                lock.acquire()
                break
            except Timeout:
                if attempt >= attempts:
                    raise StoreConflictError(
                        f"Could not lock {self.target} after {attempts} attempts",
                    ) from None
                delay = min(
                    self.settings.retry_backoff_seconds * (2 ** (attempt - 1)),
                    self.settings.retry_backoff_max_seconds,
                )
                logger.debug(
                    "Lock busy for %s (attempt %d/%d), retrying in %.3fs",
                    self.target,
                    attempt,
                    attempts,
                    delay,
                )
                self._sleeper(delay)
        try:
            yield
        finally:
            lock.release()


class JsonDocumentStore:
    """One JSON document mutated by locked read-modify-write transactions.

    Every committed transaction bumps the store-level ``revision`` counter and
    stamps ``last_updated``. A transaction whose body raises, or that leaves
    the document unchanged, writes nothing.
    """

    def __init__(
        self,
        *,
        path: Path,
        empty_factory: Callable[[], dict[str, Any]],
        settings: StoreSettings,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = path
        self._empty_factory = empty_factory
        self._guard = FileLockGuard(target=path, settings=settings, sleeper=sleeper)

    def read(self) -> dict[str, Any]:
        """Lock-free read; writes are atomic renames so the document is never torn."""

        if not self.path.exists():
            return self._empty_factory()
        return load_json(self.path)

    @contextmanager
    def transaction(self) -> Iterator[dict[str, Any]]:
        with self._guard.hold():
            document = self.read()
            original = copy.deepcopy(document)
            yield document
            if document == original:
                return
            document["revision"] = int(document.get("revision", 0)) + 1
            document["last_updated"] = utc_now().isoformat()
            write_json_atomic(self.path, document)


def append_jsonl(path: Path, payload: dict[str, Any], *, settings: StoreSettings) -> None:
    """Append one JSON line under the file's sidecar lock."""

    guard = FileLockGuard(target=path, settings=settings)
    with guard.hold():
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, sort_keys=True) + "\n")


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Read JSON lines, skipping blank and malformed entries."""

    if not path.exists():
        return []
    records: list[dict[str, Any]] = []
    for line_no, line in enumerate(path.read_text("utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed line %d in %s", line_no, path)
            continue
        if isinstance(record, dict):
            records.append(record)
    return records
