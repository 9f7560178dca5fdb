"""Operation timing observers and the JSON-lines performance log."""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from agent_coordinator.config import StoreSettings
from agent_coordinator.coordination.storage import append_jsonl, read_jsonl, utc_now

logger = logging.getLogger(__name__)


class OperationObserver(Protocol):
    def __call__(
        self,
        operation_type: str,
        duration_ms: float,
        success: bool,  # noqa: FBT001
        context: dict[str, Any],
    ) -> None: ...


class JsonlPerfLog:
    """Observer that appends one record per operation to ``perf.jsonl``."""

    def __init__(self, *, path: Path, settings: StoreSettings) -> None:
        self.path = path
        self.settings = settings

    def __call__(
        self,
        operation_type: str,
        duration_ms: float,
        success: bool,  # noqa: FBT001
        context: dict[str, Any],
    ) -> None:
        append_jsonl(
            self.path,
            {
                "timestamp": utc_now().isoformat(),
                "operation": operation_type,
                "duration_ms": round(duration_ms, 3),
                "success": success,
                "context": context,
            },
            settings=self.settings,
        )

    def records(self) -> list[dict[str, Any]]:
        return read_jsonl(self.path)


@contextmanager
def observed_operation(
    observer: OperationObserver | None,
    operation_type: str,
    context: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """Time the enclosed block and report it; observer failures never leak into the caller.

    The yielded dict is the observer context, so the block can enrich it
    (for example with the id of a task it just created).
    """

    payload: dict[str, Any] = dict(context or {})
    started = time.perf_counter()
    success = False
    try:
        yield payload
        success = True
    finally:
        if observer is not None:
            duration_ms = (time.perf_counter() - started) * 1000.0
            try:
                observer(operation_type, duration_ms, success, payload)
            except Exception:  # noqa: BLE001
                logger.warning("Operation observer failed for %s", operation_type, exc_info=True)


@dataclass(slots=True)
class OperationTiming:
    """Aggregated timings for one operation type."""

    operation: str
    count: int
    failures: int
    avg_ms: float
    max_ms: float


def summarize_perf(records: list[dict[str, Any]]) -> list[OperationTiming]:
    """Aggregate perf log records per operation, sorted by operation name."""

    durations: dict[str, list[float]] = defaultdict(list)
    failures: dict[str, int] = defaultdict(int)
    for record in records:
        operation = record.get("operation")
        duration = record.get("duration_ms")
        if not isinstance(operation, str) or not isinstance(duration, int | float):
            continue
        durations[operation].append(float(duration))
        if record.get("success") is False:
            failures[operation] += 1

    return [
        OperationTiming(
            operation=operation,
            count=len(values),
            failures=failures[operation],
            avg_ms=sum(values) / len(values),
            max_ms=max(values),
        )
        for operation, values in sorted(durations.items())
    ]
