"""File-based contracts between the dispatcher and out-of-process workers."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from agent_coordinator.coordination.models import Task, WorkerResult, WorkerResultStatus
from agent_coordinator.coordination.storage import (
    load_json,
    optional_iso,
    utc_now,
    write_json_atomic,
)

CONTRACT_VERSION = 1


@dataclass(slots=True)
class TaskSpecContract:
    """Task spec artifact handed to a worker (``task_<id>.json``)."""

    contract_version: int
    task_id: str
    agent_id: str
    title: str
    description: str
    priority: str
    prompt: str
    state_dir: str
    result_path: str
    log_path: str
    dispatched_at: str
    heartbeat_interval_seconds: float
    agent_command_template: str = ""


def task_spec_path(artifacts_dir: Path, task_id: str) -> Path:
    return artifacts_dir / f"task_{task_id}.json"


def result_path(artifacts_dir: Path, task_id: str) -> Path:
    return artifacts_dir / f"result_{task_id}.json"


def log_path(artifacts_dir: Path, task_id: str) -> Path:
    return artifacts_dir / "logs" / f"{task_id}.log"


def prompt_path(artifacts_dir: Path, task_id: str) -> Path:
    return artifacts_dir / f"prompt_{task_id}.txt"


def history_dir(artifacts_dir: Path, task_id: str) -> Path:
    return artifacts_dir / "history" / task_id


def archive_artifacts(artifacts_dir: Path, task_id: str, paths: list[Path]) -> int:
    """Move existing ``paths`` into the task's history directory; returns how many moved."""

    present = [path for path in paths if path.exists()]
    if not present:
        return 0
    target = history_dir(artifacts_dir, task_id)
    target.mkdir(parents=True, exist_ok=True)
    stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
    moved = 0
    for path in present:
        try:
            path.replace(target / f"{stamp}_{path.name}")
        except FileNotFoundError:
            continue
        moved += 1
    return moved


def build_prompt(task: Task) -> str:
    """Plain-text instructions for the agent executing ``task``."""

    lines = [f"Task: {task.title}", f"Priority: {task.priority.value}"]
    if task.description:
        lines.extend(["", task.description])
    if task.tags:
        lines.extend(["", f"Tags: {', '.join(task.tags)}"])
    return "\n".join(lines)


def write_task_spec(path: Path, payload: TaskSpecContract) -> None:
    write_json_atomic(path, asdict(payload))


def read_task_spec(path: Path) -> TaskSpecContract:
    """Deserialize and validate the task spec artifact."""

    raw = load_json(path)
    version = raw.get("contract_version")
    if version != CONTRACT_VERSION:
        raise ValueError(f"Unsupported task spec contract_version: {version}")
    for key in ("task_id", "agent_id", "state_dir", "result_path", "log_path"):
        value = raw.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"task_spec.{key} must be a non-empty string")
    for key in ("title", "description", "priority", "prompt", "dispatched_at"):
        if not isinstance(raw.get(key), str):
            raise TypeError(f"task_spec.{key} must be a string")
    interval = raw.get("heartbeat_interval_seconds")
    if not isinstance(interval, int | float) or interval <= 0:
        raise ValueError("task_spec.heartbeat_interval_seconds must be a positive number")
    template = raw.get("agent_command_template", "")
    if not isinstance(template, str):
        raise TypeError("task_spec.agent_command_template must be a string")
    return TaskSpecContract(
        contract_version=CONTRACT_VERSION,
        task_id=raw["task_id"],
        agent_id=raw["agent_id"],
        title=raw["title"],
        description=raw["description"],
        priority=raw["priority"],
        prompt=raw["prompt"],
        state_dir=raw["state_dir"],
        result_path=raw["result_path"],
        log_path=raw["log_path"],
        dispatched_at=raw["dispatched_at"],
        heartbeat_interval_seconds=float(interval),
        agent_command_template=template,
    )


def worker_result_to_record(result: WorkerResult) -> dict[str, Any]:
    return {
        "contract_version": CONTRACT_VERSION,
        "task_id": result.task_id,
        "agent_id": result.agent_id,
        "status": result.status.value,
        "result": {"summary": result.summary},
        "error": result.error,
        "completed_at": result.completed_at.isoformat() if result.completed_at else None,
    }


def write_worker_result(path: Path, result: WorkerResult) -> None:
    """Write the result artifact exactly once; a second write raises FileExistsError."""

    path.parent.mkdir(parents=True, exist_ok=True)
    encoded = json.dumps(
        worker_result_to_record(result),
        ensure_ascii=False,
        indent=2,
        sort_keys=True,
    )
    with path.open("x", encoding="utf-8") as handle:
        handle.write(encoded)


def read_worker_result(path: Path) -> WorkerResult:
    """Deserialize and validate a result artifact."""

    raw = load_json(path)
    task_id = raw.get("task_id")
    agent_id = raw.get("agent_id")
    if not isinstance(task_id, str) or not task_id:
        raise ValueError("result.task_id must be a non-empty string")
    if not isinstance(agent_id, str) or not agent_id:
        raise ValueError("result.agent_id must be a non-empty string")
    status = WorkerResultStatus(raw.get("status"))
    body = raw.get("result") or {}
    if not isinstance(body, dict):
        raise TypeError("result.result must be an object")
    summary = body.get("summary", "")
    if not isinstance(summary, str):
        raise TypeError("result.result.summary must be a string")
    error = raw.get("error")
    if error is not None and not isinstance(error, str):
        raise TypeError("result.error must be a string when provided")
    return WorkerResult(
        task_id=task_id,
        agent_id=agent_id,
        status=status,
        summary=summary,
        error=error,
        completed_at=optional_iso(raw.get("completed_at")),
    )
