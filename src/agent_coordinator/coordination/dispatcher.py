"""Distributed dispatcher: hand claimed tasks to detached worker processes."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from agent_coordinator.config import Settings
from agent_coordinator.coordination.agent_registry import AgentRegistry, new_agent_id
from agent_coordinator.coordination.contracts import (
    CONTRACT_VERSION,
    TaskSpecContract,
    archive_artifacts,
    build_prompt,
    history_dir,
    log_path,
    read_worker_result,
    result_path,
    task_spec_path,
    write_task_spec,
)
from agent_coordinator.coordination.errors import DispatchError
from agent_coordinator.coordination.models import AgentStatus, Task, WorkerResult
from agent_coordinator.coordination.storage import utc_now

logger = logging.getLogger(__name__)

Spawner = Callable[..., Any]


@dataclass(slots=True)
class DispatchTicket:
    """Handle for one in-flight dispatch; resolved by polling ``collect``."""

    task_id: str
    agent_id: str
    dispatched_at: datetime
    deadline: datetime
    pid: int | None = None

    def expired(self, now: datetime) -> bool:
        return now >= self.deadline


@dataclass(slots=True)
class CollectResult:
    """Pending until a well-formed result from the expected agent exists."""

    task_id: str
    ready: bool
    result: WorkerResult | None = None


class Dispatcher:
    """Writes task spec artifacts, registers the agent and spawns a detached worker."""

    def __init__(
        self,
        *,
        settings: Settings,
        registry: AgentRegistry,
        spawner: Spawner = subprocess.Popen,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.artifacts_dir = settings.artifacts_dir
        self._spawner = spawner

    def dispatch(self, task: Task, agent_id: str | None = None) -> DispatchTicket:
        """Spawn a worker for ``task`` and return immediately."""

        resolved_agent = agent_id or new_agent_id("worker")
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        self._move_previous_attempt(task.id)

        now = utc_now()
        spec_path = task_spec_path(self.artifacts_dir, task.id)
        output_log = log_path(self.artifacts_dir, task.id)
        write_task_spec(
            spec_path,
            TaskSpecContract(
                contract_version=CONTRACT_VERSION,
                task_id=task.id,
                agent_id=resolved_agent,
                title=task.title,
                description=task.description,
                priority=task.priority.value,
                prompt=build_prompt(task),
                state_dir=str(self.settings.state_dir.resolve()),
                result_path=str(result_path(self.artifacts_dir, task.id).resolve()),
                log_path=str(output_log.resolve()),
                dispatched_at=now.isoformat(),
                heartbeat_interval_seconds=self.settings.liveness.heartbeat_interval_seconds,
                agent_command_template=self.settings.dispatch.agent_command_template,
            ),
        )
        argv = self._worker_argv(spec_path)
        self.registry.register(
            agent_id=resolved_agent,
            role="worker",
            status=AgentStatus.SPAWNING,
            current_task=task.id,
        )

        env = os.environ.copy()
        env["AGENT_COORD_STATE_DIR"] = str(self.settings.state_dir.resolve())
        output_log.parent.mkdir(parents=True, exist_ok=True)
        try:
            with output_log.open("a", encoding="utf-8") as log_handle:
                process = self._spawner(  # noqa: S603
                    argv,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                    close_fds=True,
                )
        except OSError as error:
            self.registry.update_status(resolved_agent, AgentStatus.FAILED)
            raise DispatchError(f"Failed to start worker for task {task.id}: {error}") from error

        pid = getattr(process, "pid", None)
        if isinstance(pid, int):
            self.registry.record_pid(resolved_agent, pid)
        logger.info(
            "Dispatched task %s to %s (pid=%s)",
            task.id,
            resolved_agent,
            pid if pid is not None else "-",
        )
        return DispatchTicket(
            task_id=task.id,
            agent_id=resolved_agent,
            dispatched_at=now,
            deadline=now + timedelta(seconds=self.settings.dispatch.task_timeout_seconds),
            pid=pid if isinstance(pid, int) else None,
        )

    def collect(self, task_id: str, agent_id: str | None = None) -> CollectResult:
        """Non-blocking check for the worker result artifact."""

        path = result_path(self.artifacts_dir, task_id)
        if not path.exists():
            return CollectResult(task_id=task_id, ready=False)
        try:
            result = read_worker_result(path)
        except (OSError, ValueError, TypeError) as error:
            # Also covers a result still being written by the worker.
            logger.warning("Unreadable result artifact %s: %s", path, error)
            return CollectResult(task_id=task_id, ready=False)
        if result.task_id != task_id:
            logger.warning("Result %s names task %s; ignoring", path, result.task_id)
            return CollectResult(task_id=task_id, ready=False)
        if agent_id is not None and result.agent_id != agent_id:
            # A superseded attempt must not hold the write-once slot of the current one.
            archive_artifacts(self.artifacts_dir, task_id, [path])
            logger.warning(
                "Result for task %s came from %s, expected %s; moved to history",
                task_id,
                result.agent_id,
                agent_id,
            )
            return CollectResult(task_id=task_id, ready=False)
        return CollectResult(task_id=task_id, ready=True, result=result)

    def _worker_argv(self, spec_path: Path) -> list[str]:
        template = self.settings.dispatch.worker_command_template.strip()
        try:
            rendered = template.format(task_spec=shlex.quote(str(spec_path.resolve())))
        except KeyError as error:
            raise DispatchError(
                f"Unsupported worker command template placeholder: {error}",
            ) from error
        argv = shlex.split(rendered)
        if not argv:
            raise DispatchError("Worker command template rendered empty command.")
        return argv

    def _move_previous_attempt(self, task_id: str) -> None:
        moved = archive_artifacts(
            self.artifacts_dir,
            task_id,
            [
                task_spec_path(self.artifacts_dir, task_id),
                result_path(self.artifacts_dir, task_id),
                log_path(self.artifacts_dir, task_id),
            ],
        )
        if moved:
            logger.debug("Moved %d artifact(s) of previous attempt for %s", moved, task_id)


def describe_artifacts(artifacts_dir: Path, task_id: str) -> dict[str, Any]:
    """Artifact paths and presence for one task, for inspection output."""

    history = history_dir(artifacts_dir, task_id)
    spec = task_spec_path(artifacts_dir, task_id)
    result = result_path(artifacts_dir, task_id)
    payload: dict[str, Any] = {
        "task_spec": str(spec) if spec.exists() else None,
        "result": str(result) if result.exists() else None,
        "log": str(log_path(artifacts_dir, task_id)),
        "history": sorted(path.name for path in history.iterdir())
        if history.exists()
        else [],
    }
    if result.exists():
        try:
            payload["result_payload"] = json.loads(result.read_text("utf-8"))
        except json.JSONDecodeError:
            payload["result_payload"] = None
    return payload
