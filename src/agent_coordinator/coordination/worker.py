"""Out-of-process worker: runs one dispatched task and writes its result artifact.

Invoked as ``python -m agent_coordinator.coordination.worker --task-spec <path>``.
The worker never touches the task store; the plan executor collects the
result artifact and applies the outcome.
"""

from __future__ import annotations

import argparse
import logging
import shlex
import subprocess
import sys
import threading
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from agent_coordinator.config import Settings
from agent_coordinator.coordination.agent_registry import AgentRegistry
from agent_coordinator.coordination.contracts import (
    TaskSpecContract,
    archive_artifacts,
    prompt_path,
    read_task_spec,
    read_worker_result,
    task_spec_path,
    write_worker_result,
)
from agent_coordinator.coordination.errors import CoordinationError
from agent_coordinator.coordination.models import AgentStatus, WorkerResult, WorkerResultStatus
from agent_coordinator.coordination.storage import utc_now

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 2_000


@dataclass(slots=True)
class AgentRunOutcome:
    """What the agent command produced."""

    ok: bool
    summary: str
    error: str | None = None


class HeartbeatThread(threading.Thread):
    """Refresh the agent's heartbeat every ``interval_seconds`` until stopped."""

    def __init__(self, *, registry: AgentRegistry, agent_id: str, interval_seconds: float) -> None:
        super().__init__(name=f"heartbeat-{agent_id}", daemon=True)
        self.registry = registry
        self.agent_id = agent_id
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.registry.heartbeat(self.agent_id)
            except CoordinationError as error:
                logger.warning("Heartbeat failed for %s: %s", self.agent_id, error)

    def stop(self) -> None:
        self._stop_event.set()
        self.join(timeout=self.interval_seconds + 1)


def run_agent(spec: TaskSpecContract, *, timeout_seconds: int) -> AgentRunOutcome:
    """Run the configured agent command, or echo the task when none is configured."""

    template = spec.agent_command_template.strip()
    if not template:
        return AgentRunOutcome(ok=True, summary=f"Echo: {spec.title}")

    artifacts_dir = Path(spec.result_path).parent
    prompt_file = prompt_path(artifacts_dir, spec.task_id)
    prompt_file.parent.mkdir(parents=True, exist_ok=True)
    prompt_file.write_text(spec.prompt, "utf-8")
    try:
        rendered = template.format(
            prompt=shlex.quote(spec.prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            task_spec=shlex.quote(str(task_spec_path(artifacts_dir, spec.task_id))),
        )
    except KeyError as error:
        return AgentRunOutcome(
            ok=False,
            summary="",
            error=f"Unsupported agent command template placeholder: {error}",
        )
    argv = shlex.split(rendered)
    if not argv:
        return AgentRunOutcome(ok=False, summary="", error="Agent command rendered empty.")

    try:
        completed = subprocess.run(  # noqa: S603
            argv,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError:
        return AgentRunOutcome(ok=False, summary="", error=f"Agent command not found: {argv[0]}")
    except subprocess.TimeoutExpired:
        return AgentRunOutcome(
            ok=False,
            summary="",
            error=f"Agent command timed out after {timeout_seconds}s",
        )

    stdout = completed.stdout.strip()
    if completed.stdout:
        sys.stdout.write(completed.stdout)
    if completed.stderr:
        sys.stderr.write(completed.stderr)
    if completed.returncode != 0:
        stderr_tail = completed.stderr.strip()[-SUMMARY_MAX_CHARS:]
        return AgentRunOutcome(
            ok=False,
            summary=stdout[-SUMMARY_MAX_CHARS:],
            error=f"Agent command exited with code {completed.returncode}"
            + (f": {stderr_tail}" if stderr_tail else ""),
        )
    return AgentRunOutcome(ok=True, summary=stdout[-SUMMARY_MAX_CHARS:])


def current_dispatch_owner(spec: TaskSpecContract) -> str | None:
    """Agent named by the task spec on disk now; None once the spec was moved away."""

    artifacts_dir = Path(spec.result_path).parent
    try:
        return read_task_spec(task_spec_path(artifacts_dir, spec.task_id)).agent_id
    except (OSError, ValueError, TypeError):
        return None


def publish_result(spec: TaskSpecContract, result: WorkerResult) -> bool:
    """Write the result artifact; False when this agent's result already exists.

    A leftover result from another agent belongs to a superseded attempt and is
    moved to history before writing.
    """

    path = Path(spec.result_path)
    try:
        write_worker_result(path, result)
    except FileExistsError:
        try:
            existing = read_worker_result(path)
        except (OSError, ValueError, TypeError):
            return False
        if existing.agent_id == spec.agent_id:
            return False
        archive_artifacts(path.parent, spec.task_id, [path])
        logger.warning(
            "Moved result of superseded agent %s for task %s to history",
            existing.agent_id,
            spec.task_id,
        )
        try:
            write_worker_result(path, result)
        except FileExistsError:
            return False
    return True


def execute_task_spec(spec: TaskSpecContract, settings: Settings) -> int:
    """Run one task end to end; returns the process exit code."""

    registry = AgentRegistry(
        path=settings.registry_path,
        settings=settings.store,
        stale_after=timedelta(seconds=settings.liveness.stale_after_seconds),
    )
    registry.update_status(spec.agent_id, AgentStatus.WORKING, current_task=spec.task_id)
    heartbeat = HeartbeatThread(
        registry=registry,
        agent_id=spec.agent_id,
        interval_seconds=spec.heartbeat_interval_seconds,
    )
    heartbeat.start()
    try:
        outcome = run_agent(spec, timeout_seconds=settings.dispatch.task_timeout_seconds)
    finally:
        heartbeat.stop()

    result = WorkerResult(
        task_id=spec.task_id,
        agent_id=spec.agent_id,
        status=WorkerResultStatus.COMPLETED if outcome.ok else WorkerResultStatus.FAILED,
        summary=outcome.summary,
        error=outcome.error,
        completed_at=utc_now(),
    )
    owner = current_dispatch_owner(spec)
    if owner != spec.agent_id:
        logger.warning(
            "Task %s was re-dispatched to %s; discarding result of %s",
            spec.task_id,
            owner or "-",
            spec.agent_id,
        )
        registry.update_status(spec.agent_id, AgentStatus.FAILED)
        return 1
    if not publish_result(spec, result):
        logger.error("Result for task %s already written; refusing to overwrite", spec.task_id)
        registry.update_status(spec.agent_id, AgentStatus.FAILED)
        return 1

    registry.update_status(
        spec.agent_id,
        AgentStatus.COMPLETED if outcome.ok else AgentStatus.FAILED,
    )
    logger.info("Task %s finished by %s: %s", spec.task_id, spec.agent_id, result.status.value)
    return 0 if outcome.ok else 1


def main(argv: list[str] | None = None) -> int:
    """Worker process entrypoint."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--task-spec", required=True)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    spec = read_task_spec(Path(args.task_spec))
    settings = Settings.from_env(state_dir=Path(spec.state_dir))
    return execute_task_spec(spec, settings)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
