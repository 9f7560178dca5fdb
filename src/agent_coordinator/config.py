"""Runtime configuration for the coordination state store, liveness and dispatch."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_STATE_DIR = ".agent_coord"
DEFAULT_WORKER_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m agent_coordinator.coordination.worker "
    "--task-spec {task_spec}"
)


@dataclass(slots=True)
class StoreSettings:
    """Locking discipline for shared JSON documents."""

    lock_timeout_seconds: float = 10.0
    conflict_retries: int = 5
    retry_backoff_seconds: float = 0.05
    retry_backoff_max_seconds: float = 1.0


@dataclass(slots=True)
class LivenessSettings:
    """Heartbeat and reaper settings."""

    stale_after_seconds: int = 120
    heartbeat_interval_seconds: float = 30.0
    reaper_interval_seconds: float = 60.0


@dataclass(slots=True)
class DispatchSettings:
    """Out-of-process worker dispatch and plan execution settings."""

    worker_command_template: str = DEFAULT_WORKER_COMMAND_TEMPLATE
    agent_command_template: str = ""
    poll_interval_seconds: float = 2.0
    task_timeout_seconds: int = 1_800
    max_attempts: int = 2
    max_parallel: int = 4


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    state_dir: Path = Path(DEFAULT_STATE_DIR)
    store: StoreSettings = field(default_factory=StoreSettings)
    liveness: LivenessSettings = field(default_factory=LivenessSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)

    @property
    def tasks_path(self) -> Path:
        return self.state_dir / "tasks.json"

    @property
    def archive_path(self) -> Path:
        return self.state_dir / "tasks-archive.json"

    @property
    def registry_path(self) -> Path:
        return self.state_dir / "agent-registry.json"

    @property
    def plans_dir(self) -> Path:
        return self.state_dir / "plans"

    @property
    def artifacts_dir(self) -> Path:
        return self.state_dir / "artifacts"

    @property
    def audit_log_path(self) -> Path:
        return self.state_dir / "reclamation.jsonl"

    @property
    def perf_log_path(self) -> Path:
        return self.state_dir / "perf.jsonl"

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local runs."""

        return cls(
            state_dir=state_dir or Path(os.getenv("AGENT_COORD_STATE_DIR", DEFAULT_STATE_DIR)),
            store=StoreSettings(
                lock_timeout_seconds=float(
                    os.getenv("AGENT_COORD_LOCK_TIMEOUT_SECONDS", "10.0"),
                ),
                conflict_retries=int(os.getenv("AGENT_COORD_CONFLICT_RETRIES", "5")),
                retry_backoff_seconds=float(
                    os.getenv("AGENT_COORD_RETRY_BACKOFF_SECONDS", "0.05"),
                ),
                retry_backoff_max_seconds=float(
                    os.getenv("AGENT_COORD_RETRY_BACKOFF_MAX_SECONDS", "1.0"),
                ),
            ),
            liveness=LivenessSettings(
                stale_after_seconds=int(os.getenv("AGENT_COORD_STALE_AFTER_SECONDS", "120")),
                heartbeat_interval_seconds=float(
                    os.getenv("AGENT_COORD_HEARTBEAT_INTERVAL_SECONDS", "30.0"),
                ),
                reaper_interval_seconds=float(
                    os.getenv("AGENT_COORD_REAPER_INTERVAL_SECONDS", "60.0"),
                ),
            ),
            dispatch=DispatchSettings(
                worker_command_template=os.getenv(
                    "AGENT_COORD_WORKER_COMMAND_TEMPLATE",
                    DEFAULT_WORKER_COMMAND_TEMPLATE,
                ),
                agent_command_template=os.getenv("AGENT_COORD_AGENT_COMMAND_TEMPLATE", ""),
                poll_interval_seconds=float(
                    os.getenv("AGENT_COORD_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                task_timeout_seconds=int(os.getenv("AGENT_COORD_TASK_TIMEOUT_SECONDS", "1800")),
                max_attempts=int(os.getenv("AGENT_COORD_MAX_ATTEMPTS", "2")),
                max_parallel=int(os.getenv("AGENT_COORD_MAX_PARALLEL", "4")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the coordinator cannot run with."""

        if self.store.lock_timeout_seconds <= 0:
            raise ValueError("AGENT_COORD_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.store.conflict_retries < 0:
            raise ValueError("AGENT_COORD_CONFLICT_RETRIES must be >= 0.")
        if self.store.retry_backoff_seconds < 0:
            raise ValueError("AGENT_COORD_RETRY_BACKOFF_SECONDS must be >= 0.")
        if self.liveness.stale_after_seconds <= 0:
            raise ValueError("AGENT_COORD_STALE_AFTER_SECONDS must be > 0.")
        if self.liveness.heartbeat_interval_seconds <= 0:
            raise ValueError("AGENT_COORD_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.liveness.heartbeat_interval_seconds >= self.liveness.stale_after_seconds:
            raise ValueError(
                "AGENT_COORD_HEARTBEAT_INTERVAL_SECONDS must be lower than "
                "AGENT_COORD_STALE_AFTER_SECONDS, otherwise healthy agents look stale.",
            )
        if self.dispatch.poll_interval_seconds < 0:
            raise ValueError("AGENT_COORD_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.dispatch.task_timeout_seconds <= 0:
            raise ValueError("AGENT_COORD_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.dispatch.max_attempts < 1:
            raise ValueError("AGENT_COORD_MAX_ATTEMPTS must be >= 1.")
        if self.dispatch.max_parallel < 1:
            raise ValueError("AGENT_COORD_MAX_PARALLEL must be >= 1.")
        if "{task_spec}" not in self.dispatch.worker_command_template:
            raise ValueError(
                "AGENT_COORD_WORKER_COMMAND_TEMPLATE must include the {task_spec} placeholder.",
            )
