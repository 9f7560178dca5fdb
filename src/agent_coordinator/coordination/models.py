"""Domain models for tasks, agents and execution plans."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})


class TaskPriority(str, Enum):
    """Scheduling priority, ordered from most to least urgent."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class AgentStatus(str, Enum):
    """Self-reported agent states. Liveness is derived from heartbeats, not stored."""

    WORKING = "working"
    IDLE = "idle"
    SPAWNING = "spawning"
    COMPLETED = "completed"
    FAILED = "failed"


class PlanStatus(str, Enum):
    """Execution plan lifecycle states."""

    DRAFT = "draft"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerResultStatus(str, Enum):
    """Outcome reported by a worker in its result artifact."""

    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class Task:
    """One unit of work in the shared task store."""

    id: str
    title: str
    description: str
    priority: TaskPriority
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    dependencies: list[str] = field(default_factory=list)
    assigned_to: str | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    parent_task: str | None = None
    subtasks: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    quality_score: int | None = None
    quality_notes: str | None = None
    tags: list[str] = field(default_factory=list)
    created_by: str = "orchestrator"
    plan_id: str | None = None


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: tuple[str, ...] = ()
    parent_task: str | None = None
    tags: tuple[str, ...] = ()
    created_by: str = "orchestrator"
    plan_id: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskFilter:
    """Optional task list filters; unset fields match everything."""

    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    assigned_to: str | None = None
    plan_id: str | None = None
    tag: str | None = None
    task_ids: tuple[str, ...] | None = None


@dataclass(slots=True)
class TaskStoreSnapshot:
    """Read-only view of the whole task store document."""

    version: str
    revision: int
    tasks: list[Task]
    completed_count: int
    last_updated: datetime | None

    def index(self) -> dict[str, Task]:
        return {task.id: task for task in self.tasks}


@dataclass(slots=True)
class TaskStats:
    """Task counts per status with average quality."""

    total: int
    pending: int
    in_progress: int
    blocked: int
    completed: int
    cancelled: int
    avg_quality: float


@dataclass(slots=True)
class Agent:
    """Registry entry for one worker process."""

    agent_id: str
    session_id: str
    started_at: datetime
    last_heartbeat: datetime
    status: AgentStatus
    assigned_role: str | None = None
    pid: int | None = None
    current_task: str | None = None


@dataclass(slots=True)
class PlanStep:
    """One step of a plan before it is materialized as a task."""

    key: str
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    depends_on: tuple[str, ...] = ()


@dataclass(slots=True)
class ExecutionPlan:
    """Named batch of related tasks executed together."""

    id: str
    name: str
    description: str
    created_at: datetime
    updated_at: datetime
    status: PlanStatus
    tasks: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class ReclamationEvent:
    """Audit trail entry for one task returned to the pool."""

    timestamp: datetime
    task_id: str
    prior_agent: str
    action: str
    reason: str


@dataclass(slots=True)
class WorkerResult:
    """Structured result read back from a worker result artifact."""

    task_id: str
    agent_id: str
    status: WorkerResultStatus
    summary: str = ""
    error: str | None = None
    completed_at: datetime | None = None
