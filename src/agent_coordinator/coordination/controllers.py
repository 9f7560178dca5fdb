"""Controllers for coordination CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from agent_coordinator.config import Settings
from agent_coordinator.coordination.dispatcher import describe_artifacts
from agent_coordinator.coordination.errors import DeadlockError
from agent_coordinator.coordination.metrics import summarize_perf
from agent_coordinator.coordination.models import (
    Agent,
    AgentStatus,
    Task,
    TaskCreate,
    TaskFilter,
    TaskPriority,
    TaskStatus,
)
from agent_coordinator.coordination.plans import plan_from_description
from agent_coordinator.coordination.services import Coordinator
from agent_coordinator.coordination.storage import utc_now


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    state_dir: Path | None
    title: str
    priority: str
    description: str
    depends_on: tuple[str, ...]
    tags: tuple[str, ...]
    parent: str | None


@dataclass(slots=True)
class TaskStatusCommand:
    """CLI input for a user-level status transition."""

    state_dir: Path | None
    task_id: str
    status: str
    note: str | None


@dataclass(slots=True)
class TaskAssignCommand:
    """CLI input for assign (explicit task) and claim (next eligible task)."""

    state_dir: Path | None
    agent_id: str
    task_id: str | None = None


@dataclass(slots=True)
class TaskLookupCommand:
    """CLI input addressing one task."""

    state_dir: Path | None
    task_id: str


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    state_dir: Path | None
    status: str | None
    plan_id: str | None = None
    tag: str | None = None


@dataclass(slots=True)
class TaskRateCommand:
    """CLI input for quality rating."""

    state_dir: Path | None
    task_id: str
    score: int
    note: str | None


@dataclass(slots=True)
class TaskSearchCommand:
    """CLI input for full-text task search."""

    state_dir: Path | None
    query: str


@dataclass(slots=True)
class TaskExportCommand:
    """CLI input for task board export."""

    state_dir: Path | None
    output_path: Path | None


@dataclass(slots=True)
class TaskArchiveCommand:
    """CLI input for archival of terminal tasks."""

    state_dir: Path | None
    older_than_days: int | None


@dataclass(slots=True)
class PlanCreateCommand:
    """CLI input for plan creation via the default planner."""

    state_dir: Path | None
    description: str
    name: str | None


@dataclass(slots=True)
class PlanCommand:
    """CLI input addressing one plan (or all plans when ``plan_id`` is None)."""

    state_dir: Path | None
    plan_id: str | None


@dataclass(slots=True)
class AgentRegisterCommand:
    """CLI input for agent registration."""

    state_dir: Path | None
    role: str | None
    session_id: str | None
    agent_id: str | None = None


@dataclass(slots=True)
class AgentCommand:
    """CLI input addressing one agent, optionally with a new status."""

    state_dir: Path | None
    agent_id: str
    status: str | None = None


@dataclass(slots=True)
class AgentListCommand:
    """CLI input for registry listing and one-shot cleanup."""

    state_dir: Path | None


@dataclass(slots=True)
class AgentReapCommand:
    """CLI input for the background reaper loop."""

    state_dir: Path | None
    interval_seconds: float | None
    max_cycles: int | None


@dataclass(slots=True)
class PlanExecuteResult:
    """Plan execution output plus the deadlock that ended it, if any."""

    lines: list[str]
    deadlock: DeadlockError | None = None


class CoordinationCliController:
    """Translate CLI commands into coordinator calls and render plain-text lines."""

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        task = coordinator.task_store.create(
            TaskCreate(
                title=command.title,
                description=command.description,
                priority=_parse_priority(command.priority),
                dependencies=command.depends_on,
                parent_task=command.parent,
                tags=command.tags,
                created_by="cli",
            ),
        )
        return [f"Task created: {task.id}", *_task_summary_lines(task)]

    def update_status(self, command: TaskStatusCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        task = coordinator.task_store.update_status(
            command.task_id,
            _parse_status(command.status),
            note=command.note,
        )
        return [f"Task {task.id} is now {task.status.value}"]

    def next_task(self, command: TaskListCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        task = coordinator.task_store.next_available()
        if task is None:
            return ["No eligible task."]
        return [f"Next task: {task.id}", *_task_summary_lines(task)]

    def assign_task(self, command: TaskAssignCommand) -> list[str]:
        if command.task_id is None:
            raise ValueError("assign requires a task id")
        coordinator = _coordinator(command.state_dir)
        task = coordinator.task_store.assign(command.task_id, command.agent_id)
        return [f"Task {task.id} assigned to {command.agent_id}"]

    def claim_task(self, command: TaskAssignCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        task = coordinator.task_store.claim_next(command.agent_id)
        if task is None:
            return ["No eligible task."]
        return [f"Task {task.id} claimed by {command.agent_id}", *_task_summary_lines(task)]

    def show_task(self, command: TaskLookupCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        task = coordinator.task_store.get(command.task_id)
        lines = [
            f"Task: {task.id}",
            f"Title: {task.title}",
            f"Description: {task.description or '-'}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Assigned to: {task.assigned_to or '-'}",
            f"Dependencies: {', '.join(task.dependencies) or '-'}",
            f"Parent: {task.parent_task or '-'}",
            f"Subtasks: {', '.join(task.subtasks) or '-'}",
            f"Tags: {', '.join(task.tags) or '-'}",
            f"Plan: {task.plan_id or '-'}",
            f"Created: {task.created_at.isoformat()}",
            f"Updated: {task.updated_at.isoformat()}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
            f"Quality: {task.quality_score if task.quality_score is not None else '-'}",
            f"Notes: {len(task.notes)}",
        ]
        lines.extend(f"  {note}" for note in task.notes)
        artifacts = describe_artifacts(coordinator.settings.artifacts_dir, task.id)
        lines.append(f"Task spec: {artifacts['task_spec'] or '-'}")
        lines.append(f"Result: {artifacts['result'] or '-'}")
        if artifacts["history"]:
            lines.append(f"Previous attempts: {len(artifacts['history'])} artifact(s)")
        events = coordinator.audit_log.events(task_id=task.id)
        for event in events:
            lines.append(
                f"  {event.timestamp.isoformat()} {event.action} from {event.prior_agent} "
                f"({event.reason})",
            )
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        tasks = coordinator.task_store.list_tasks(
            TaskFilter(
                status=_parse_status(command.status) if command.status else None,
                plan_id=command.plan_id,
                tag=command.tag,
            ),
        )
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(_task_row(task) for task in tasks)
        return lines

    def rate_task(self, command: TaskRateCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        task = coordinator.task_store.rate_quality(command.task_id, command.score, command.note)
        return [f"Task {task.id} rated {task.quality_score}/10"]

    def stats(self, command: TaskListCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        stats = coordinator.task_store.stats()
        snapshot = coordinator.task_store.snapshot()
        live, stale = coordinator.registry.partition()
        lines = [
            f"Tasks: {stats.total}",
            f"  pending={stats.pending} in_progress={stats.in_progress} blocked={stats.blocked} "
            f"completed={stats.completed} cancelled={stats.cancelled}",
            f"Completed (all time): {snapshot.completed_count}",
            f"Average quality: {stats.avg_quality:.2f}",
            f"Agents: live={len(live)} stale={len(stale)}",
        ]
        timings = summarize_perf(coordinator.perf_log.records())
        if timings:
            lines.append("Operations:")
            lines.extend(
                f"  {item.operation} count={item.count} failures={item.failures} "
                f"avg_ms={item.avg_ms:.1f} max_ms={item.max_ms:.1f}"
                for item in timings
            )
        return lines

    def search(self, command: TaskSearchCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        tasks = coordinator.task_store.search(command.query)
        lines = [f"Matches: {len(tasks)}"]
        lines.extend(_task_row(task) for task in tasks)
        return lines

    def export(self, command: TaskExportCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        board = coordinator.task_store.export_markdown()
        if command.output_path is None:
            return board.rstrip("\n").splitlines()
        command.output_path.parent.mkdir(parents=True, exist_ok=True)
        command.output_path.write_text(board, "utf-8")
        return [f"Task board written: {command.output_path}"]

    def archive(self, command: TaskArchiveCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        before = None
        if command.older_than_days is not None:
            before = utc_now() - timedelta(days=max(0, command.older_than_days))
        archived = coordinator.task_store.archive(before=before)
        return [f"Archived tasks: {archived}"]

    def create_plan(self, command: PlanCreateCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        plan = coordinator.plans.create_plan(
            command.name or "",
            command.description,
            plan_from_description(command.description),
        )
        lines = [f"Plan created: {plan.id}", f"Name: {plan.name}", f"Tasks: {len(plan.tasks)}"]
        index = coordinator.task_store.snapshot().index()
        lines.extend(_task_row(index[task_id]) for task_id in plan.tasks if task_id in index)
        return lines

    def execute_plan(self, command: PlanCommand) -> PlanExecuteResult:
        if command.plan_id is None:
            raise ValueError("execute requires a plan id")
        coordinator = _coordinator(command.state_dir)
        summary = coordinator.executor.execute(command.plan_id)
        lines = [
            f"Plan {summary.plan_id}: {summary.status.value}",
            f"Dispatched: {summary.dispatched}",
            f"Completed: {summary.completed}",
            f"Failed: {summary.failed}",
            f"Timed out: {summary.timed_out}",
        ]
        if summary.error:
            lines.append(f"Error: {summary.error}")
        deadlock = None
        if summary.deadlock is not None:
            deadlock = DeadlockError(summary.plan_id, summary.deadlock)
        return PlanExecuteResult(lines=lines, deadlock=deadlock)

    def plan_status(self, command: PlanCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        if command.plan_id is None:
            plans = coordinator.plans.list_plans()
            lines = [f"Plans: {len(plans)}"]
            lines.extend(
                f"  {plan.id} status={plan.status.value} tasks={len(plan.tasks)} name={plan.name}"
                for plan in plans
            )
            return lines

        plan = coordinator.plans.get(command.plan_id)
        index = coordinator.task_store.snapshot().index()
        lines = [
            f"Plan: {plan.id}",
            f"Name: {plan.name}",
            f"Status: {plan.status.value}",
            f"Error: {plan.error or '-'}",
            f"Tasks: {len(plan.tasks)}",
        ]
        for task_id in plan.tasks:
            task = index.get(task_id)
            lines.append(_task_row(task) if task is not None else f"  {task_id} (archived)")
        return lines

    def cancel_plan(self, command: PlanCommand) -> list[str]:
        if command.plan_id is None:
            raise ValueError("cancel requires a plan id")
        coordinator = _coordinator(command.state_dir)
        cancelled = coordinator.executor.cancel_plan(command.plan_id)
        return [f"Plan cancelled: {command.plan_id}", f"Tasks cancelled: {len(cancelled)}"]

    def register_agent(self, command: AgentRegisterCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        agent = coordinator.registry.register(
            agent_id=command.agent_id,
            session_id=command.session_id,
            role=command.role,
        )
        return [f"Agent registered: {agent.agent_id}", f"Session: {agent.session_id}"]

    def heartbeat(self, command: AgentCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        agent = coordinator.registry.heartbeat(command.agent_id)
        return [f"Heartbeat recorded: {agent.agent_id} at {agent.last_heartbeat.isoformat()}"]

    def agent_status(self, command: AgentCommand) -> list[str]:
        if command.status is None:
            raise ValueError("status requires a value")
        coordinator = _coordinator(command.state_dir)
        agent = coordinator.registry.update_status(
            command.agent_id,
            AgentStatus(command.status.strip().lower()),
        )
        return [f"Agent {agent.agent_id} is now {agent.status.value}"]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        live, stale = coordinator.registry.partition()
        lines = [f"Agents: {len(live) + len(stale)} (live={len(live)} stale={len(stale)})"]
        lines.extend(_agent_row(agent, stale=False) for agent in live)
        lines.extend(_agent_row(agent, stale=True) for agent in stale)
        return lines

    def cleanup_stale(self, command: AgentListCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        report = coordinator.reaper.cleanup_stale_agents()
        lines = [
            f"Stale agents: {len(report.stale_agents)}",
            f"Marked failed: {len(report.failed_agents)}",
            f"Reclaimed tasks: {report.reclaimed}",
        ]
        lines.extend(f"  {task_id}" for task_id in report.task_ids)
        return lines

    def reap(self, command: AgentReapCommand) -> list[str]:
        coordinator = _coordinator(command.state_dir)
        interval = command.interval_seconds
        if interval is None:
            interval = coordinator.settings.liveness.reaper_interval_seconds
        reports = coordinator.reaper.run_loop(
            interval_seconds=interval,
            max_cycles=command.max_cycles,
        )
        reclaimed = sum(report.reclaimed for report in reports)
        return [f"Reaper cycles: {len(reports)}", f"Reclaimed tasks: {reclaimed}"]


def _coordinator(state_dir: Path | None) -> Coordinator:
    return Coordinator.from_settings(Settings.from_env(state_dir=state_dir))


def _parse_status(value: str) -> TaskStatus:
    return TaskStatus(value.strip().lower())


def _parse_priority(value: str) -> TaskPriority:
    return TaskPriority(value.strip().lower())


def _task_summary_lines(task: Task) -> list[str]:
    return [
        f"Title: {task.title}",
        f"Priority: {task.priority.value}",
        f"Status: {task.status.value}",
    ]


def _task_row(task: Task) -> str:
    return (
        f"  {task.id} status={task.status.value} priority={task.priority.value} "
        f"assigned={task.assigned_to or '-'} title={task.title}"
    )


def _agent_row(agent: Agent, *, stale: bool) -> str:
    return (
        f"  {agent.agent_id} status={agent.status.value} "
        f"liveness={'stale' if stale else 'live'} role={agent.assigned_role or '-'} "
        f"task={agent.current_task or '-'} heartbeat={agent.last_heartbeat.isoformat()}"
    )
