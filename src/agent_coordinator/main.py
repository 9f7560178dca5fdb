"""CLI entrypoint for agent-coordinator."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from agent_coordinator import __version__
from agent_coordinator.coordination.controllers import (
    AgentCommand,
    AgentListCommand,
    AgentReapCommand,
    AgentRegisterCommand,
    CoordinationCliController,
    PlanCommand,
    PlanCreateCommand,
    TaskArchiveCommand,
    TaskAssignCommand,
    TaskCreateCommand,
    TaskExportCommand,
    TaskListCommand,
    TaskLookupCommand,
    TaskRateCommand,
    TaskSearchCommand,
    TaskStatusCommand,
)
from agent_coordinator.coordination.errors import CoordinationError, DeadlockError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CoordinationCliController()
DEADLOCK_EXIT_CODE = 2

T = TypeVar("T")

state_dir_option = click.option(
    "--state-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Shared state directory (defaults to AGENT_COORD_STATE_DIR or .agent_coord).",
)


class DeadlockExit(click.ClickException):
    """Fatal plan deadlock; reported with its own exit code."""

    exit_code = DEADLOCK_EXIT_CODE


@click.group()
@click.version_option(version=__version__, prog_name="agent-coord")
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    help="Logging level (DEBUG, INFO, WARNING, ERROR).",
)
def agent_coord(log_level: str) -> None:
    """Multi-agent task coordination CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.strip().upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_coord.group()
def task() -> None:
    """Task store commands."""


@task.command("create")
@state_dir_option
@click.argument("title")
@click.argument("priority", required=False, default="medium")
@click.option("--description", default="", help="Task description.")
@click.option("--depends-on", "depends_on", multiple=True, help="Dependency task id (repeatable).")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable).")
@click.option("--parent", default=None, help="Parent task id.")
def task_create(  # noqa: PLR0913
    state_dir: Path | None,
    title: str,
    priority: str,
    description: str,
    depends_on: tuple[str, ...],
    tags: tuple[str, ...],
    parent: str | None,
) -> None:
    """Create a task with optional PRIORITY (critical, high, medium, low)."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.create_task(
                TaskCreateCommand(
                    state_dir=state_dir,
                    title=title,
                    priority=priority,
                    description=description,
                    depends_on=depends_on,
                    tags=tags,
                    parent=parent,
                ),
            ),
        ),
    )


@task.command("status")
@state_dir_option
@click.argument("task_id")
@click.argument("status")
@click.option("--note", default=None, help="Note appended to the task.")
def task_status(state_dir: Path | None, task_id: str, status: str, note: str | None) -> None:
    """Move a task to STATUS (completed, cancelled, blocked, pending)."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.update_status(
                TaskStatusCommand(state_dir=state_dir, task_id=task_id, status=status, note=note),
            ),
        ),
    )


@task.command("next")
@state_dir_option
def task_next(state_dir: Path | None) -> None:
    """Show the next eligible task without claiming it."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.next_task(TaskListCommand(state_dir=state_dir, status=None))),
    )


@task.command("assign")
@state_dir_option
@click.argument("task_id")
@click.argument("agent_id")
def task_assign(state_dir: Path | None, task_id: str, agent_id: str) -> None:
    """Assign a pending task to an agent."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.assign_task(
                TaskAssignCommand(state_dir=state_dir, agent_id=agent_id, task_id=task_id),
            ),
        ),
    )


@task.command("claim")
@state_dir_option
@click.argument("agent_id")
def task_claim(state_dir: Path | None, agent_id: str) -> None:
    """Claim the next eligible task for an agent."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.claim_task(
                TaskAssignCommand(state_dir=state_dir, agent_id=agent_id),
            ),
        ),
    )


@task.command("show")
@state_dir_option
@click.argument("task_id")
def task_show(state_dir: Path | None, task_id: str) -> None:
    """Show one task with notes, artifacts and reclamation history."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.show_task(TaskLookupCommand(state_dir=state_dir, task_id=task_id)),
        ),
    )


@task.command("list")
@state_dir_option
@click.option("--status", default=None, help="Filter by status.")
@click.option("--plan-id", default=None, help="Filter by plan id.")
@click.option("--tag", default=None, help="Filter by tag.")
def task_list(
    state_dir: Path | None,
    status: str | None,
    plan_id: str | None,
    tag: str | None,
) -> None:
    """List tasks in creation order."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.list_tasks(
                TaskListCommand(state_dir=state_dir, status=status, plan_id=plan_id, tag=tag),
            ),
        ),
    )


@task.command("rate")
@state_dir_option
@click.argument("task_id")
@click.argument("score", type=int)
@click.option("--note", default=None, help="Quality notes.")
def task_rate(state_dir: Path | None, task_id: str, score: int, note: str | None) -> None:
    """Rate a completed task (score clamped to 1..10)."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.rate_task(
                TaskRateCommand(state_dir=state_dir, task_id=task_id, score=score, note=note),
            ),
        ),
    )


@task.command("stats")
@state_dir_option
def task_stats(state_dir: Path | None) -> None:
    """Task counts, average quality, agent liveness and operation timings."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.stats(TaskListCommand(state_dir=state_dir, status=None))),
    )


@task.command("search")
@state_dir_option
@click.argument("query")
def task_search(state_dir: Path | None, query: str) -> None:
    """Search titles, descriptions and tags."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.search(TaskSearchCommand(state_dir=state_dir, query=query))),
    )


@task.command("export")
@state_dir_option
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Write the markdown board to a file instead of stdout.",
)
def task_export(state_dir: Path | None, output_path: Path | None) -> None:
    """Export the task board as markdown."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.export(
                TaskExportCommand(state_dir=state_dir, output_path=output_path),
            ),
        ),
    )


@task.command("archive")
@state_dir_option
@click.option(
    "--older-than-days",
    type=int,
    default=None,
    help="Only archive terminal tasks last updated more than this many days ago.",
)
def task_archive(state_dir: Path | None, older_than_days: int | None) -> None:
    """Move completed and cancelled tasks to the archive document."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.archive(
                TaskArchiveCommand(state_dir=state_dir, older_than_days=older_than_days),
            ),
        ),
    )


@agent_coord.group()
def plan() -> None:
    """Execution plan commands."""


@plan.command("create")
@state_dir_option
@click.argument("description")
@click.option("--name", default=None, help="Plan name (defaults to the description).")
def plan_create(state_dir: Path | None, description: str, name: str | None) -> None:
    """Create a research, implement, validate plan for DESCRIPTION."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.create_plan(
                PlanCreateCommand(state_dir=state_dir, description=description, name=name),
            ),
        ),
    )


@plan.command("execute")
@state_dir_option
@click.argument("plan_id")
def plan_execute(state_dir: Path | None, plan_id: str) -> None:
    """Run a plan to completion, dispatching tasks to worker processes."""

    result = _guarded(
        lambda: CONTROLLER.execute_plan(PlanCommand(state_dir=state_dir, plan_id=plan_id)),
    )
    _emit_lines(result.lines)
    if result.deadlock is not None:
        raise DeadlockExit(str(result.deadlock))


@plan.command("status")
@state_dir_option
@click.argument("plan_id", required=False)
def plan_status(state_dir: Path | None, plan_id: str | None) -> None:
    """Show one plan, or list all plans."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.plan_status(PlanCommand(state_dir=state_dir, plan_id=plan_id))),
    )


@plan.command("cancel")
@state_dir_option
@click.argument("plan_id")
def plan_cancel(state_dir: Path | None, plan_id: str) -> None:
    """Cancel all unfinished plan tasks; running workers are not killed."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.cancel_plan(PlanCommand(state_dir=state_dir, plan_id=plan_id))),
    )


@agent_coord.group()
def agent() -> None:
    """Agent registry and liveness commands."""


@agent.command("register")
@state_dir_option
@click.option("--role", default=None, help="Assigned role.")
@click.option("--session-id", default=None, help="Session id (generated when omitted).")
@click.option("--agent-id", default=None, help="Agent id (generated when omitted).")
def agent_register(
    state_dir: Path | None,
    role: str | None,
    session_id: str | None,
    agent_id: str | None,
) -> None:
    """Register an agent (or refresh an existing one)."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.register_agent(
                AgentRegisterCommand(
                    state_dir=state_dir,
                    role=role,
                    session_id=session_id,
                    agent_id=agent_id,
                ),
            ),
        ),
    )


@agent.command("heartbeat")
@state_dir_option
@click.argument("agent_id")
def agent_heartbeat(state_dir: Path | None, agent_id: str) -> None:
    """Record a heartbeat for an agent."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.heartbeat(AgentCommand(state_dir=state_dir, agent_id=agent_id)),
        ),
    )


@agent.command("status")
@state_dir_option
@click.argument("agent_id")
@click.argument("status")
def agent_status(state_dir: Path | None, agent_id: str, status: str) -> None:
    """Set an agent's self-reported STATUS (working, idle, spawning, completed, failed)."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.agent_status(
                AgentCommand(state_dir=state_dir, agent_id=agent_id, status=status),
            ),
        ),
    )


@agent.command("list")
@state_dir_option
def agent_list(state_dir: Path | None) -> None:
    """List registered agents with derived liveness."""

    _emit_lines(_guarded(lambda: CONTROLLER.list_agents(AgentListCommand(state_dir=state_dir))))


@agent.command("cleanup-stale")
@state_dir_option
def agent_cleanup_stale(state_dir: Path | None) -> None:
    """Mark stale agents failed and reclaim their tasks (one pass)."""

    _emit_lines(_guarded(lambda: CONTROLLER.cleanup_stale(AgentListCommand(state_dir=state_dir))))


@agent.command("reap")
@state_dir_option
@click.option(
    "--interval",
    "interval_seconds",
    type=float,
    default=None,
    help="Seconds between sweeps (defaults to AGENT_COORD_REAPER_INTERVAL_SECONDS).",
)
@click.option("--max-cycles", type=int, default=None, help="Stop after this many sweeps.")
def agent_reap(
    state_dir: Path | None,
    interval_seconds: float | None,
    max_cycles: int | None,
) -> None:
    """Run the liveness reaper in the foreground."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.reap(
                AgentReapCommand(
                    state_dir=state_dir,
                    interval_seconds=interval_seconds,
                    max_cycles=max_cycles,
                ),
            ),
        ),
    )


def _guarded(action: Callable[[], T]) -> T:
    try:
        return action()
    except DeadlockError as error:
        raise DeadlockExit(str(error)) from error
    except (CoordinationError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_coord()
