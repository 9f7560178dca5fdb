from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from agent_coordinator.coordination import scheduler
from agent_coordinator.coordination.errors import InvalidTransitionError
from agent_coordinator.coordination.models import Task, TaskPriority, TaskStatus

pytestmark = [
    allure.epic("Task Coordination"),
    allure.feature("Scheduling Rules"),
]

_NOW = datetime(2026, 1, 1, tzinfo=UTC)


def _task(
    task_id: str,
    *,
    priority: TaskPriority = TaskPriority.MEDIUM,
    status: TaskStatus = TaskStatus.PENDING,
    deps: tuple[str, ...] = (),
) -> Task:
    return Task(
        id=task_id,
        title=task_id,
        description="",
        priority=priority,
        status=status,
        created_at=_NOW,
        updated_at=_NOW,
        dependencies=list(deps),
    )


def test_next_available_prefers_priority_then_creation_order() -> None:
    tasks = [
        _task("low", priority=TaskPriority.LOW),
        _task("medium-1"),
        _task("critical", priority=TaskPriority.CRITICAL, deps=("medium-1",)),
        _task("high", priority=TaskPriority.HIGH),
        _task("medium-2"),
    ]

    ordered = [task.id for task in scheduler.eligible_tasks(tasks)]

    assert ordered == ["high", "medium-1", "medium-2", "low"]
    assert scheduler.get_next_available(tasks).id == "high"


def test_dependency_completion_unlocks_task() -> None:
    tasks = [
        _task("a", status=TaskStatus.COMPLETED),
        _task("b", deps=("a",), priority=TaskPriority.CRITICAL),
    ]

    assert scheduler.get_next_available(tasks).id == "b"


def test_unknown_dependency_is_unmet_and_logged(caplog) -> None:
    tasks = [_task("a", deps=("ghost",))]

    with caplog.at_level("WARNING"):
        assert scheduler.get_next_available(tasks) is None

    assert "ghost" in caplog.text
    assert scheduler.unmet_dependencies(tasks[0], scheduler.index_tasks(tasks)) == ["ghost"]


def test_scope_limits_candidates_but_not_dependency_lookup() -> None:
    tasks = [
        _task("outside", status=TaskStatus.COMPLETED),
        _task("inside", deps=("outside",)),
        _task("other", priority=TaskPriority.CRITICAL),
    ]

    assert scheduler.get_next_available(tasks, scope={"inside"}).id == "inside"


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TaskStatus.COMPLETED, TaskStatus.PENDING),
        (TaskStatus.CANCELLED, TaskStatus.IN_PROGRESS),
        (TaskStatus.BLOCKED, TaskStatus.COMPLETED),
        (TaskStatus.PENDING, TaskStatus.COMPLETED),
    ],
)
def test_illegal_transitions_are_rejected(current: TaskStatus, target: TaskStatus) -> None:
    with pytest.raises(InvalidTransitionError, match="not allowed"):
        scheduler.validate_transition(current, target)


def test_agent_bound_transitions_need_dedicated_operations() -> None:
    with pytest.raises(InvalidTransitionError, match="use assign"):
        scheduler.validate_transition(TaskStatus.PENDING, TaskStatus.IN_PROGRESS)
    with pytest.raises(InvalidTransitionError, match="reclamation"):
        scheduler.validate_transition(TaskStatus.IN_PROGRESS, TaskStatus.PENDING)

    scheduler.validate_transition(
        TaskStatus.IN_PROGRESS,
        TaskStatus.PENDING,
        allow_restricted=True,
    )


def test_find_cycles_reports_closed_paths_and_ignores_cancelled() -> None:
    tasks = [
        _task("a", deps=("b",)),
        _task("b", deps=("a",)),
        _task("c", deps=("d",)),
        _task("d", deps=("c",), status=TaskStatus.CANCELLED),
        _task("e", deps=("a",)),
    ]

    assert scheduler.find_cycles(tasks) == [["a", "b", "a"]]


def test_cycle_through_finds_path_closed_by_new_edge() -> None:
    tasks = [_task("a"), _task("b", deps=("a",)), _task("c", deps=("b",))]
    index = scheduler.index_tasks(tasks)

    assert scheduler.cycle_through(index, "a", ["c"]) == ["a", "c", "b", "a"]
    assert scheduler.cycle_through(index, "a", ["a"]) == ["a", "a"]
    assert scheduler.cycle_through(index, "c", ["a"]) is None


def test_detect_deadlock_reports_blocked_scope() -> None:
    tasks = [
        _task("a", status=TaskStatus.CANCELLED),
        _task("b", deps=("a",)),
        _task("c", status=TaskStatus.BLOCKED),
    ]

    reason = scheduler.detect_deadlock(tasks, {"a", "b", "c"})

    assert reason == "no tasks can start but plan not complete (blocked: c; pending: b)"


def test_detect_deadlock_waits_while_work_is_in_flight() -> None:
    tasks = [_task("a", status=TaskStatus.IN_PROGRESS), _task("b", deps=("a",))]

    assert scheduler.detect_deadlock(tasks, {"a", "b"}) is None
    assert scheduler.detect_deadlock([tasks[1]], {"b"}, in_flight=1) is None
    assert scheduler.detect_deadlock([_task("x", status=TaskStatus.COMPLETED)], {"x"}) is None
