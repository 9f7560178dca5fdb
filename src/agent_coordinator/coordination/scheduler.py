"""Pure scheduling rules: eligibility, priority order, state machine and deadlock detection."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Collection, Iterable, Mapping

from agent_coordinator.coordination.errors import InvalidTransitionError
from agent_coordinator.coordination.models import Task, TaskStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED, TaskStatus.BLOCKED},
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.PENDING},
    ),
    TaskStatus.BLOCKED: frozenset({TaskStatus.PENDING, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# Transitions that need an agent id or a reclamation reason and therefore
# have dedicated store operations (assign / release).
_RESTRICTED_TRANSITIONS = {
    (TaskStatus.PENDING, TaskStatus.IN_PROGRESS): "use assign to start a task",
    (TaskStatus.IN_PROGRESS, TaskStatus.PENDING): "only reclamation may return a task to pending",
}


def validate_transition(
    current: TaskStatus,
    target: TaskStatus,
    *,
    allow_restricted: bool = False,
) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is a legal edge."""

    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Transition {current.value} -> {target.value} is not allowed",
        )
    hint = _RESTRICTED_TRANSITIONS.get((current, target))
    if hint is not None and not allow_restricted:
        raise InvalidTransitionError(
            f"Transition {current.value} -> {target.value} is not allowed here: {hint}",
        )


def index_tasks(tasks: Iterable[Task]) -> dict[str, Task]:
    return {task.id: task for task in tasks}


def unknown_dependencies(task: Task, index: Mapping[str, Task]) -> list[str]:
    return [dep for dep in task.dependencies if dep not in index]


def unmet_dependencies(task: Task, index: Mapping[str, Task]) -> list[str]:
    """Dependency ids that are not completed; unknown ids count as unmet."""

    unmet: list[str] = []
    for dep in task.dependencies:
        dependency = index.get(dep)
        if dependency is None or dependency.status != TaskStatus.COMPLETED:
            unmet.append(dep)
    return unmet


def is_eligible(task: Task, index: Mapping[str, Task]) -> bool:
    return task.status == TaskStatus.PENDING and not unmet_dependencies(task, index)


def priority_order(tasks: Iterable[Task]) -> list[Task]:
    """Stable sort by priority; ties keep creation order."""

    return sorted(tasks, key=lambda task: task.priority.rank)


def eligible_tasks(tasks: list[Task], scope: Collection[str] | None = None) -> list[Task]:
    """Every currently eligible task, in scheduling order.

    ``scope`` restricts candidates (for example to one plan) while dependencies
    still resolve against the whole task list.
    """

    index = index_tasks(tasks)
    candidates = [
        task
        for task in tasks
        if task.status == TaskStatus.PENDING and (scope is None or task.id in scope)
    ]
    eligible: list[Task] = []
    for task in priority_order(candidates):
        unknown = unknown_dependencies(task, index)
        if unknown:
            logger.warning(
                "Task %s depends on unknown task ids %s; treating them as unmet",
                task.id,
                ", ".join(unknown),
            )
            continue
        if not unmet_dependencies(task, index):
            eligible.append(task)
    return eligible


def get_next_available(tasks: list[Task], scope: Collection[str] | None = None) -> Task | None:
    """Highest-priority pending task whose dependencies are all completed."""

    eligible = eligible_tasks(tasks, scope)
    return eligible[0] if eligible else None


def find_cycles(tasks: Iterable[Task]) -> list[list[str]]:
    """Dependency cycles among non-cancelled tasks, each as a closed id path."""

    graph = {
        task.id: list(task.dependencies)
        for task in tasks
        if task.status != TaskStatus.CANCELLED
    }
    white, grey, black = 0, 1, 2
    color = dict.fromkeys(graph, white)
    cycles: list[list[str]] = []

    for root in graph:
        if color[root] != white:
            continue
        # Iterative DFS; stack holds (node, iterator position).
        path: list[str] = []
        stack: list[tuple[str, int]] = [(root, 0)]
        while stack:
            node, position = stack.pop()
            if position == 0:
                color[node] = grey
                path.append(node)
            deps = graph[node]
            if position < len(deps):
                stack.append((node, position + 1))
                dep = deps[position]
                if dep not in graph:
                    continue
                if color[dep] == grey:
                    start = path.index(dep)
                    cycles.append([*path[start:], dep])
                elif color[dep] == white:
                    stack.append((dep, 0))
                continue
            color[node] = black
            path.pop()
    return cycles


def cycle_through(
    index: Mapping[str, Task],
    task_id: str,
    dependencies: Iterable[str],
) -> list[str] | None:
    """Path ``task_id -> ... -> task_id`` that adding ``dependencies`` would close, if any."""

    for start in dependencies:
        if start == task_id:
            return [task_id, task_id]
        path = _path_to(index, start, task_id)
        if path is not None:
            return [task_id, *path]
    return None


def _path_to(index: Mapping[str, Task], start: str, goal: str) -> list[str] | None:
    parents: dict[str, str | None] = {start: None}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        if current == goal:
            path = [current]
            while parents[path[-1]] is not None:
                path.append(parents[path[-1]])  # type: ignore[arg-type]
            return list(reversed(path))
        task = index.get(current)
        if task is None or task.status == TaskStatus.CANCELLED:
            continue
        for dep in task.dependencies:
            if dep not in parents:
                parents[dep] = current
                queue.append(dep)
    return None


def detect_deadlock(
    tasks: list[Task],
    scope: Collection[str],
    *,
    in_flight: int = 0,
) -> str | None:
    """Reason string when the scope has unfinished work that can never start, else None.

    A scope is deadlocked when it still has non-terminal tasks, nothing is in
    flight (no outstanding dispatch and no in_progress task) and a full pass
    finds no eligible task.
    """

    scoped = [task for task in tasks if task.id in scope]
    open_tasks = [task for task in scoped if not task.status.is_terminal]
    if not open_tasks or in_flight > 0:
        return None
    if any(task.status == TaskStatus.IN_PROGRESS for task in open_tasks):
        return None
    if eligible_tasks(tasks, scope):
        return None

    by_status: dict[TaskStatus, list[str]] = {}
    for task in open_tasks:
        by_status.setdefault(task.status, []).append(task.id)
    details = "; ".join(
        f"{status.value}: {', '.join(ids)}" for status, ids in sorted(
            by_status.items(), key=lambda item: item[0].value,
        )
    )
    return f"no tasks can start but plan not complete ({details})"
