"""Error taxonomy for coordination operations."""

from __future__ import annotations


class CoordinationError(RuntimeError):
    """Base class for rejected or failed coordination operations."""


class NotFoundError(CoordinationError):
    """Unknown task, agent or plan id."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind.capitalize()} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class InvalidTransitionError(CoordinationError):
    """Status change not permitted by the task state machine."""


class DependencyCycleError(InvalidTransitionError):
    """Dependency edit would make the dependency graph cyclic."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Dependency cycle rejected: {' -> '.join(cycle)}")
        self.cycle = cycle


class UnmetDependencyError(CoordinationError):
    """Attempt to start a task whose dependencies are not all completed."""

    def __init__(self, task_id: str, unmet: list[str]) -> None:
        super().__init__(
            f"Task {task_id} has unmet dependencies: {', '.join(unmet)}",
        )
        self.task_id = task_id
        self.unmet = unmet


class DeadlockError(CoordinationError):
    """Plan has non-terminal tasks but nothing can ever become eligible."""

    def __init__(self, plan_id: str, reason: str) -> None:
        super().__init__(f"Plan {plan_id} deadlocked: {reason}")
        self.plan_id = plan_id
        self.reason = reason


class StaleClaimError(CoordinationError):
    """Reclamation raced with another writer: the task is no longer held by the stale agent."""

    def __init__(self, task_id: str, agent_id: str) -> None:
        super().__init__(f"Task {task_id} is no longer held by agent {agent_id}")
        self.task_id = task_id
        self.agent_id = agent_id


class StoreConflictError(CoordinationError):
    """Shared document stayed locked by another writer past the retry budget."""


class DispatchError(CoordinationError):
    """Worker process could not be started for a claimed task."""
