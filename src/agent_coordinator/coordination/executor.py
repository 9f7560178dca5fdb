"""Plan executor: drive a plan's tasks to terminal states through the dispatcher."""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from agent_coordinator.coordination import scheduler
from agent_coordinator.coordination.agent_registry import new_agent_id
from agent_coordinator.coordination.dispatcher import CollectResult, DispatchTicket
from agent_coordinator.coordination.errors import (
    DispatchError,
    InvalidTransitionError,
    NotFoundError,
    UnmetDependencyError,
)
from agent_coordinator.coordination.models import (
    ExecutionPlan,
    PlanStatus,
    Task,
    TaskStatus,
    WorkerResult,
    WorkerResultStatus,
)
from agent_coordinator.coordination.plans import PlanStore
from agent_coordinator.coordination.reaper import LivenessReaper
from agent_coordinator.coordination.storage import utc_now
from agent_coordinator.coordination.task_store import TaskStore

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "task timeout"
CANCELLED_ERROR = "cancelled"


class DispatchBackend(Protocol):
    def dispatch(self, task: Task, agent_id: str | None = None) -> DispatchTicket: ...

    def collect(self, task_id: str, agent_id: str | None = None) -> CollectResult: ...


@dataclass(slots=True)
class PlanRunSummary:
    """Counters and final state of one ``execute`` call."""

    plan_id: str
    status: PlanStatus = PlanStatus.RUNNING
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    polls: int = 0
    error: str | None = None
    deadlock: str | None = None


class PlanExecutor:
    """Polling loop over one plan: reconcile in-flight work, claim and dispatch, detect deadlock."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_store: TaskStore,
        plan_store: PlanStore,
        dispatcher: DispatchBackend,
        reaper: LivenessReaper,
        poll_interval_seconds: float = 2.0,
        max_attempts: int = 2,
        max_parallel: int = 4,
        task_timeout_seconds: float = 1_800,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.task_store = task_store
        self.plan_store = plan_store
        self.dispatcher = dispatcher
        self.reaper = reaper
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max(1, max_attempts)
        self.max_parallel = max(1, max_parallel)
        self.task_timeout = timedelta(seconds=task_timeout_seconds)
        self._sleeper = sleeper
        self._clock = clock

    def execute(
        self,
        plan_id: str,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> PlanRunSummary:
        """Run until every plan task is terminal, the plan deadlocks, or cancellation."""

        plan = self.plan_store.get(plan_id)
        if plan.status in {PlanStatus.COMPLETED, PlanStatus.FAILED}:
            raise InvalidTransitionError(f"Plan {plan_id} is already {plan.status.value}")
        summary = PlanRunSummary(plan_id=plan_id)
        scope = frozenset(plan.tasks)

        cycles = [
            cycle
            for cycle in scheduler.find_cycles(self.task_store.snapshot().tasks)
            if scope.intersection(cycle)
        ]
        if cycles:
            rendered = "; ".join(" -> ".join(cycle) for cycle in cycles)
            return self._fail_deadlocked(plan, summary, f"dependency cycle {rendered}")

        plan.status = PlanStatus.RUNNING
        plan.error = None
        self.plan_store.save(plan)
        logger.info("Executing plan %s (%d task(s))", plan_id, len(plan.tasks))

        in_flight: dict[str, DispatchTicket] = {}
        attempts: Counter[str] = Counter()
        while True:
            summary.polls += 1
            if cancel_requested is not None and cancel_requested():
                logger.info("Cancellation requested for plan %s", plan_id)
                self.cancel_plan(plan_id)
                in_flight.clear()
                break

            self._reconcile(in_flight, summary)
            tasks = self.task_store.snapshot().tasks
            if all(task.status.is_terminal for task in tasks if task.id in scope):
                break
            foreign = [
                task
                for task in tasks
                if task.id in scope
                and task.status == TaskStatus.IN_PROGRESS
                and task.id not in in_flight
            ]
            if foreign:
                # Claims from an earlier run or another process: reap stale agents, then
                # time out claims whose agent is not registered or never goes stale.
                self.reaper.cleanup_stale_agents()
                self._reclaim_overdue(foreign, summary)
                tasks = self.task_store.snapshot().tasks

            capacity = self.max_parallel - len(in_flight)
            for task in scheduler.eligible_tasks(tasks, scope)[: max(0, capacity)]:
                self._launch(task, in_flight, attempts, summary)

            tasks = self.task_store.snapshot().tasks
            reason = scheduler.detect_deadlock(tasks, scope, in_flight=len(in_flight))
            if reason is not None:
                return self._fail_deadlocked(plan, summary, reason)
            if all(task.status.is_terminal for task in tasks if task.id in scope):
                break
            self._sleeper(self.poll_interval_seconds)

        return self._finish(plan_id, summary)

    def cancel_plan(self, plan_id: str) -> list[Task]:
        """Cancel every non-terminal plan task and fail the plan; running workers are left alone."""

        plan = self.plan_store.get(plan_id)
        if plan.status == PlanStatus.COMPLETED:
            raise InvalidTransitionError(f"Plan {plan_id} is already completed")
        cancelled = self.task_store.cancel_many(plan.tasks, f"Cancelled with plan {plan_id}")
        plan.status = PlanStatus.FAILED
        plan.error = CANCELLED_ERROR
        self.plan_store.save(plan)
        logger.info("Plan %s cancelled (%d task(s) cancelled)", plan_id, len(cancelled))
        return cancelled

    def _launch(
        self,
        task: Task,
        in_flight: dict[str, DispatchTicket],
        attempts: Counter[str],
        summary: PlanRunSummary,
    ) -> None:
        if attempts[task.id] >= self.max_attempts:
            self.task_store.update_status(
                task.id,
                TaskStatus.CANCELLED,
                note=f"Cancelled after {attempts[task.id]} attempt(s) without a result",
            )
            summary.failed += 1
            return

        agent_id = new_agent_id("worker")
        try:
            claimed = self.task_store.assign(task.id, agent_id)
        except (InvalidTransitionError, UnmetDependencyError) as error:
            logger.info("Skipping task %s: %s", task.id, error)
            return

        attempts[task.id] += 1
        try:
            ticket = self.dispatcher.dispatch(claimed, agent_id)
        except DispatchError as error:
            logger.error("Dispatch failed for task %s: %s", task.id, error)
            self.task_store.update_status(
                task.id,
                TaskStatus.CANCELLED,
                note=f"Dispatch failed: {error}",
            )
            summary.failed += 1
            return
        in_flight[task.id] = ticket
        summary.dispatched += 1

    def _reconcile(self, in_flight: dict[str, DispatchTicket], summary: PlanRunSummary) -> None:
        if not in_flight:
            return
        index = self.task_store.snapshot().index()
        now = self._clock()
        for task_id, ticket in list(in_flight.items()):
            task = index.get(task_id)
            if (
                task is None
                or task.status != TaskStatus.IN_PROGRESS
                or task.assigned_to != ticket.agent_id
            ):
                logger.info(
                    "Task %s was released from %s outside the executor; dropping",
                    task_id,
                    ticket.agent_id,
                )
                del in_flight[task_id]
                continue

            collected = self.dispatcher.collect(task_id, ticket.agent_id)
            if collected.ready and collected.result is not None:
                self._apply_result(task_id, ticket, collected.result, summary)
                del in_flight[task_id]
                continue

            if ticket.expired(now):
                logger.warning("Task %s timed out on %s; reclaiming", task_id, ticket.agent_id)
                if self.reaper.reclaim_task(task_id, ticket.agent_id, TIMEOUT_REASON) is not None:
                    summary.timed_out += 1
                del in_flight[task_id]

    def _reclaim_overdue(self, foreign: list[Task], summary: PlanRunSummary) -> None:
        now = self._clock()
        index = self.task_store.snapshot().index()
        for task in foreign:
            current = index.get(task.id)
            if (
                current is None
                or current.status != TaskStatus.IN_PROGRESS
                or current.assigned_to is None
            ):
                continue
            claimed_at = current.claimed_at or current.updated_at
            if now < claimed_at + self.task_timeout:
                continue
            logger.warning(
                "Task %s claimed by %s since %s exceeded the task timeout; reclaiming",
                current.id,
                current.assigned_to,
                claimed_at.isoformat(),
            )
            released = self.reaper.reclaim_task(current.id, current.assigned_to, TIMEOUT_REASON)
            if released is not None:
                summary.timed_out += 1

    def _apply_result(
        self,
        task_id: str,
        ticket: DispatchTicket,
        result: WorkerResult,
        summary: PlanRunSummary,
    ) -> None:
        try:
            if result.status == WorkerResultStatus.COMPLETED:
                note = f"Completed by {ticket.agent_id}"
                if result.summary:
                    note = f"{note}: {result.summary}"
                self.task_store.update_status(task_id, TaskStatus.COMPLETED, note=note)
                summary.completed += 1
            else:
                self.task_store.update_status(
                    task_id,
                    TaskStatus.CANCELLED,
                    note=f"Failed on {ticket.agent_id}: {result.error or 'no error reported'}",
                )
                summary.failed += 1
        except (InvalidTransitionError, NotFoundError) as error:
            logger.warning("Could not apply result for task %s: %s", task_id, error)

    def _fail_deadlocked(
        self,
        plan: ExecutionPlan,
        summary: PlanRunSummary,
        reason: str,
    ) -> PlanRunSummary:
        logger.error("Plan %s deadlocked: %s", plan.id, reason)
        plan.status = PlanStatus.FAILED
        plan.error = f"deadlock: {reason}"
        self.plan_store.save(plan)
        summary.status = PlanStatus.FAILED
        summary.error = plan.error
        summary.deadlock = reason
        return summary

    def _finish(self, plan_id: str, summary: PlanRunSummary) -> PlanRunSummary:
        plan = self.plan_store.get(plan_id)
        index = self.task_store.snapshot().index()
        plan_tasks = [index[task_id] for task_id in plan.tasks if task_id in index]
        cancelled = [task.id for task in plan_tasks if task.status == TaskStatus.CANCELLED]
        # A plan cancelled elsewhere is already failed and keeps its recorded reason.
        if plan.status != PlanStatus.FAILED:
            if cancelled:
                plan.status = PlanStatus.FAILED
                plan.error = f"{len(cancelled)} task(s) cancelled: {', '.join(cancelled)}"
            else:
                plan.status = PlanStatus.COMPLETED
                plan.error = None
            self.plan_store.save(plan)
        summary.status = plan.status
        summary.error = plan.error
        logger.info("Plan %s finished: %s", plan_id, plan.status.value)
        return summary
