"""Liveness reaper: fail stale agents and return their tasks to the pool."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from agent_coordinator.coordination.agent_registry import AgentRegistry
from agent_coordinator.coordination.audit import ReclamationAuditLog
from agent_coordinator.coordination.errors import StaleClaimError
from agent_coordinator.coordination.models import (
    AgentStatus,
    ReclamationEvent,
    Task,
    TaskFilter,
    TaskStatus,
)
from agent_coordinator.coordination.storage import utc_now
from agent_coordinator.coordination.task_store import TaskStore

logger = logging.getLogger(__name__)

STALE_CLEANUP_REASON = "stale agent cleanup"
ACTION_RECLAIMED = "reclaimed"
ACTION_SKIPPED = "skipped"

# Agents in these states finished on their own; a missing heartbeat is expected.
_SETTLED_AGENT_STATUSES = frozenset({AgentStatus.FAILED, AgentStatus.COMPLETED})


@dataclass(slots=True)
class ReclamationReport:
    """Outcome of one reaper pass."""

    reclaimed: int = 0
    stale_agents: list[str] = field(default_factory=list)
    failed_agents: list[str] = field(default_factory=list)
    task_ids: list[str] = field(default_factory=list)
    skipped: int = 0


class LivenessReaper:
    """Detects stale agents and reclaims the in-progress tasks they hold."""

    def __init__(
        self,
        *,
        task_store: TaskStore,
        registry: AgentRegistry,
        audit_log: ReclamationAuditLog,
    ) -> None:
        self.task_store = task_store
        self.registry = registry
        self.audit_log = audit_log

    def cleanup_stale_agents(self, now: datetime | None = None) -> ReclamationReport:
        """One idempotent pass: mark stale agents failed, reclaim their tasks, audit each."""

        moment = now or utc_now()
        _, stale = self.registry.partition(moment)
        report = ReclamationReport(stale_agents=[agent.agent_id for agent in stale])
        if not stale:
            return report

        to_fail = [agent.agent_id for agent in stale if agent.status not in _SETTLED_AGENT_STATUSES]
        if to_fail:
            report.failed_agents = self.registry.mark_failed(to_fail)
            for agent_id in report.failed_agents:
                logger.warning("Agent %s is stale; marked failed", agent_id)

        stale_ids = set(report.stale_agents)
        orphaned = [
            task
            for task in self.task_store.list_tasks(TaskFilter(status=TaskStatus.IN_PROGRESS))
            if task.assigned_to in stale_ids
        ]
        for task in orphaned:
            released = self._release(task, str(task.assigned_to), STALE_CLEANUP_REASON)
            if released is None:
                report.skipped += 1
                continue
            report.reclaimed += 1
            report.task_ids.append(task.id)

        if report.reclaimed:
            logger.info(
                "Reclaimed %d task(s) from %d stale agent(s)",
                report.reclaimed,
                len(stale_ids),
            )
        return report

    def reclaim_task(self, task_id: str, agent_id: str, reason: str) -> Task | None:
        """Return one in-progress task to pending; None when another writer got there first."""

        task = self.task_store.get(task_id)
        return self._release(task, agent_id, reason)

    def _release(self, task: Task, agent_id: str, reason: str) -> Task | None:
        try:
            released = self.task_store.release(task.id, agent_id, reason)
        except StaleClaimError:
            logger.info("Task %s no longer held by %s; skipping reclamation", task.id, agent_id)
            self._audit(task.id, agent_id, ACTION_SKIPPED, reason)
            return None
        self._audit(task.id, agent_id, ACTION_RECLAIMED, reason)
        return released

    def _audit(self, task_id: str, agent_id: str, action: str, reason: str) -> None:
        self.audit_log.append(
            ReclamationEvent(
                timestamp=utc_now(),
                task_id=task_id,
                prior_agent=agent_id,
                action=action,
                reason=reason,
            ),
        )

    def run_loop(
        self,
        *,
        interval_seconds: float,
        should_stop: Callable[[], bool] | None = None,
        max_cycles: int | None = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> list[ReclamationReport]:
        """Background mode: sweep every ``interval_seconds`` until stopped.

        Ctrl-C ends the loop and returns the reports collected so far.
        """

        reports: list[ReclamationReport] = []
        cycles = 0
        try:
            while True:
                if should_stop is not None and should_stop():
                    break
                reports.append(self.cleanup_stale_agents())
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                sleeper(interval_seconds)
        except KeyboardInterrupt:
            logger.info("Reaper interrupted after %d cycle(s)", cycles)
        return reports
