"""Wiring of coordination components around one state directory."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from agent_coordinator.config import Settings
from agent_coordinator.coordination.agent_registry import AgentRegistry
from agent_coordinator.coordination.audit import ReclamationAuditLog
from agent_coordinator.coordination.dispatcher import Dispatcher
from agent_coordinator.coordination.executor import DispatchBackend, PlanExecutor
from agent_coordinator.coordination.metrics import JsonlPerfLog
from agent_coordinator.coordination.plans import PlanStore
from agent_coordinator.coordination.reaper import LivenessReaper
from agent_coordinator.coordination.task_store import TaskStore


@dataclass(slots=True)
class Coordinator:
    """All coordination components sharing one settings object and state directory."""

    settings: Settings
    task_store: TaskStore
    registry: AgentRegistry
    audit_log: ReclamationAuditLog
    perf_log: JsonlPerfLog
    reaper: LivenessReaper
    plans: PlanStore
    dispatcher: DispatchBackend
    executor: PlanExecutor

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        dispatcher: DispatchBackend | None = None,
    ) -> Coordinator:
        settings.validate()
        settings.state_dir.mkdir(parents=True, exist_ok=True)
        perf_log = JsonlPerfLog(path=settings.perf_log_path, settings=settings.store)
        task_store = TaskStore(
            path=settings.tasks_path,
            archive_path=settings.archive_path,
            settings=settings.store,
            observer=perf_log,
        )
        registry = AgentRegistry(
            path=settings.registry_path,
            settings=settings.store,
            stale_after=timedelta(seconds=settings.liveness.stale_after_seconds),
            observer=perf_log,
        )
        audit_log = ReclamationAuditLog(path=settings.audit_log_path, settings=settings.store)
        reaper = LivenessReaper(task_store=task_store, registry=registry, audit_log=audit_log)
        plans = PlanStore(
            plans_dir=settings.plans_dir,
            task_store=task_store,
            settings=settings.store,
        )
        backend = dispatcher or Dispatcher(settings=settings, registry=registry)
        executor = PlanExecutor(
            task_store=task_store,
            plan_store=plans,
            dispatcher=backend,
            reaper=reaper,
            poll_interval_seconds=settings.dispatch.poll_interval_seconds,
            max_attempts=settings.dispatch.max_attempts,
            max_parallel=settings.dispatch.max_parallel,
            task_timeout_seconds=settings.dispatch.task_timeout_seconds,
        )
        return cls(
            settings=settings,
            task_store=task_store,
            registry=registry,
            audit_log=audit_log,
            perf_log=perf_log,
            reaper=reaper,
            plans=plans,
            dispatcher=backend,
            executor=executor,
        )
