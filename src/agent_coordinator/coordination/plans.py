"""Execution plan documents and the default three-step planner."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_coordinator.config import StoreSettings
from agent_coordinator.coordination.errors import NotFoundError
from agent_coordinator.coordination.models import (
    ExecutionPlan,
    PlanStatus,
    PlanStep,
    TaskCreate,
    TaskPriority,
)
from agent_coordinator.coordination.storage import (
    JsonDocumentStore,
    load_json,
    optional_iso,
    utc_now,
)
from agent_coordinator.coordination.task_store import TaskStore

logger = logging.getLogger(__name__)


def plan_from_description(description: str) -> list[PlanStep]:
    """Default decomposition: research, then implement, then validate."""

    text = description.strip()
    if not text:
        raise ValueError("Plan description must be a non-empty string")
    return [
        PlanStep(
            key="research",
            title=f"Research and analyze: {text}",
            description=f"Investigate requirements, constraints and prior art for: {text}",
            priority=TaskPriority.HIGH,
        ),
        PlanStep(
            key="implement",
            title=f"Implement solution for: {text}",
            description=f"Build the solution based on the research findings for: {text}",
            priority=TaskPriority.HIGH,
            depends_on=("research",),
        ),
        PlanStep(
            key="validate",
            title=f"Test and validate: {text}",
            description=f"Verify the implementation works as intended for: {text}",
            priority=TaskPriority.MEDIUM,
            depends_on=("implement",),
        ),
    ]


def plan_to_record(plan: ExecutionPlan) -> dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "description": plan.description,
        "created_at": plan.created_at.isoformat(),
        "updated_at": plan.updated_at.isoformat(),
        "status": plan.status.value,
        "tasks": list(plan.tasks),
        "error": plan.error,
    }


def plan_from_record(raw: dict[str, Any]) -> ExecutionPlan:
    plan_id = raw.get("id")
    if not isinstance(plan_id, str) or not plan_id:
        raise ValueError("plan.id must be a non-empty string")
    created_at = optional_iso(raw.get("created_at"))
    if created_at is None:
        raise ValueError(f"plan.created_at is required (plan {plan_id})")
    return ExecutionPlan(
        id=plan_id,
        name=str(raw.get("name") or ""),
        description=str(raw.get("description") or ""),
        created_at=created_at,
        updated_at=optional_iso(raw.get("updated_at")) or created_at,
        status=PlanStatus(raw.get("status", PlanStatus.DRAFT.value)),
        tasks=[str(item) for item in raw.get("tasks") or []],
        error=raw.get("error"),
    )


class PlanStore:
    """One ``plans/<plan_id>.json`` document per plan."""

    def __init__(self, *, plans_dir: Path, task_store: TaskStore, settings: StoreSettings) -> None:
        self.plans_dir = plans_dir
        self.task_store = task_store
        self.settings = settings

    def _document(self, plan_id: str) -> JsonDocumentStore:
        return JsonDocumentStore(
            path=self.plans_dir / f"{plan_id}.json",
            empty_factory=dict,
            settings=self.settings,
        )

    def create_plan(
        self,
        name: str,
        description: str,
        steps: Sequence[PlanStep],
    ) -> ExecutionPlan:
        """Persist a draft plan and materialize its steps as tasks in one store write."""

        if not steps:
            raise ValueError("Plan must have at least one step")
        keys = [step.key for step in steps]
        if len(set(keys)) != len(keys):
            raise ValueError("Plan step keys must be unique")

        plan_id = str(uuid4())
        task_ids = {step.key: str(uuid4()) for step in steps}
        specs: list[TaskCreate] = []
        for step in steps:
            unknown = [key for key in step.depends_on if key not in task_ids]
            if unknown:
                raise ValueError(f"Step {step.key} depends on unknown steps: {', '.join(unknown)}")
            specs.append(
                TaskCreate(
                    title=step.title,
                    description=step.description,
                    priority=step.priority,
                    dependencies=tuple(task_ids[key] for key in step.depends_on),
                    tags=("plan",),
                    created_by="plan-executor",
                    plan_id=plan_id,
                    task_id=task_ids[step.key],
                ),
            )
        created = self.task_store.create_batch(specs)

        now = utc_now()
        plan = ExecutionPlan(
            id=plan_id,
            name=name.strip() or description.strip()[:60],
            description=description,
            created_at=now,
            updated_at=now,
            status=PlanStatus.DRAFT,
            tasks=[task.id for task in created],
        )
        self.save(plan)
        logger.info("Created plan %s with %d task(s)", plan.id, len(plan.tasks))
        return plan

    def save(self, plan: ExecutionPlan) -> ExecutionPlan:
        plan.updated_at = utc_now()
        with self._document(plan.id).transaction() as raw:
            raw.update(plan_to_record(plan))
        return plan

    def get(self, plan_id: str) -> ExecutionPlan:
        path = self.plans_dir / f"{plan_id}.json"
        if not path.exists():
            raise NotFoundError("plan", plan_id)
        return plan_from_record(load_json(path))

    def list_plans(self) -> list[ExecutionPlan]:
        if not self.plans_dir.exists():
            return []
        plans: list[ExecutionPlan] = []
        for path in sorted(self.plans_dir.glob("*.json")):
            try:
                plans.append(plan_from_record(load_json(path)))
            except (ValueError, TypeError) as error:
                logger.warning("Skipping unreadable plan document %s: %s", path, error)
        return sorted(plans, key=lambda plan: plan.created_at)
