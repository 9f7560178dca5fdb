"""File-backed task store with locked read-modify-write mutations."""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_coordinator.config import StoreSettings
from agent_coordinator.coordination import scheduler
from agent_coordinator.coordination.errors import (
    DependencyCycleError,
    InvalidTransitionError,
    NotFoundError,
    StaleClaimError,
    UnmetDependencyError,
)
from agent_coordinator.coordination.metrics import OperationObserver, observed_operation
from agent_coordinator.coordination.models import (
    TERMINAL_TASK_STATUSES,
    Task,
    TaskCreate,
    TaskFilter,
    TaskPriority,
    TaskStats,
    TaskStatus,
    TaskStoreSnapshot,
)
from agent_coordinator.coordination.storage import (
    DOCUMENT_VERSION,
    JsonDocumentStore,
    optional_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

QUALITY_MIN = 1
QUALITY_MAX = 10


def empty_task_document() -> dict[str, Any]:
    return {
        "version": DOCUMENT_VERSION,
        "revision": 0,
        "tasks": [],
        "completed_count": 0,
        "last_updated": None,
    }


def format_note(text: str, *, now: datetime | None = None) -> str:
    """Timestamped note line as stored on tasks."""

    stamp = (now or utc_now()).isoformat()
    return f"[{stamp}] {text}"


def task_to_record(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "priority": task.priority.value,
        "status": task.status.value,
        "dependencies": list(task.dependencies),
        "assigned_to": task.assigned_to,
        "claimed_at": task.claimed_at.isoformat() if task.claimed_at else None,
        "parent_task": task.parent_task,
        "subtasks": list(task.subtasks),
        "created_at": task.created_at.isoformat(),
        "updated_at": task.updated_at.isoformat(),
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
        "notes": list(task.notes),
        "quality_score": task.quality_score,
        "quality_notes": task.quality_notes,
        "tags": list(task.tags),
        "created_by": task.created_by,
        "plan_id": task.plan_id,
    }


def task_from_record(raw: dict[str, Any]) -> Task:
    task_id = raw.get("id")
    title = raw.get("title")
    if not isinstance(task_id, str) or not task_id:
        raise ValueError("task.id must be a non-empty string")
    if not isinstance(title, str):
        raise TypeError(f"task.title must be a string (task {task_id})")
    created_at = optional_iso(raw.get("created_at"))
    if created_at is None:
        raise ValueError(f"task.created_at is required (task {task_id})")
    return Task(
        id=task_id,
        title=title,
        description=str(raw.get("description") or ""),
        priority=TaskPriority(raw.get("priority", TaskPriority.MEDIUM.value)),
        status=TaskStatus(raw.get("status", TaskStatus.PENDING.value)),
        created_at=created_at,
        updated_at=optional_iso(raw.get("updated_at")) or created_at,
        dependencies=[str(dep) for dep in raw.get("dependencies") or []],
        assigned_to=raw.get("assigned_to"),
        claimed_at=optional_iso(raw.get("claimed_at")),
        completed_at=optional_iso(raw.get("completed_at")),
        parent_task=raw.get("parent_task"),
        subtasks=[str(item) for item in raw.get("subtasks") or []],
        notes=[str(note) for note in raw.get("notes") or []],
        quality_score=raw.get("quality_score"),
        quality_notes=raw.get("quality_notes"),
        tags=[str(tag) for tag in raw.get("tags") or []],
        created_by=str(raw.get("created_by") or "orchestrator"),
        plan_id=raw.get("plan_id"),
    )


def snapshot_from_document(document: dict[str, Any]) -> TaskStoreSnapshot:
    return TaskStoreSnapshot(
        version=str(document.get("version", DOCUMENT_VERSION)),
        revision=int(document.get("revision", 0)),
        tasks=[task_from_record(item) for item in document.get("tasks", [])],
        completed_count=int(document.get("completed_count", 0)),
        last_updated=optional_iso(document.get("last_updated")),
    )


class _TaskDocument:
    """Mutable in-transaction view over the raw store document."""

    def __init__(self, document: dict[str, Any]) -> None:
        self.raw = document
        self.tasks = [task_from_record(item) for item in document.get("tasks", [])]
        self.index = scheduler.index_tasks(self.tasks)

    def require(self, task_id: str) -> Task:
        task = self.index.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def add(self, task: Task) -> None:
        self.tasks.append(task)
        self.index[task.id] = task

    def commit(self) -> None:
        self.raw["tasks"] = [task_to_record(task) for task in self.tasks]
        self.raw.setdefault("version", DOCUMENT_VERSION)
        self.raw.setdefault("completed_count", 0)


class TaskStore:
    """Task Store: every mutator is one locked read-modify-write of ``tasks.json``.

    Validation (unknown ids, illegal transitions, unmet dependencies, cycles)
    happens before any field changes, so a rejected call leaves the document
    untouched.
    """

    def __init__(
        self,
        *,
        path: Path,
        settings: StoreSettings,
        archive_path: Path | None = None,
        observer: OperationObserver | None = None,
    ) -> None:
        self.path = path
        self.settings = settings
        self.observer = observer
        self._document = JsonDocumentStore(
            path=path,
            empty_factory=empty_task_document,
            settings=settings,
        )
        self._archive = JsonDocumentStore(
            path=archive_path or path.with_name(f"{path.stem}-archive.json"),
            empty_factory=empty_task_document,
            settings=settings,
        )

    # Reads

    def snapshot(self) -> TaskStoreSnapshot:
        return snapshot_from_document(self._document.read())

    def get(self, task_id: str) -> Task:
        with observed_operation(self.observer, "task_get", {"task_id": task_id}):
            task = self.snapshot().index().get(task_id)
            if task is None:
                raise NotFoundError("task", task_id)
            return task

    def list_tasks(self, task_filter: TaskFilter | None = None) -> list[Task]:
        """Tasks in creation order, optionally filtered."""

        with observed_operation(self.observer, "task_list"):
            tasks = self.snapshot().tasks
            if task_filter is None:
                return tasks
            return [task for task in tasks if _matches(task, task_filter)]

    def next_available(self, scope: Collection[str] | None = None) -> Task | None:
        return scheduler.get_next_available(self.snapshot().tasks, scope)

    def stats(self) -> TaskStats:
        tasks = self.snapshot().tasks
        counts = dict.fromkeys(TaskStatus, 0)
        for task in tasks:
            counts[task.status] += 1
        rated = [task.quality_score for task in tasks if task.quality_score is not None]
        return TaskStats(
            total=len(tasks),
            pending=counts[TaskStatus.PENDING],
            in_progress=counts[TaskStatus.IN_PROGRESS],
            blocked=counts[TaskStatus.BLOCKED],
            completed=counts[TaskStatus.COMPLETED],
            cancelled=counts[TaskStatus.CANCELLED],
            avg_quality=round(sum(rated) / len(rated), 2) if rated else 0.0,
        )

    def search(self, query: str) -> list[Task]:
        """Case-insensitive match against title, description and tags."""

        needle = query.strip().lower()
        if not needle:
            return []
        return [
            task
            for task in self.snapshot().tasks
            if needle in task.title.lower()
            or needle in task.description.lower()
            or any(needle in tag.lower() for tag in task.tags)
        ]

    def export_markdown(self) -> str:
        """Render the task board grouped by status."""

        snapshot = self.snapshot()
        updated = snapshot.last_updated.isoformat() if snapshot.last_updated else "-"
        lines = [
            "# Task Board",
            "",
            f"_Last updated: {updated}_",
            "",
        ]
        for status in TaskStatus:
            group = [task for task in snapshot.tasks if task.status == status]
            title = status.value.replace("_", " ").title()
            lines.append(f"## {title} ({len(group)})")
            lines.append("")
            if not group:
                lines.append("_None_")
            for task in scheduler.priority_order(group):
                checkbox = "x" if status == TaskStatus.COMPLETED else " "
                suffix = []
                if task.assigned_to:
                    suffix.append(f"@{task.assigned_to}")
                if task.quality_score is not None:
                    suffix.append(f"quality {task.quality_score}/10")
                if task.dependencies:
                    suffix.append(f"depends on {', '.join(task.dependencies)}")
                extra = f" ({'; '.join(suffix)})" if suffix else ""
                lines.append(
                    f"- [{checkbox}] **{task.title}** `{task.id}` "
                    f"[{task.priority.value}]{extra}",
                )
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"

    # Mutations

    def create(self, spec: TaskCreate) -> Task:
        return self.create_batch([spec])[0]

    def create_batch(self, specs: Iterable[TaskCreate]) -> list[Task]:
        """Create tasks in one write; specs may depend on ids created earlier in the batch.

        Single-task creation rejects dependency cycles. Batches (plans) are
        stored as given and checked by the executor before they run.
        """

        specs = list(specs)
        with observed_operation(self.observer, "task_create", {"count": len(specs)}) as ctx:
            with self._document.transaction() as raw:
                doc = _TaskDocument(raw)
                now = utc_now()
                created: list[Task] = []
                for spec in specs:
                    created.append(self._build_task(doc, spec, now=now))
                if len(created) == 1:
                    task = created[0]
                    cycle = scheduler.cycle_through(doc.index, task.id, task.dependencies)
                    if cycle is not None:
                        raise DependencyCycleError(cycle)
                doc.commit()
            ctx["task_ids"] = [task.id for task in created]
        for task in created:
            logger.info("Created task %s (%s, %s)", task.id, task.priority.value, task.title)
        return created

    def _build_task(self, doc: _TaskDocument, spec: TaskCreate, *, now: datetime) -> Task:
        title = spec.title.strip()
        if not title:
            raise ValueError("Task title must be a non-empty string")
        task_id = spec.task_id or str(uuid4())
        if task_id in doc.index:
            raise ValueError(f"Task id already exists: {task_id}")
        if spec.parent_task is not None:
            doc.require(spec.parent_task)
        dependencies = _unique(spec.dependencies)
        task = Task(
            id=task_id,
            title=title,
            description=spec.description,
            priority=spec.priority,
            status=TaskStatus.PENDING,
            created_at=now,
            updated_at=now,
            dependencies=dependencies,
            parent_task=spec.parent_task,
            tags=_unique(spec.tags),
            created_by=spec.created_by,
            plan_id=spec.plan_id,
        )
        doc.add(task)
        if spec.parent_task is not None:
            parent = doc.index[spec.parent_task]
            if task.id not in parent.subtasks:
                parent.subtasks.append(task.id)
                parent.updated_at = now
        return task

    def update_status(
        self,
        task_id: str,
        new_status: TaskStatus,
        note: str | None = None,
    ) -> Task:
        """Apply a user-level transition; assign and release own the agent-bound edges."""

        context = {"task_id": task_id, "status": new_status.value}
        with observed_operation(self.observer, "task_update_status", context):
            with self._document.transaction() as raw:
                doc = _TaskDocument(raw)
                task = doc.require(task_id)
                previous = task.status
                scheduler.validate_transition(previous, new_status)
                now = utc_now()
                task.status = new_status
                task.updated_at = now
                if new_status == TaskStatus.COMPLETED:
                    task.completed_at = now
                    raw["completed_count"] = int(raw.get("completed_count", 0)) + 1
                if new_status != TaskStatus.IN_PROGRESS:
                    task.assigned_to = None
                    task.claimed_at = None
                if note:
                    task.notes.append(format_note(note, now=now))
                doc.commit()
        logger.info("Task %s: %s -> %s", task_id, previous.value, new_status.value)
        return task

    def assign(self, task_id: str, agent_id: str) -> Task:
        """Claim a pending task whose dependencies are all completed."""

        if not agent_id.strip():
            raise ValueError("agent_id must be a non-empty string")
        context = {"task_id": task_id, "agent_id": agent_id}
        with observed_operation(self.observer, "task_assign", context):
            with self._document.transaction() as raw:
                doc = _TaskDocument(raw)
                task = doc.require(task_id)
                self._claim(doc, task, agent_id)
                doc.commit()
        logger.info("Task %s assigned to %s", task_id, agent_id)
        return task

    def claim_next(self, agent_id: str, scope: Collection[str] | None = None) -> Task | None:
        """Select and assign the next eligible task inside one lock (at most one claimant)."""

        if not agent_id.strip():
            raise ValueError("agent_id must be a non-empty string")
        with observed_operation(self.observer, "task_claim_next", {"agent_id": agent_id}) as ctx:
            with self._document.transaction() as raw:
                doc = _TaskDocument(raw)
                task = scheduler.get_next_available(doc.tasks, scope)
                if task is None:
                    return None
                self._claim(doc, task, agent_id)
                doc.commit()
            ctx["task_id"] = task.id
        logger.info("Task %s claimed by %s", task.id, agent_id)
        return task

    def _claim(self, doc: _TaskDocument, task: Task, agent_id: str) -> None:
        if task.status != TaskStatus.PENDING:
            raise InvalidTransitionError(
                f"Task {task.id} is {task.status.value}; only pending tasks can be assigned",
            )
        unmet = scheduler.unmet_dependencies(task, doc.index)
        if unmet:
            raise UnmetDependencyError(task.id, unmet)
        now = utc_now()
        task.status = TaskStatus.IN_PROGRESS
        task.assigned_to = agent_id
        task.claimed_at = now
        task.updated_at = now

    def release(self, task_id: str, expected_agent: str, reason: str) -> Task:
        """Return an in_progress task to pending (reclamation path only).

        Raises StaleClaimError when the task is no longer held by
        ``expected_agent`` so concurrent reclaimers do not double-release.
        """

        context = {"task_id": task_id, "agent_id": expected_agent, "reason": reason}
        with observed_operation(self.observer, "task_release", context):
            with self._document.transaction() as raw:
                doc = _TaskDocument(raw)
                task = doc.require(task_id)
                if task.status != TaskStatus.IN_PROGRESS or task.assigned_to != expected_agent:
                    raise StaleClaimError(task_id, expected_agent)
                scheduler.validate_transition(
                    task.status,
                    TaskStatus.PENDING,
                    allow_restricted=True,
                )
                now = utc_now()
                task.status = TaskStatus.PENDING
                task.assigned_to = None
                task.claimed_at = None
                task.updated_at = now
                task.notes.append(
                    format_note(
                        f"Reclaimed from stale agent {expected_agent} (reason: {reason})",
                        now=now,
                    ),
                )
                doc.commit()
        logger.info("Task %s released from %s (%s)", task_id, expected_agent, reason)
        return task

    def add_note(self, task_id: str, note: str) -> Task:
        with observed_operation(self.observer, "task_add_note", {"task_id": task_id}):
            with self._document.transaction() as raw:
                doc = _TaskDocument(raw)
                task = doc.require(task_id)
                now = utc_now()
                task.notes.append(format_note(note, now=now))
                task.updated_at = now
                doc.commit()
        return task

    def add_dependencies(self, task_id: str, dependency_ids: Iterable[str]) -> Task:
        """Append dependencies, rejecting unknown ids and edits that close a cycle."""

        new_ids = _unique(dependency_ids)
        with observed_operation(self.observer, "task_add_dependencies", {"task_id": task_id}):
            with self._document.transaction() as raw:
                doc = _TaskDocument(raw)
                task = doc.require(task_id)
                if task.status.is_terminal:
                    raise InvalidTransitionError(
                        f"Task {task_id} is {task.status.value}; dependencies are frozen",
                    )
                for dep in new_ids:
                    doc.require(dep)
                added = [dep for dep in new_ids if dep not in task.dependencies]
                cycle = scheduler.cycle_through(doc.index, task_id, added)
                if cycle is not None:
                    raise DependencyCycleError(cycle)
                task.dependencies.extend(added)
                task.updated_at = utc_now()
                doc.commit()
        return task

    def rate_quality(self, task_id: str, score: int, note: str | None = None) -> Task:
        """Record a quality score (clamped to 1..10) on a completed task."""

        context = {"task_id": task_id, "score": score}
        with observed_operation(self.observer, "task_rate_quality", context):
            with self._document.transaction() as raw:
                doc = _TaskDocument(raw)
                task = doc.require(task_id)
                if task.status != TaskStatus.COMPLETED:
                    raise InvalidTransitionError(
                        f"Task {task_id} is {task.status.value}; only completed tasks can be rated",
                    )
                task.quality_score = max(QUALITY_MIN, min(QUALITY_MAX, int(score)))
                if note:
                    task.quality_notes = note
                task.updated_at = utc_now()
                doc.commit()
        return task

    def cancel_many(self, task_ids: Iterable[str], note: str) -> list[Task]:
        """Cancel every listed non-terminal task in one write; terminal ones are skipped."""

        ids = _unique(task_ids)
        with observed_operation(self.observer, "task_cancel_many", {"count": len(ids)}):
            with self._document.transaction() as raw:
                doc = _TaskDocument(raw)
                targets = [doc.require(task_id) for task_id in ids]
                now = utc_now()
                cancelled: list[Task] = []
                for task in targets:
                    if task.status.is_terminal:
                        continue
                    task.status = TaskStatus.CANCELLED
                    task.assigned_to = None
                    task.claimed_at = None
                    task.updated_at = now
                    task.notes.append(format_note(note, now=now))
                    cancelled.append(task)
                doc.commit()
        return cancelled

    def archive(
        self,
        *,
        before: datetime | None = None,
        statuses: Collection[TaskStatus] = TERMINAL_TASK_STATUSES,
    ) -> int:
        """Move terminal tasks (optionally last updated before ``before``) to the archive."""

        invalid = [status for status in statuses if not status.is_terminal]
        if invalid:
            raise ValueError("Only terminal tasks can be archived")
        with observed_operation(self.observer, "task_archive") as ctx:
            with self._document.transaction() as raw:
                doc = _TaskDocument(raw)
                moving = [
                    task
                    for task in doc.tasks
                    if task.status in statuses and (before is None or task.updated_at < before)
                ]
                if not moving:
                    ctx["archived"] = 0
                    return 0
                with self._archive.transaction() as archive_raw:
                    archived = _TaskDocument(archive_raw)
                    for task in moving:
                        if task.id not in archived.index:
                            archived.add(task)
                    archive_raw["completed_count"] = sum(
                        1 for task in archived.tasks if task.status == TaskStatus.COMPLETED
                    )
                    archived.commit()
                moved_ids = {task.id for task in moving}
                doc.tasks = [task for task in doc.tasks if task.id not in moved_ids]
                doc.commit()
            ctx["archived"] = len(moving)
        logger.info("Archived %d tasks", len(moving))
        return len(moving)


def _matches(task: Task, task_filter: TaskFilter) -> bool:
    return (
        (task_filter.status is None or task.status == task_filter.status)
        and (task_filter.priority is None or task.priority == task_filter.priority)
        and (task_filter.assigned_to is None or task.assigned_to == task_filter.assigned_to)
        and (task_filter.plan_id is None or task.plan_id == task_filter.plan_id)
        and (task_filter.tag is None or task_filter.tag in task.tags)
        and (task_filter.task_ids is None or task.id in task_filter.task_ids)
    )


def _unique(values: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen
