from __future__ import annotations

import json
import random
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from agent_coordinator.config import StoreSettings
from agent_coordinator.coordination.errors import (
    CoordinationError,
    DependencyCycleError,
    InvalidTransitionError,
    NotFoundError,
    StaleClaimError,
    UnmetDependencyError,
)
from agent_coordinator.coordination.models import (
    TaskCreate,
    TaskFilter,
    TaskPriority,
    TaskStatus,
)
from agent_coordinator.coordination.storage import utc_now
from agent_coordinator.coordination.task_store import TaskStore, format_note

pytestmark = [
    allure.epic("Task Coordination"),
    allure.feature("Task Store"),
]


def _store(tmp_path: Path) -> TaskStore:
    return TaskStore(path=tmp_path / "tasks.json", settings=StoreSettings())


def test_create_persists_task_with_defaults(tmp_path: Path) -> None:
    store = _store(tmp_path)

    task = store.create(TaskCreate(title="  Write docs  ", tags=("docs", "docs")))

    assert task.title == "Write docs"
    assert task.status == TaskStatus.PENDING
    assert task.priority == TaskPriority.MEDIUM
    assert task.assigned_to is None
    assert task.tags == ["docs"]
    assert store.get(task.id) == task

    raw = json.loads((tmp_path / "tasks.json").read_text("utf-8"))
    assert raw["version"] == "1.0"
    assert raw["revision"] == 1
    assert raw["completed_count"] == 0
    assert raw["tasks"][0]["id"] == task.id


def test_create_rejects_blank_title_and_unknown_parent(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ValueError, match="non-empty"):
        store.create(TaskCreate(title="   "))
    with pytest.raises(NotFoundError, match="Task not found: nope"):
        store.create(TaskCreate(title="child", parent_task="nope"))

    assert store.list_tasks() == []


def test_parent_records_subtask(tmp_path: Path) -> None:
    store = _store(tmp_path)
    parent = store.create(TaskCreate(title="parent"))

    child = store.create(TaskCreate(title="child", parent_task=parent.id))

    assert store.get(parent.id).subtasks == [child.id]
    assert child.parent_task == parent.id


def test_create_rejects_self_dependency_cycle(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(DependencyCycleError):
        store.create(TaskCreate(title="loop", task_id="t1", dependencies=("t1",)))

    assert store.list_tasks() == []


def test_add_dependencies_rejects_cycles_and_unknown_ids(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.create(TaskCreate(title="first"))
    second = store.create(TaskCreate(title="second", dependencies=(first.id,)))

    with pytest.raises(DependencyCycleError) as error:
        store.add_dependencies(first.id, [second.id])
    assert error.value.cycle == [first.id, second.id, first.id]

    with pytest.raises(NotFoundError):
        store.add_dependencies(first.id, ["ghost"])

    third = store.create(TaskCreate(title="third"))
    updated = store.add_dependencies(second.id, [third.id, first.id])
    assert updated.dependencies == [first.id, third.id]


def test_assign_requires_completed_dependencies(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.create(TaskCreate(title="first"))
    second = store.create(TaskCreate(title="second", dependencies=(first.id,)))

    with pytest.raises(UnmetDependencyError) as error:
        store.assign(second.id, "agent-1")
    assert error.value.unmet == [first.id]

    store.assign(first.id, "agent-1")
    store.update_status(first.id, TaskStatus.COMPLETED)
    claimed = store.assign(second.id, "agent-2")

    assert claimed.status == TaskStatus.IN_PROGRESS
    assert claimed.assigned_to == "agent-2"
    assert claimed.claimed_at is not None


def test_assign_rejects_non_pending_task(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(TaskCreate(title="work"))
    store.assign(task.id, "agent-1")

    with pytest.raises(InvalidTransitionError, match="only pending tasks"):
        store.assign(task.id, "agent-2")

    assert store.get(task.id).assigned_to == "agent-1"


def test_claim_next_follows_priority(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(TaskCreate(title="low", priority=TaskPriority.LOW))
    urgent = store.create(TaskCreate(title="urgent", priority=TaskPriority.CRITICAL))

    claimed = store.claim_next("agent-1")

    assert claimed is not None
    assert claimed.id == urgent.id
    assert store.next_available().title == "low"


def test_claim_next_returns_none_without_writing(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(TaskCreate(title="only"))
    store.assign(task.id, "agent-1")
    revision = store.snapshot().revision

    assert store.claim_next("agent-2") is None
    assert store.snapshot().revision == revision


def test_completion_stamps_and_counts(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(TaskCreate(title="work"))
    store.assign(task.id, "agent-1")

    done = store.update_status(task.id, TaskStatus.COMPLETED, note="shipped")

    assert done.completed_at is not None
    assert done.assigned_to is None
    assert done.notes[-1].endswith("] shipped")
    assert store.snapshot().completed_count == 1
    with pytest.raises(InvalidTransitionError):
        store.update_status(task.id, TaskStatus.PENDING)


def test_update_status_rejects_agent_bound_edges(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(TaskCreate(title="work"))

    with pytest.raises(InvalidTransitionError, match="use assign"):
        store.update_status(task.id, TaskStatus.IN_PROGRESS)

    store.assign(task.id, "agent-1")
    with pytest.raises(InvalidTransitionError, match="reclamation"):
        store.update_status(task.id, TaskStatus.PENDING)


def test_release_requires_current_holder(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(TaskCreate(title="work"))
    store.assign(task.id, "agent-1")

    with pytest.raises(StaleClaimError, match="no longer held by agent agent-2"):
        store.release(task.id, "agent-2", "stale agent cleanup")

    released = store.release(task.id, "agent-1", "stale agent cleanup")
    assert released.status == TaskStatus.PENDING
    assert released.assigned_to is None
    assert "Reclaimed from stale agent agent-1 (reason: stale agent cleanup)" in released.notes[-1]

    with pytest.raises(StaleClaimError):
        store.release(task.id, "agent-1", "stale agent cleanup")


def test_rate_quality_clamps_and_requires_completion(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(TaskCreate(title="work"))

    with pytest.raises(InvalidTransitionError, match="only completed tasks"):
        store.rate_quality(task.id, 7)

    store.assign(task.id, "agent-1")
    store.update_status(task.id, TaskStatus.COMPLETED)
    assert store.rate_quality(task.id, 42, "great").quality_score == 10
    assert store.rate_quality(task.id, -3).quality_score == 1
    assert store.get(task.id).quality_notes == "great"


def test_stats_and_search(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.create(TaskCreate(title="Parse config", tags=("backend",)))
    store.create(TaskCreate(title="Write README", description="Mention CONFIG flags"))
    store.create(TaskCreate(title="Unrelated"))
    store.assign(first.id, "agent-1")
    store.update_status(first.id, TaskStatus.COMPLETED)
    store.rate_quality(first.id, 8)

    stats = store.stats()

    assert (stats.total, stats.pending, stats.completed) == (3, 2, 1)
    assert stats.avg_quality == 8.0
    assert [task.title for task in store.search("config")] == ["Parse config", "Write README"]
    assert [task.title for task in store.search("BACKEND")] == ["Parse config"]
    assert store.search("  ") == []


def test_list_tasks_filters(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create(TaskCreate(title="a", tags=("x",), plan_id="p1"))
    store.create(TaskCreate(title="b", priority=TaskPriority.HIGH))

    assert [t.title for t in store.list_tasks(TaskFilter(tag="x"))] == ["a"]
    assert [t.title for t in store.list_tasks(TaskFilter(plan_id="p1"))] == ["a"]
    assert [t.title for t in store.list_tasks(TaskFilter(priority=TaskPriority.HIGH))] == ["b"]
    assert [t.title for t in store.list_tasks()] == ["a", "b"]


def test_cancel_many_skips_terminal_tasks(tmp_path: Path) -> None:
    store = _store(tmp_path)
    done = store.create(TaskCreate(title="done"))
    store.assign(done.id, "agent-1")
    store.update_status(done.id, TaskStatus.COMPLETED)
    running = store.create(TaskCreate(title="running"))
    store.assign(running.id, "agent-2")
    waiting = store.create(TaskCreate(title="waiting"))

    cancelled = store.cancel_many([done.id, running.id, waiting.id], "stop")

    assert [task.id for task in cancelled] == [running.id, waiting.id]
    assert store.get(done.id).status == TaskStatus.COMPLETED
    assert store.get(running.id).assigned_to is None


def test_archive_moves_terminal_tasks_only(tmp_path: Path) -> None:
    store = _store(tmp_path)
    done = store.create(TaskCreate(title="done"))
    store.assign(done.id, "agent-1")
    store.update_status(done.id, TaskStatus.COMPLETED)
    open_task = store.create(TaskCreate(title="open"))

    assert store.archive(before=utc_now() - timedelta(days=1)) == 0
    assert store.archive() == 1

    assert [task.id for task in store.list_tasks()] == [open_task.id]
    archived = json.loads((tmp_path / "tasks-archive.json").read_text("utf-8"))
    assert [item["id"] for item in archived["tasks"]] == [done.id]
    assert archived["completed_count"] == 1
    with pytest.raises(ValueError, match="terminal"):
        store.archive(statuses=[TaskStatus.PENDING])


def test_export_markdown_groups_by_status(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create(TaskCreate(title="Ship it", priority=TaskPriority.HIGH))
    store.assign(task.id, "agent-1")

    board = store.export_markdown()

    assert board.startswith("# Task Board\n")
    assert "## In Progress (1)" in board
    assert f"- [ ] **Ship it** `{task.id}` [high] (@agent-1)" in board
    assert "## Completed (0)" in board


def test_document_round_trips_through_reload(tmp_path: Path) -> None:
    store = _store(tmp_path)
    parent = store.create(TaskCreate(title="parent", description="desc", tags=("t",)))
    store.create(TaskCreate(title="child", parent_task=parent.id, dependencies=(parent.id,)))
    store.add_note(parent.id, "remember")

    reloaded = TaskStore(path=tmp_path / "tasks.json", settings=StoreSettings())

    assert reloaded.list_tasks() == store.list_tasks()


def test_format_note_prefixes_timestamp() -> None:
    now = utc_now()

    assert format_note("hello", now=now) == f"[{now.isoformat()}] hello"


def test_random_operation_sequence_keeps_assignment_invariant(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rng = random.Random(1234)
    ids = [store.create(TaskCreate(title=f"task-{n}")).id for n in range(6)]
    for n in range(1, 6, 2):
        store.add_dependencies(ids[n], [ids[n - 1]])

    for step in range(200):
        task_id = rng.choice(ids)
        action = rng.choice(["assign", "complete", "cancel", "block", "unblock", "release"])
        try:
            if action == "assign":
                store.assign(task_id, f"agent-{step % 3}")
            elif action == "complete":
                store.update_status(task_id, TaskStatus.COMPLETED)
            elif action == "cancel":
                store.update_status(task_id, TaskStatus.CANCELLED)
            elif action == "block":
                store.update_status(task_id, TaskStatus.BLOCKED)
            elif action == "unblock":
                store.update_status(task_id, TaskStatus.PENDING)
            else:
                holder = store.get(task_id).assigned_to or "nobody"
                store.release(task_id, holder, "test")
        except CoordinationError:
            pass

        snapshot = store.snapshot()
        for task in snapshot.tasks:
            assert (task.status == TaskStatus.IN_PROGRESS) == (task.assigned_to is not None)
            if task.status == TaskStatus.COMPLETED:
                assert task.completed_at is not None
        completed = sum(1 for task in snapshot.tasks if task.status == TaskStatus.COMPLETED)
        assert snapshot.completed_count == completed
