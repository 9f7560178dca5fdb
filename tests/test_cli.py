from __future__ import annotations

import json
import re
import shlex
import sys
from datetime import timedelta
from pathlib import Path

import allure
from click.testing import CliRunner

from agent_coordinator.coordination.storage import utc_now
from agent_coordinator.main import agent_coord

pytestmark = [
    allure.epic("Task Coordination"),
    allure.feature("CLI"),
]

_ID = re.compile(r"^  ([0-9a-f-]{36}) status=", re.MULTILINE)


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(agent_coord, list(args))


def _created_id(output: str, prefix: str) -> str:
    for line in output.splitlines():
        if line.startswith(prefix):
            return line.split(":", 1)[1].strip()
    raise AssertionError(f"No '{prefix}' line in output:\n{output}")


def test_task_lifecycle_through_cli(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_COORD_STATE_DIR", str(tmp_path / "state"))
    runner = CliRunner()

    created = _invoke(runner, "task", "create", "Write parser", "high", "--tag", "backend")
    assert created.exit_code == 0, created.output
    task_id = _created_id(created.output, "Task created:")
    assert "Priority: high" in created.output

    follow_up = _invoke(runner, "task", "create", "Document parser", "--depends-on", task_id)
    assert follow_up.exit_code == 0, follow_up.output

    nxt = _invoke(runner, "task", "next")
    assert f"Next task: {task_id}" in nxt.output

    claimed = _invoke(runner, "task", "claim", "agent-7")
    assert claimed.exit_code == 0, claimed.output
    assert f"Task {task_id} claimed by agent-7" in claimed.output

    done = _invoke(runner, "task", "status", task_id, "completed", "--note", "merged")
    assert done.exit_code == 0, done.output
    assert f"Task {task_id} is now completed" in done.output

    rated = _invoke(runner, "task", "rate", task_id, "12")
    assert f"Task {task_id} rated 10/10" in rated.output

    shown = _invoke(runner, "task", "show", task_id)
    assert "Status: completed" in shown.output
    assert "Quality: 10" in shown.output
    assert "merged" in shown.output

    listed = _invoke(runner, "task", "list", "--status", "pending")
    assert "Tasks: 1" in listed.output
    assert "Document parser" in listed.output

    stats = _invoke(runner, "task", "stats")
    assert stats.exit_code == 0, stats.output
    assert "completed=1" in stats.output
    assert "Average quality: 10.00" in stats.output
    assert "task_claim_next" in stats.output

    found = _invoke(runner, "task", "search", "PARSER")
    assert "Matches: 2" in found.output

    board_path = tmp_path / "board.md"
    exported = _invoke(runner, "task", "export", "--output", str(board_path))
    assert exported.exit_code == 0, exported.output
    assert board_path.read_text("utf-8").startswith("# Task Board")

    archived = _invoke(runner, "task", "archive")
    assert "Archived tasks: 1" in archived.output


def test_rejected_operations_exit_with_code_one(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_COORD_STATE_DIR", str(tmp_path / "state"))
    runner = CliRunner()

    missing = _invoke(runner, "task", "show", "nope")
    assert missing.exit_code == 1
    assert "not found" in missing.output

    created = _invoke(runner, "task", "create", "Only task")
    task_id = _created_id(created.output, "Task created:")

    illegal = _invoke(runner, "task", "status", task_id, "completed")
    assert illegal.exit_code == 1
    assert "not allowed" in illegal.output

    bad_priority = _invoke(runner, "task", "create", "Other", "urgent")
    assert bad_priority.exit_code == 1

    unmet = _invoke(runner, "task", "create", "Blocked", "--depends-on", task_id)
    blocked_id = _created_id(unmet.output, "Task created:")
    refused = _invoke(runner, "task", "assign", blocked_id, "agent-1")
    assert refused.exit_code == 1


def test_plan_deadlock_exits_with_code_two(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_COORD_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("AGENT_COORD_POLL_INTERVAL_SECONDS", "0")
    runner = CliRunner()

    created = _invoke(runner, "plan", "create", "migrate storage")
    assert created.exit_code == 0, created.output
    plan_id = _created_id(created.output, "Plan created:")
    task_ids = _ID.findall(created.output)
    assert len(task_ids) == 3

    blocked = _invoke(runner, "task", "status", task_ids[0], "blocked")
    assert blocked.exit_code == 0, blocked.output

    executed = _invoke(runner, "plan", "execute", plan_id)
    assert executed.exit_code == 2
    assert f"Plan {plan_id}: failed" in executed.output
    assert "deadlock" in executed.output

    status = _invoke(runner, "plan", "status", plan_id)
    assert "Status: failed" in status.output


def test_plan_execute_with_echo_workers(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_COORD_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("AGENT_COORD_POLL_INTERVAL_SECONDS", "0.05")
    runner = CliRunner()

    created = _invoke(runner, "plan", "create", "ship feature", "--name", "feature")
    plan_id = _created_id(created.output, "Plan created:")

    executed = _invoke(runner, "plan", "execute", plan_id)

    assert executed.exit_code == 0, executed.output
    assert f"Plan {plan_id}: completed" in executed.output
    assert "Completed: 3" in executed.output
    listing = _invoke(runner, "plan", "status")
    assert f"{plan_id} status=completed tasks=3 name=feature" in listing.output


def test_failed_step_leaves_plan_deadlocked(tmp_path: Path, monkeypatch) -> None:
    failing = f"{shlex.quote(sys.executable)} -c 'import sys; sys.exit(4)'"
    monkeypatch.setenv("AGENT_COORD_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("AGENT_COORD_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("AGENT_COORD_AGENT_COMMAND_TEMPLATE", failing)
    runner = CliRunner()
    created = _invoke(runner, "plan", "create", "doomed change")
    plan_id = _created_id(created.output, "Plan created:")
    task_ids = _ID.findall(created.output)

    executed = _invoke(runner, "plan", "execute", plan_id)

    assert executed.exit_code == 2
    assert "Failed: 1" in executed.output
    shown = _invoke(runner, "task", "show", task_ids[2])
    assert "Status: pending" in shown.output


def test_plan_cancel_cancels_tasks(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_COORD_STATE_DIR", str(tmp_path / "state"))
    runner = CliRunner()
    plan_id = _created_id(
        _invoke(runner, "plan", "create", "abandon me").output,
        "Plan created:",
    )

    cancelled = _invoke(runner, "plan", "cancel", plan_id)

    assert cancelled.exit_code == 0, cancelled.output
    assert "Tasks cancelled: 3" in cancelled.output
    status = _invoke(runner, "plan", "status", plan_id)
    assert "Error: cancelled" in status.output


def test_agent_commands_and_stale_cleanup(tmp_path: Path, monkeypatch) -> None:
    state_dir = tmp_path / "state"
    monkeypatch.setenv("AGENT_COORD_STATE_DIR", str(state_dir))
    runner = CliRunner()

    registered = _invoke(runner, "agent", "register", "--agent-id", "worker-9", "--role", "worker")
    assert registered.exit_code == 0, registered.output
    assert "Agent registered: worker-9" in registered.output
    assert _invoke(runner, "agent", "heartbeat", "worker-9").exit_code == 0
    working = _invoke(runner, "agent", "status", "worker-9", "working")
    assert "Agent worker-9 is now working" in working.output

    task_id = _created_id(_invoke(runner, "task", "create", "Long job").output, "Task created:")
    assert _invoke(runner, "task", "assign", task_id, "worker-9").exit_code == 0

    registry_path = state_dir / "agent-registry.json"
    document = json.loads(registry_path.read_text("utf-8"))
    document["agents"][0]["last_heartbeat"] = (utc_now() - timedelta(minutes=3)).isoformat()
    registry_path.write_text(json.dumps(document), "utf-8")

    listed = _invoke(runner, "agent", "list")
    assert "liveness=stale" in listed.output

    cleaned = _invoke(runner, "agent", "cleanup-stale")
    assert cleaned.exit_code == 0, cleaned.output
    assert "Reclaimed tasks: 1" in cleaned.output

    shown = _invoke(runner, "task", "show", task_id)
    assert "Status: pending" in shown.output
    assert "reclaimed from worker-9 (stale agent cleanup)" in shown.output

    reaped = _invoke(runner, "agent", "reap", "--interval", "0", "--max-cycles", "2")
    assert "Reaper cycles: 2" in reaped.output
    assert "Reclaimed tasks: 0" in reaped.output

    unknown = _invoke(runner, "agent", "heartbeat", "ghost")
    assert unknown.exit_code == 1
