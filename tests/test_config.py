from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_coordinator.config import (
    DEFAULT_STATE_DIR,
    DispatchSettings,
    LivenessSettings,
    Settings,
    StoreSettings,
)

pytestmark = [
    allure.epic("Task Coordination"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.state_dir == Path(DEFAULT_STATE_DIR)
    assert settings.liveness.stale_after_seconds == 120
    assert settings.dispatch.max_attempts == 2
    assert "{task_spec}" in settings.dispatch.worker_command_template
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_COORD_STATE_DIR", str(tmp_path / "shared"))
    monkeypatch.setenv("AGENT_COORD_STALE_AFTER_SECONDS", "30")
    monkeypatch.setenv("AGENT_COORD_HEARTBEAT_INTERVAL_SECONDS", "5")
    monkeypatch.setenv("AGENT_COORD_POLL_INTERVAL_SECONDS", "0.1")
    monkeypatch.setenv("AGENT_COORD_MAX_PARALLEL", "2")

    settings = Settings.from_env()

    assert settings.state_dir == tmp_path / "shared"
    assert settings.tasks_path == tmp_path / "shared" / "tasks.json"
    assert settings.registry_path == tmp_path / "shared" / "agent-registry.json"
    assert settings.liveness.stale_after_seconds == 30
    assert settings.liveness.heartbeat_interval_seconds == 5.0
    assert settings.dispatch.poll_interval_seconds == 0.1
    assert settings.dispatch.max_parallel == 2


def test_explicit_state_dir_wins_over_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_COORD_STATE_DIR", str(tmp_path / "env"))

    settings = Settings.from_env(state_dir=tmp_path / "flag")

    assert settings.state_dir == tmp_path / "flag"


def test_validate_rejects_heartbeat_not_below_stale_threshold() -> None:
    settings = Settings(
        liveness=LivenessSettings(stale_after_seconds=10, heartbeat_interval_seconds=10),
    )

    with pytest.raises(ValueError, match="HEARTBEAT_INTERVAL_SECONDS must be lower"):
        settings.validate()


def test_validate_rejects_non_positive_lock_timeout() -> None:
    settings = Settings(store=StoreSettings(lock_timeout_seconds=0))

    with pytest.raises(ValueError, match="LOCK_TIMEOUT_SECONDS"):
        settings.validate()


def test_validate_requires_task_spec_placeholder() -> None:
    settings = Settings(dispatch=DispatchSettings(worker_command_template="worker --run"))

    with pytest.raises(ValueError, match="task_spec"):
        settings.validate()


def test_validate_rejects_zero_attempts() -> None:
    settings = Settings(dispatch=DispatchSettings(max_attempts=0))

    with pytest.raises(ValueError, match="MAX_ATTEMPTS"):
        settings.validate()
