"""Shared test fixtures."""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

import pytest

from agent_coordinator.config import LivenessSettings, Settings, StoreSettings
from agent_coordinator.coordination.services import Coordinator


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop AGENT_COORD_* variables inherited from the developer shell."""

    for name in list(os.environ):
        if name.startswith("AGENT_COORD_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        state_dir=tmp_path / "state",
        store=StoreSettings(
            lock_timeout_seconds=2.0,
            conflict_retries=3,
            retry_backoff_seconds=0.01,
            retry_backoff_max_seconds=0.05,
        ),
        liveness=LivenessSettings(
            stale_after_seconds=120,
            heartbeat_interval_seconds=0.2,
            reaper_interval_seconds=0.05,
        ),
    )


@pytest.fixture()
def fast_settings(settings: Settings) -> Settings:
    """Settings for runs that go through real worker subprocesses."""

    return replace(
        settings,
        dispatch=replace(
            settings.dispatch,
            poll_interval_seconds=0.05,
            task_timeout_seconds=60,
        ),
    )


@pytest.fixture()
def coordinator(settings: Settings) -> Coordinator:
    return Coordinator.from_settings(settings)
