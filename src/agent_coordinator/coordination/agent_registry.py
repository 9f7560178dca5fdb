"""Agent registry: who is running, what they report, and when they last heartbeated."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_coordinator.config import StoreSettings
from agent_coordinator.coordination.errors import NotFoundError
from agent_coordinator.coordination.metrics import OperationObserver, observed_operation
from agent_coordinator.coordination.models import Agent, AgentStatus
from agent_coordinator.coordination.storage import (
    DOCUMENT_VERSION,
    JsonDocumentStore,
    from_iso,
    optional_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(seconds=120)


def empty_registry_document() -> dict[str, Any]:
    return {"version": DOCUMENT_VERSION, "revision": 0, "agents": [], "last_updated": None}


def new_agent_id(role: str | None = None) -> str:
    prefix = (role or "agent").strip().lower().replace(" ", "-") or "agent"
    return f"{prefix}-{uuid4().hex[:12]}"


def agent_to_record(agent: Agent) -> dict[str, Any]:
    return {
        "agent_id": agent.agent_id,
        "session_id": agent.session_id,
        "started_at": agent.started_at.isoformat(),
        "last_heartbeat": agent.last_heartbeat.isoformat(),
        "status": agent.status.value,
        "assigned_role": agent.assigned_role,
        "pid": agent.pid,
        "current_task": agent.current_task,
    }


def agent_from_record(raw: dict[str, Any]) -> Agent:
    agent_id = raw.get("agent_id")
    if not isinstance(agent_id, str) or not agent_id:
        raise ValueError("agent.agent_id must be a non-empty string")
    started_at = optional_iso(raw.get("started_at"))
    heartbeat = raw.get("last_heartbeat")
    if not isinstance(heartbeat, str):
        raise TypeError(f"agent.last_heartbeat must be an ISO string (agent {agent_id})")
    last_heartbeat = from_iso(heartbeat)
    pid = raw.get("pid")
    return Agent(
        agent_id=agent_id,
        session_id=str(raw.get("session_id") or ""),
        started_at=started_at or last_heartbeat,
        last_heartbeat=last_heartbeat,
        status=AgentStatus(raw.get("status", AgentStatus.IDLE.value)),
        assigned_role=raw.get("assigned_role"),
        pid=int(pid) if pid is not None else None,
        current_task=raw.get("current_task"),
    )


def is_stale(agent: Agent, now: datetime, threshold: timedelta = DEFAULT_STALE_AFTER) -> bool:
    """Stale once ``threshold`` or more has passed since the last heartbeat."""

    return now - agent.last_heartbeat >= threshold


class AgentRegistry:
    """Registry document ``agent-registry.json`` guarded by the shared lock discipline."""

    def __init__(
        self,
        *,
        path: Path,
        settings: StoreSettings,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        observer: OperationObserver | None = None,
    ) -> None:
        self.path = path
        self.stale_after = stale_after
        self.observer = observer
        self._document = JsonDocumentStore(
            path=path,
            empty_factory=empty_registry_document,
            settings=settings,
        )

    def list_agents(self) -> list[Agent]:
        return [agent_from_record(item) for item in self._document.read().get("agents", [])]

    def get(self, agent_id: str) -> Agent:
        for agent in self.list_agents():
            if agent.agent_id == agent_id:
                return agent
        raise NotFoundError("agent", agent_id)

    def register(  # noqa: PLR0913
        self,
        *,
        agent_id: str | None = None,
        session_id: str | None = None,
        role: str | None = None,
        status: AgentStatus = AgentStatus.IDLE,
        pid: int | None = None,
        current_task: str | None = None,
    ) -> Agent:
        """Insert or refresh an agent entry; re-registering keeps ``started_at``."""

        now = utc_now()
        resolved_id = agent_id or new_agent_id(role)
        with observed_operation(self.observer, "agent_register", {"agent_id": resolved_id}):
            with self._document.transaction() as raw:
                agents = [agent_from_record(item) for item in raw.get("agents", [])]
                existing = next((a for a in agents if a.agent_id == resolved_id), None)
                agent = Agent(
                    agent_id=resolved_id,
                    session_id=session_id or (existing.session_id if existing else str(uuid4())),
                    started_at=existing.started_at if existing else now,
                    last_heartbeat=now,
                    status=status,
                    assigned_role=role or (existing.assigned_role if existing else None),
                    pid=pid if pid is not None else (existing.pid if existing else None),
                    current_task=current_task,
                )
                agents = [a for a in agents if a.agent_id != resolved_id]
                agents.append(agent)
                raw["agents"] = [agent_to_record(item) for item in agents]
        logger.info("Registered agent %s (%s)", agent.agent_id, agent.status.value)
        return agent

    def heartbeat(self, agent_id: str) -> Agent:
        with observed_operation(self.observer, "agent_heartbeat", {"agent_id": agent_id}):
            return self._mutate(agent_id, last_heartbeat=utc_now())

    def update_status(
        self,
        agent_id: str,
        status: AgentStatus,
        *,
        current_task: str | None = None,
    ) -> Agent:
        """Record a self-reported status; counts as a heartbeat.

        ``current_task`` is only written when given, so a bare status report keeps
        the task the agent was last working on.
        """

        changes: dict[str, Any] = {"status": status, "last_heartbeat": utc_now()}
        if current_task is not None:
            changes["current_task"] = current_task
        context = {"agent_id": agent_id, "status": status.value}
        with observed_operation(self.observer, "agent_update_status", context):
            agent = self._mutate(agent_id, **changes)
        logger.info("Agent %s status -> %s", agent_id, status.value)
        return agent

    def record_pid(self, agent_id: str, pid: int) -> Agent:
        """Attach the spawned process id without touching the self-reported status."""

        return self._mutate(agent_id, pid=pid)

    def mark_failed(self, agent_ids: list[str]) -> list[str]:
        """Mark listed agents failed without refreshing their heartbeat; returns changed ids."""

        changed: list[str] = []
        with self._document.transaction() as raw:
            agents = [agent_from_record(item) for item in raw.get("agents", [])]
            for agent in agents:
                if agent.agent_id in agent_ids and agent.status != AgentStatus.FAILED:
                    agent.status = AgentStatus.FAILED
                    changed.append(agent.agent_id)
            raw["agents"] = [agent_to_record(item) for item in agents]
        return changed

    def remove(self, agent_id: str) -> None:
        with self._document.transaction() as raw:
            agents = [agent_from_record(item) for item in raw.get("agents", [])]
            remaining = [agent for agent in agents if agent.agent_id != agent_id]
            if len(remaining) == len(agents):
                raise NotFoundError("agent", agent_id)
            raw["agents"] = [agent_to_record(item) for item in remaining]

    def is_stale(self, agent: Agent, now: datetime | None = None) -> bool:
        return is_stale(agent, now or utc_now(), self.stale_after)

    def partition(self, now: datetime | None = None) -> tuple[list[Agent], list[Agent]]:
        """Split agents into (live, stale) at ``now``."""

        moment = now or utc_now()
        live: list[Agent] = []
        stale: list[Agent] = []
        for agent in self.list_agents():
            (stale if is_stale(agent, moment, self.stale_after) else live).append(agent)
        return live, stale

    def _mutate(self, agent_id: str, **changes: Any) -> Agent:
        with self._document.transaction() as raw:
            agents = [agent_from_record(item) for item in raw.get("agents", [])]
            agent = next((a for a in agents if a.agent_id == agent_id), None)
            if agent is None:
                raise NotFoundError("agent", agent_id)
            for name, value in changes.items():
                setattr(agent, name, value)
            raw["agents"] = [agent_to_record(item) for item in agents]
        return agent
