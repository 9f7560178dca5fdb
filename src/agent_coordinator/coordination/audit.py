"""Append-only audit trail of task reclamations."""

from __future__ import annotations

import logging
from pathlib import Path

from agent_coordinator.config import StoreSettings
from agent_coordinator.coordination.models import ReclamationEvent
from agent_coordinator.coordination.storage import append_jsonl, from_iso, read_jsonl

logger = logging.getLogger(__name__)


class ReclamationAuditLog:
    """``reclamation.jsonl``: one line per task returned to the pool."""

    def __init__(self, *, path: Path, settings: StoreSettings) -> None:
        self.path = path
        self.settings = settings

    def append(self, event: ReclamationEvent) -> None:
        append_jsonl(
            self.path,
            {
                "timestamp": event.timestamp.isoformat(),
                "task_id": event.task_id,
                "prior_agent": event.prior_agent,
                "action": event.action,
                "reason": event.reason,
            },
            settings=self.settings,
        )

    def events(self, *, task_id: str | None = None) -> list[ReclamationEvent]:
        events: list[ReclamationEvent] = []
        for record in read_jsonl(self.path):
            try:
                event = ReclamationEvent(
                    timestamp=from_iso(str(record["timestamp"])),
                    task_id=str(record["task_id"]),
                    prior_agent=str(record["prior_agent"]),
                    action=str(record["action"]),
                    reason=str(record["reason"]),
                )
            except (KeyError, ValueError):
                logger.warning("Skipping malformed audit record in %s: %s", self.path, record)
                continue
            if task_id is None or event.task_id == task_id:
                events.append(event)
        return events
