"""Snapshot persistence for orchestrations.

Each orchestration (record, transcript and subtasks) is saved as one
JSON file so that transcripts survive a restart and a restored
orchestration can be resumed with a fresh process.

Storage: ~/.remote-orchestrator/orchestrations/, one file per orchestration.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from remote_orchestrator.lifecycle import map_status
from remote_orchestrator.types import (
    Message,
    Orchestration,
    Role,
    Subtask,
    SubtaskStatus,
)

logger = logging.getLogger(__name__)

DATA_DIR = Path.home() / ".remote-orchestrator" / "orchestrations"


@dataclass
class OrchestrationSnapshot:
    """Serializable state of one orchestration."""

    orchestration: Orchestration
    messages: list[Message] = field(default_factory=list)
    subtasks: list[Subtask] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "orchestration": self.orchestration.to_dict(),
            "messages": [m.to_dict() for m in self.messages],
            "subtasks": [s.to_dict() for s in self.subtasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestrationSnapshot:
        raw = data["orchestration"]
        orchestration = Orchestration(
            id=raw["id"],
            name=raw.get("name", ""),
            project=raw.get("project", ""),
            original_task=raw.get("originalTask", ""),
            project_path=raw.get("projectPath", ""),
            status=map_status(raw.get("status")),
            session_id=raw.get("sessionId"),
            total_cost_usd=float(raw.get("totalCostUsd", 0.0)),
            created_at=int(raw.get("createdAt", 0)),
            completed_at=raw.get("completedAt"),
        )
        if orchestration.is_terminal and orchestration.completed_at is None:
            orchestration.completed_at = orchestration.created_at
        elif not orchestration.is_terminal:
            orchestration.completed_at = None

        messages = [
            Message(
                id=int(m["id"]),
                orchestration_id=orchestration.id,
                role=Role(m["role"]),
                content=m.get("content", ""),
                created_at=int(m.get("createdAt", 0)),
            )
            for m in data.get("messages", [])
        ]
        subtasks = [
            Subtask(
                id=s["id"],
                orchestration_id=orchestration.id,
                name=s.get("name", ""),
                type=s.get("type", "unknown"),
                status=SubtaskStatus(s.get("status", "pending")),
                cost_usd=float(s.get("costUsd", 0.0)),
                started_at=int(s.get("startedAt", 0)),
                completed_at=s.get("completedAt"),
            )
            for s in data.get("subtasks", [])
        ]
        return cls(orchestration, messages, subtasks)


class OrchestrationPersistence:
    """Save and restore orchestration snapshots.

    Storage: <data_dir>/orchestration_{id}.json
    """

    def __init__(self, data_dir: Path | None = None) -> None:
        self._data_dir = data_dir or DATA_DIR
        self._data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def _path(self, orchestration_id: str) -> Path:
        return self._data_dir / f"orchestration_{orchestration_id}.json"

    def save(self, snapshot: OrchestrationSnapshot) -> None:
        """Write a snapshot atomically (temp file + rename)."""
        filepath = self._path(snapshot.orchestration.id)
        tmp = filepath.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(snapshot.to_dict(), indent=2, default=str))
        os.replace(tmp, filepath)
        logger.debug(
            f"Saved orchestration {snapshot.orchestration.id} "
            f"({snapshot.orchestration.status.value}, "
            f"{len(snapshot.messages)} messages) to {filepath}"
        )

    def load(self, orchestration_id: str) -> OrchestrationSnapshot | None:
        """Load a saved snapshot."""
        filepath = self._path(orchestration_id)
        if not filepath.exists():
            return None
        try:
            return OrchestrationSnapshot.from_dict(json.loads(filepath.read_text()))
        except Exception as e:
            logger.warning(f"Failed to load orchestration {orchestration_id}: {e}")
            return None

    def load_all(self) -> list[OrchestrationSnapshot]:
        """Load every readable snapshot, newest first."""
        snapshots: list[OrchestrationSnapshot] = []
        for filepath in self._data_dir.glob("orchestration_*.json"):
            try:
                data = json.loads(filepath.read_text())
                snapshots.append(OrchestrationSnapshot.from_dict(data))
            except Exception as e:
                logger.warning(f"Failed to read orchestration {filepath}: {e}")

        snapshots.sort(key=lambda s: s.orchestration.created_at, reverse=True)
        return snapshots

    def delete(self, orchestration_id: str) -> bool:
        """Remove a snapshot. Returns True if deleted."""
        filepath = self._path(orchestration_id)
        if filepath.exists():
            filepath.unlink()
            logger.info(f"Deleted orchestration {orchestration_id}")
            return True
        return False
