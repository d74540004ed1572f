"""In-memory message store with optional snapshot persistence.

Holds every orchestration record with its ordered transcript and
subtasks. Appends are idempotent against re-delivered chunks: a message
whose (role, content) equals one in the recent tail is not stored again.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from remote_orchestrator.errors import NotFoundError
from remote_orchestrator.persistence import (
    OrchestrationPersistence,
    OrchestrationSnapshot,
)
from remote_orchestrator.types import Message, Orchestration, Role, Subtask, now_ms

logger = logging.getLogger(__name__)

DEFAULT_DEDUPE_WINDOW = 50


@dataclass
class _Entry:
    orchestration: Orchestration
    messages: list[Message] = field(default_factory=list)
    subtasks: dict[str, Subtask] = field(default_factory=dict)


class MessageStore:
    """Durable, ordered transcripts keyed by orchestration id."""

    def __init__(
        self,
        persistence: OrchestrationPersistence | None = None,
        dedupe_window: int = DEFAULT_DEDUPE_WINDOW,
        snapshot_interval: float = 0.0,
    ) -> None:
        self._persistence = persistence
        self._dedupe_window = dedupe_window
        self._snapshot_interval = snapshot_interval
        self._last_snapshot: dict[str, float] = {}
        self._entries: dict[str, _Entry] = {}
        if persistence is not None:
            for snapshot in persistence.load_all():
                self._restore(snapshot)

    def _restore(self, snapshot: OrchestrationSnapshot) -> None:
        entry = _Entry(snapshot.orchestration, list(snapshot.messages))
        entry.subtasks = {s.id: s for s in snapshot.subtasks}
        self._entries[snapshot.orchestration.id] = entry
        logger.debug(
            f"Restored orchestration {snapshot.orchestration.id} "
            f"({snapshot.orchestration.status.value})"
        )

    def _entry(self, orchestration_id: str) -> _Entry:
        entry = self._entries.get(orchestration_id)
        if entry is None:
            raise NotFoundError(orchestration_id)
        return entry

    # -- writes -------------------------------------------------------------

    def add(self, orchestration: Orchestration) -> None:
        self._entries[orchestration.id] = _Entry(orchestration)
        self.flush(orchestration.id, force=True)

    def append(
        self,
        orchestration_id: str,
        role: Role,
        content: str,
        *,
        dedupe: bool = True,
    ) -> Message | None:
        """Append a transcript turn.

        Returns the stored message, or None when the same (role, content)
        already sits in the recent tail and ``dedupe`` is on.
        """
        entry = self._entry(orchestration_id)
        if dedupe and self._is_duplicate(entry, role, content):
            logger.debug(f"Skipping duplicate {role.value} message for {orchestration_id}")
            return None

        last = entry.messages[-1] if entry.messages else None
        created_at = now_ms()
        if last is not None:
            created_at = max(created_at, last.created_at)
        message = Message(
            id=(last.id + 1) if last is not None else 1,
            orchestration_id=orchestration_id,
            role=role,
            content=content,
            created_at=created_at,
        )
        entry.messages.append(message)
        return message

    def _is_duplicate(self, entry: _Entry, role: Role, content: str) -> bool:
        tail = entry.messages[-self._dedupe_window :] if self._dedupe_window else []
        return any(m.role == role and m.content == content for m in tail)

    def put_subtask(self, subtask: Subtask) -> None:
        self._entry(subtask.orchestration_id).subtasks[subtask.id] = subtask

    def flush(self, orchestration_id: str, *, force: bool = False) -> None:
        """Persist the current state of one orchestration, if persistence is on.

        Unforced flushes within ``snapshot_interval`` seconds of the last
        write are skipped; the next forced or later flush catches up.
        """
        if self._persistence is None:
            return
        entry = self._entry(orchestration_id)
        now = time.monotonic()
        last = self._last_snapshot.get(orchestration_id)
        if not force and last is not None and now - last < self._snapshot_interval:
            return
        self._last_snapshot[orchestration_id] = now
        try:
            self._persistence.save(
                OrchestrationSnapshot(
                    entry.orchestration,
                    list(entry.messages),
                    list(entry.subtasks.values()),
                )
            )
        except OSError as e:
            logger.warning(f"Failed to persist orchestration {orchestration_id}: {e}")

    def delete(self, orchestration_id: str) -> bool:
        """Drop an orchestration entirely. Only external callers delete."""
        if self._entries.pop(orchestration_id, None) is None:
            return False
        self._last_snapshot.pop(orchestration_id, None)
        if self._persistence is not None:
            self._persistence.delete(orchestration_id)
        return True

    # -- reads --------------------------------------------------------------

    def get(self, orchestration_id: str) -> Orchestration:
        return self._entry(orchestration_id).orchestration

    def get_messages(self, orchestration_id: str) -> list[Message]:
        return list(self._entry(orchestration_id).messages)

    def get_subtasks(self, orchestration_id: str) -> list[Subtask]:
        """Subtasks ordered by start time."""
        subtasks = self._entry(orchestration_id).subtasks.values()
        return sorted(subtasks, key=lambda s: s.started_at)

    def list(self, project: str | None = None) -> list[Orchestration]:
        """All orchestrations, newest first, optionally for one project."""
        records = [
            e.orchestration
            for e in self._entries.values()
            if project is None or e.orchestration.project == project
        ]
        # Insertion order breaks ties between records created in the same ms
        records.reverse()
        records.sort(key=lambda o: o.created_at, reverse=True)
        return records

    def __contains__(self, orchestration_id: object) -> bool:
        return orchestration_id in self._entries
