"""Lifecycle state machines for orchestrations and their subtasks.

Both machines operate directly on the record they guard so that the
status field and ``completed_at`` can never drift apart: ``completed_at``
is stamped exactly once, on entering a terminal status.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from remote_orchestrator.types import (
    Orchestration,
    OrchestrationStatus,
    Subtask,
    SubtaskStatus,
    TERMINAL_STATUSES,
    now_ms,
)

logger = logging.getLogger(__name__)

_NON_TERMINAL_EXITS = {OrchestrationStatus.FAILED, OrchestrationStatus.CANCELLED}

# Valid state transitions for an orchestration
_VALID_TRANSITIONS: dict[OrchestrationStatus, set[OrchestrationStatus]] = {
    OrchestrationStatus.PLANNING: {
        OrchestrationStatus.EXECUTING,
        OrchestrationStatus.CLARIFYING,
        *_NON_TERMINAL_EXITS,
    },
    OrchestrationStatus.CLARIFYING: {
        OrchestrationStatus.EXECUTING,
        *_NON_TERMINAL_EXITS,
    },
    OrchestrationStatus.EXECUTING: {
        OrchestrationStatus.ITERATING,
        OrchestrationStatus.CLARIFYING,
        OrchestrationStatus.COMPLETED,
        *_NON_TERMINAL_EXITS,
    },
    OrchestrationStatus.ITERATING: {
        OrchestrationStatus.EXECUTING,
        OrchestrationStatus.COMPLETED,
        *_NON_TERMINAL_EXITS,
    },
    OrchestrationStatus.COMPLETED: set(),  # terminal state
    OrchestrationStatus.FAILED: set(),  # terminal state
    OrchestrationStatus.CANCELLED: set(),  # terminal state
}

# Valid state transitions for subtasks
_VALID_SUBTASK_TRANSITIONS: dict[SubtaskStatus, set[SubtaskStatus]] = {
    SubtaskStatus.PENDING: {SubtaskStatus.RUNNING},
    SubtaskStatus.RUNNING: {SubtaskStatus.COMPLETED, SubtaskStatus.FAILED},
    SubtaskStatus.COMPLETED: set(),  # terminal state
    SubtaskStatus.FAILED: set(),  # terminal state
}

_STATUS_BY_NAME: dict[str, OrchestrationStatus] = {s.value: s for s in OrchestrationStatus}


def map_status(status: Any) -> OrchestrationStatus:
    """Map a status string from an external source onto a known status.

    Unknown names (including empty strings and non-strings) map to
    EXECUTING so that new upstream status names do not break the engine.
    """
    if isinstance(status, str):
        return _STATUS_BY_NAME.get(status, OrchestrationStatus.EXECUTING)
    return OrchestrationStatus.EXECUTING


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, current: Any, target: Any) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition: {current.value} -> {target.value}")


StateChangeCallback = Callable[[Any, Any], None]


class OrchestrationLifecycle:
    """Manages the state machine for one orchestration record."""

    def __init__(self, record: Orchestration) -> None:
        self._record = record
        self._callbacks: list[StateChangeCallback] = []

    @property
    def state(self) -> OrchestrationStatus:
        return self._record.status

    def on_state_change(self, callback: StateChangeCallback) -> None:
        """Register a callback for state transitions."""
        self._callbacks.append(callback)

    def can_transition(self, target: OrchestrationStatus) -> bool:
        return target in _VALID_TRANSITIONS.get(self._record.status, set())

    def transition(self, target: OrchestrationStatus) -> None:
        """Transition to a new state, validating the transition is legal."""
        if not self.can_transition(target):
            raise InvalidTransitionError(self._record.status, target)

        old = self._record.status
        self._record.status = target
        if target in TERMINAL_STATUSES:
            self._record.completed_at = now_ms()
        logger.info(f"[orchestration {self._record.id}] {old.value} -> {target.value}")

        for callback in self._callbacks:
            try:
                callback(old, target)
            except Exception as e:
                logger.warning(f"State change callback error: {e}")

    @property
    def is_terminal(self) -> bool:
        """Whether the current state is terminal (no further transitions possible)."""
        return len(_VALID_TRANSITIONS.get(self._record.status, set())) == 0


class SubtaskLifecycle:
    """Manages the state machine for a single subtask."""

    def __init__(self, subtask: Subtask) -> None:
        self._subtask = subtask

    @property
    def state(self) -> SubtaskStatus:
        return self._subtask.status

    def transition(self, target: SubtaskStatus) -> None:
        """Transition to a new state, validating the transition is legal."""
        if target not in _VALID_SUBTASK_TRANSITIONS.get(self._subtask.status, set()):
            raise InvalidTransitionError(self._subtask.status, target)

        old = self._subtask.status
        self._subtask.status = target
        if target in (SubtaskStatus.COMPLETED, SubtaskStatus.FAILED):
            self._subtask.completed_at = now_ms()
        logger.info(f"[subtask {self._subtask.id}] {old.value} -> {target.value}")

    @property
    def is_terminal(self) -> bool:
        """Whether the current state is terminal."""
        return len(_VALID_SUBTASK_TRANSITIONS.get(self._subtask.status, set())) == 0
