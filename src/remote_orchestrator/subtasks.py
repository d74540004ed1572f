"""Sub-agent tracking.

A tool invocation named ``Task`` is the driving process delegating work
to a sub-agent. Each such invocation becomes a Subtask keyed by the
invocation id; the matching tool result completes it.
"""

from __future__ import annotations

import logging
from typing import Iterable

from remote_orchestrator.lifecycle import SubtaskLifecycle
from remote_orchestrator.types import (
    Subtask,
    SubtaskStatus,
    ToolInvocation,
    ToolResult,
)

logger = logging.getLogger(__name__)

DELEGATE_TOOL_NAME = "Task"
DEFAULT_SUBTASK_NAME = "Sub-agent"
DEFAULT_SUBTASK_TYPE = "unknown"


def is_delegate(invocation: ToolInvocation) -> bool:
    return invocation.name == DELEGATE_TOOL_NAME


def subtask_name(invocation: ToolInvocation) -> str:
    description = invocation.input_field("description")
    return str(description) if description else DEFAULT_SUBTASK_NAME


def subtask_type(invocation: ToolInvocation) -> str:
    agent_type = invocation.input_field("subagent_type")
    return str(agent_type) if agent_type else DEFAULT_SUBTASK_TYPE


class SubtaskTracker:
    """Tracks the sub-agents of one orchestration."""

    def __init__(self, orchestration_id: str, known: Iterable[Subtask] = ()) -> None:
        self._orchestration_id = orchestration_id
        self._subtasks: dict[str, Subtask] = {s.id: s for s in known}

    @property
    def subtasks(self) -> list[Subtask]:
        """All subtasks in discovery order."""
        return list(self._subtasks.values())

    @property
    def running(self) -> list[Subtask]:
        return [s for s in self._subtasks.values() if s.status == SubtaskStatus.RUNNING]

    def get(self, subtask_id: str) -> Subtask | None:
        return self._subtasks.get(subtask_id)

    def observe(self, invocations: Iterable[ToolInvocation]) -> list[Subtask]:
        """Create subtasks for delegate invocations not seen before.

        Returns the newly started subtasks, in invocation order.
        """
        started: list[Subtask] = []
        for invocation in invocations:
            if not is_delegate(invocation):
                continue
            if invocation.id in self._subtasks:
                logger.debug(f"Delegate invocation {invocation.id} already tracked")
                continue

            subtask = Subtask(
                id=invocation.id,
                orchestration_id=self._orchestration_id,
                name=subtask_name(invocation),
                type=subtask_type(invocation),
                status=SubtaskStatus.RUNNING,
            )
            self._subtasks[subtask.id] = subtask
            started.append(subtask)
            logger.info(
                f"[orchestration {self._orchestration_id}] sub-agent started: "
                f"{subtask.type} - {subtask.name}"
            )
        return started

    def complete(self, result: ToolResult) -> Subtask | None:
        """Apply a completion signal.

        Returns the subtask if it transitioned; None for unknown ids and for
        duplicate signals on an already-terminal subtask.
        """
        subtask = self._subtasks.get(result.tool_use_id)
        if subtask is None:
            return None
        return self._finish(
            subtask,
            SubtaskStatus.FAILED if result.is_error else SubtaskStatus.COMPLETED,
            result.cost_usd,
        )

    def fail_running(self) -> list[Subtask]:
        """Fail every subtask still running; used when its process is gone."""
        failed = []
        for subtask in self.running:
            if self._finish(subtask, SubtaskStatus.FAILED, None) is not None:
                failed.append(subtask)
        return failed

    def _finish(
        self, subtask: Subtask, target: SubtaskStatus, cost_usd: float | None
    ) -> Subtask | None:
        lifecycle = SubtaskLifecycle(subtask)
        if lifecycle.is_terminal:
            logger.debug(f"Ignoring duplicate completion for subtask {subtask.id}")
            return None
        if lifecycle.state == SubtaskStatus.PENDING:
            lifecycle.transition(SubtaskStatus.RUNNING)
        lifecycle.transition(target)
        if cost_usd:
            subtask.cost_usd += cost_usd
        return subtask
