"""Data model and event types for orchestration."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class OrchestrationStatus(Enum):
    PLANNING = "planning"
    CLARIFYING = "clarifying"
    EXECUTING = "executing"
    ITERATING = "iterating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {
        OrchestrationStatus.COMPLETED,
        OrchestrationStatus.FAILED,
        OrchestrationStatus.CANCELLED,
    }
)


class SubtaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SubtaskType(Enum):
    """Persisted subtask categories. UNKNOWN covers unrecognized sub-agents."""

    CODE = "code"
    TEST = "test"
    REVIEW = "review"
    FIX = "fix"
    UNKNOWN = "unknown"


class Role(Enum):
    USER = "user"
    ASSISTANT = "assistant"


# ---------------------------------------------------------------------------
# Parsed content blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextFragment:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ToolInvocation:
    id: str
    name: str
    input: Any = None
    has_input: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": "tool_use", "id": self.id, "name": self.name}
        if self.has_input:
            d["input"] = self.input
        return d

    def input_field(self, key: str) -> Any:
        """Read a field from the invocation input, tolerating non-dict input."""
        if isinstance(self.input, dict):
            return self.input.get(key)
        return None


@dataclass(frozen=True)
class ToolResult:
    """Completion signal for a tool invocation, correlated by ``tool_use_id``."""

    tool_use_id: str
    is_error: bool = False
    cost_usd: float | None = None


ContentBlock = Union[TextFragment, ToolInvocation]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class Orchestration:
    id: str
    name: str
    project: str
    original_task: str
    project_path: str = ""
    status: OrchestrationStatus = OrchestrationStatus.PLANNING
    session_id: str | None = None
    total_cost_usd: float = 0.0
    created_at: int = field(default_factory=now_ms)
    completed_at: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "name": self.name,
            "project": self.project,
            "projectPath": self.project_path,
            "originalTask": self.original_task,
            "status": self.status.value,
            "totalCostUsd": self.total_cost_usd,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
        }


@dataclass
class Message:
    id: int
    orchestration_id: str
    role: Role
    content: str  # user text verbatim, assistant turns as serialized blocks
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "orchestrationId": self.orchestration_id,
            "role": self.role.value,
            "content": self.content,
            "createdAt": self.created_at,
        }


_CATEGORY_PREFIXES: dict[str, SubtaskType] = {
    "code": SubtaskType.CODE,
    "test": SubtaskType.TEST,
    "review": SubtaskType.REVIEW,
    "fix": SubtaskType.FIX,
}


@dataclass
class Subtask:
    id: str
    orchestration_id: str
    name: str
    type: str  # raw subagent_type, "unknown" when absent
    status: SubtaskStatus = SubtaskStatus.RUNNING
    cost_usd: float = 0.0
    started_at: int = field(default_factory=now_ms)
    completed_at: int | None = None

    @property
    def category(self) -> SubtaskType:
        """Coerce the free-form sub-agent type onto the persisted enumeration.

        'code-agent' -> CODE, 'test-agent' -> TEST, anything else -> UNKNOWN.
        """
        lowered = self.type.lower()
        for prefix, category in _CATEGORY_PREFIXES.items():
            if lowered == prefix or lowered.startswith(prefix + "-"):
                return category
        return SubtaskType.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        return self.status in (SubtaskStatus.COMPLETED, SubtaskStatus.FAILED)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "status": self.status.value,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.summary(),
            "orchestrationId": self.orchestration_id,
            "category": self.category.value,
            "costUsd": self.cost_usd,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }


# ---------------------------------------------------------------------------
# Outbound events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrchestratorEvent:
    """One event published to the broadcast channel."""

    type: str  # "status-change" | "message" | "subtask-started" | ...
    orchestration_id: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "orchestrationId": self.orchestration_id, **self.data}

    @classmethod
    def status_change(
        cls, orchestration_id: str, status: OrchestrationStatus
    ) -> OrchestratorEvent:
        return cls("status-change", orchestration_id, {"status": status.value})

    @classmethod
    def message(cls, message: Message) -> OrchestratorEvent:
        return cls(
            "message",
            message.orchestration_id,
            {"message": {"role": message.role.value, "content": message.content}},
        )

    @classmethod
    def subtask_started(cls, subtask: Subtask) -> OrchestratorEvent:
        return cls("subtask-started", subtask.orchestration_id, {"subtask": subtask.summary()})

    @classmethod
    def subtask_completed(cls, subtask: Subtask) -> OrchestratorEvent:
        return cls(
            "subtask-completed", subtask.orchestration_id, {"subtask": subtask.summary()}
        )

    @classmethod
    def completed(cls, orchestration_id: str, total_cost_usd: float) -> OrchestratorEvent:
        return cls("completed", orchestration_id, {"totalCostUsd": total_cost_usd})

    @classmethod
    def error(cls, orchestration_id: str, error: str) -> OrchestratorEvent:
        return cls("error", orchestration_id, {"error": error})

    @property
    def is_terminal_status(self) -> bool:
        return self.type == "status-change" and self.data.get("status") in {
            s.value for s in TERMINAL_STATUSES
        }
