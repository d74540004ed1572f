"""Tests for sub-agent tracking."""

from remote_orchestrator.subtasks import (
    SubtaskTracker,
    is_delegate,
    subtask_name,
    subtask_type,
)
from remote_orchestrator.types import (
    Subtask,
    SubtaskStatus,
    SubtaskType,
    ToolInvocation,
    ToolResult,
)


def _task(id: str = "t1", **input) -> ToolInvocation:
    return ToolInvocation(id=id, name="Task", input=input, has_input=True)


# ---------------------------------------------------------------------------
# Delegate detection
# ---------------------------------------------------------------------------


def test_only_task_invocations_are_delegates():
    assert is_delegate(_task())
    assert not is_delegate(ToolInvocation("t2", "Read", {"path": "x"}, True))
    assert not is_delegate(ToolInvocation("t3", "task"))


def test_subtask_name_and_type_from_input():
    invocation = _task(description="Write tests", subagent_type="test-agent")
    assert subtask_name(invocation) == "Write tests"
    assert subtask_type(invocation) == "test-agent"


def test_subtask_name_and_type_defaults():
    invocation = ToolInvocation("t1", "Task")
    assert subtask_name(invocation) == "Sub-agent"
    assert subtask_type(invocation) == "unknown"


def test_subtask_type_non_string_is_stringified():
    assert subtask_type(_task(subagent_type=7)) == "7"


# ---------------------------------------------------------------------------
# SubtaskTracker
# ---------------------------------------------------------------------------


def test_observe_creates_running_subtask():
    tracker = SubtaskTracker("o1")
    started = tracker.observe(
        [
            ToolInvocation("r1", "Read", {"path": "a"}, True),
            _task("t1", description="Fix login", subagent_type="code-agent"),
        ]
    )
    assert len(started) == 1
    subtask = started[0]
    assert subtask.id == "t1"
    assert subtask.orchestration_id == "o1"
    assert subtask.status == SubtaskStatus.RUNNING
    assert subtask.name == "Fix login"
    assert subtask.type == "code-agent"
    assert subtask.category == SubtaskType.CODE
    assert subtask.completed_at is None


def test_observe_never_recreates_known_subtask():
    tracker = SubtaskTracker("o1")
    tracker.observe([_task("t1")])
    assert tracker.observe([_task("t1", description="again")]) == []
    assert len(tracker.subtasks) == 1
    assert tracker.get("t1").name == "Sub-agent"


def test_complete_transitions_and_accumulates_cost():
    tracker = SubtaskTracker("o1")
    tracker.observe([_task("t1")])
    subtask = tracker.complete(ToolResult("t1", cost_usd=0.3))
    assert subtask is not None
    assert subtask.status == SubtaskStatus.COMPLETED
    assert subtask.cost_usd == 0.3
    assert subtask.completed_at is not None
    assert tracker.running == []


def test_complete_with_error_fails_subtask():
    tracker = SubtaskTracker("o1")
    tracker.observe([_task("t1")])
    subtask = tracker.complete(ToolResult("t1", is_error=True))
    assert subtask.status == SubtaskStatus.FAILED


def test_duplicate_completion_is_noop():
    tracker = SubtaskTracker("o1")
    tracker.observe([_task("t1")])
    first = tracker.complete(ToolResult("t1", cost_usd=0.1))
    completed_at = first.completed_at
    assert tracker.complete(ToolResult("t1", is_error=True, cost_usd=0.1)) is None
    assert first.status == SubtaskStatus.COMPLETED
    assert first.cost_usd == 0.1
    assert first.completed_at == completed_at


def test_complete_unknown_id_is_ignored():
    tracker = SubtaskTracker("o1")
    assert tracker.complete(ToolResult("nope")) is None


def test_fail_running_only_touches_running():
    tracker = SubtaskTracker("o1")
    tracker.observe([_task("t1"), _task("t2")])
    tracker.complete(ToolResult("t1"))
    failed = tracker.fail_running()
    assert [s.id for s in failed] == ["t2"]
    assert tracker.get("t1").status == SubtaskStatus.COMPLETED
    assert tracker.get("t2").status == SubtaskStatus.FAILED


def test_pending_subtask_runs_before_completing():
    known = Subtask("t1", "o1", "Sub-agent", "unknown", status=SubtaskStatus.PENDING)
    tracker = SubtaskTracker("o1", [known])
    assert tracker.complete(ToolResult("t1")).status == SubtaskStatus.COMPLETED


# ---------------------------------------------------------------------------
# Category coercion
# ---------------------------------------------------------------------------


def test_category_by_prefix():
    def category(raw: str) -> SubtaskType:
        return Subtask("x", "o1", "n", raw).category

    assert category("code-agent") == SubtaskType.CODE
    assert category("test") == SubtaskType.TEST
    assert category("Review-Agent") == SubtaskType.REVIEW
    assert category("fix-agent") == SubtaskType.FIX
    assert category("general-purpose") == SubtaskType.UNKNOWN
    assert category("testing") == SubtaskType.UNKNOWN
    assert category("unknown") == SubtaskType.UNKNOWN
