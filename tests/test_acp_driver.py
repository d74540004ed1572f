"""Tests for the ACP driver and its session/update normalization."""

import asyncio

import pytest

from remote_orchestrator.config import DriverConfig
from remote_orchestrator.drivers.acp_driver import (
    AcpDriver,
    AgentAuthenticationError,
    _ClientHandler,
)
from remote_orchestrator.errors import InvalidStateError, ProcessFailureError
from remote_orchestrator.parser import extract_text, extract_tool_invocations, extract_tool_results

ACP_CONFIG = DriverConfig(
    "claude-code-acp", "Claude Code (ACP)", "npx", ["@zed-industries/claude-code-acp"]
)


async def _update(handler: _ClientHandler, update: dict) -> None:
    await handler("session/update", {"sessionId": "acp-1", "update": update}, True)


def _drain_queue(handler: _ClientHandler) -> list[dict]:
    events = []
    while not handler.events.empty():
        events.append(handler.events.get_nowait())
    return events


# ---------------------------------------------------------------------------
# _ClientHandler: session/update mapping
# ---------------------------------------------------------------------------


async def test_message_chunks_are_buffered_into_one_message():
    handler = _ClientHandler()
    await _update(handler, {"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "Hel"}})
    await _update(handler, {"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "lo"}})
    assert handler.events.empty()

    await handler.flush_text()
    [event] = _drain_queue(handler)
    assert event["type"] == "assistant"
    assert extract_text(event["message"]["content"]) == "Hello"


async def test_tool_call_with_subagent_type_is_task():
    handler = _ClientHandler()
    await _update(handler, {"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "Delegating"}})
    await _update(
        handler,
        {
            "sessionUpdate": "tool_call",
            "toolCallId": "call_1",
            "title": "Write tests",
            "rawInput": {"description": "Write tests", "subagent_type": "test-agent"},
        },
    )
    text_event, tool_event = _drain_queue(handler)
    assert extract_text(text_event["message"]["content"]) == "Delegating"
    [invocation] = extract_tool_invocations(tool_event["message"]["content"])
    assert invocation.name == "Task"
    assert invocation.id == "call_1"
    assert invocation.input_field("subagent_type") == "test-agent"


async def test_tool_call_names():
    handler = _ClientHandler()
    await _update(handler, {"sessionUpdate": "tool_call", "toolCallId": "a", "title": "Read file"})
    await _update(
        handler,
        {
            "sessionUpdate": "tool_call",
            "toolCallId": "b",
            "title": "Explore",
            "_meta": {"claudeCode": {"toolName": "Task"}},
        },
    )
    names = [extract_tool_invocations(e["message"]["content"])[0].name for e in _drain_queue(handler)]
    assert names == ["Read file", "Task"]


async def test_tool_call_update_completion():
    handler = _ClientHandler()
    await _update(handler, {"sessionUpdate": "tool_call_update", "toolCallId": "a", "status": "in_progress"})
    await _update(handler, {"sessionUpdate": "tool_call_update", "toolCallId": "a", "status": "completed"})
    await _update(handler, {"sessionUpdate": "tool_call_update", "toolCallId": "b", "status": "failed"})
    events = _drain_queue(handler)
    assert [e["type"] for e in events] == ["user", "user"]
    results = [r for e in events for r in extract_tool_results(e)]
    assert [(r.tool_use_id, r.is_error) for r in results] == [("a", False), ("b", True)]


async def test_usage_update_tracks_cost():
    handler = _ClientHandler()
    await _update(handler, {"sessionUpdate": "usage_update", "cost": {"amount": 0.12, "currency": "USD"}})
    await _update(handler, {"sessionUpdate": "usage_update", "cost": {"amount": "bad"}})
    assert handler.cost_usd == 0.12


async def test_malformed_updates_are_ignored():
    handler = _ClientHandler()
    await handler("session/update", None, True)
    await handler("session/update", {"update": "nope"}, True)
    await _update(handler, {"sessionUpdate": "plan", "entries": []})
    await _update(handler, {"sessionUpdate": "agent_message_chunk", "content": {"type": "image"}})
    await handler.flush_text()
    assert handler.events.empty()


# ---------------------------------------------------------------------------
# _ClientHandler: client methods
# ---------------------------------------------------------------------------


async def test_permission_requests_are_auto_approved():
    handler = _ClientHandler()
    response = await handler(
        "session/request_permission",
        {
            "options": [
                {"optionId": "reject", "kind": "reject_once"},
                {"optionId": "allow", "kind": "allow_once"},
            ]
        },
        False,
    )
    assert response == {"outcome": {"optionId": "allow", "outcome": "selected"}}


async def test_permission_without_allow_option_picks_first():
    handler = _ClientHandler()
    response = await handler("requestPermission", {"options": [{"optionId": "only"}]}, False)
    assert response["outcome"]["optionId"] == "only"


async def test_read_text_file(tmp_path):
    target = tmp_path / "notes.txt"
    target.write_text("hello")
    handler = _ClientHandler()
    assert await handler("fs/read_text_file", {"path": str(target)}, False) == {"content": "hello"}
    assert await handler("fs/read_text_file", {"path": str(tmp_path / "missing")}, False) == {
        "content": ""
    }


async def test_unknown_method_returns_none():
    assert await _ClientHandler()("terminal/create", {}, False) is None


# ---------------------------------------------------------------------------
# AcpDriver against a fake connection
# ---------------------------------------------------------------------------


class FakeProcess:
    def __init__(self):
        self.stdin = object()
        self.stdout = object()
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_eof()
        self.returncode = None
        self.pid = 4242


class FakeConnection:
    """Plays the agent side: each prompt replays the next scripted turn."""

    init_response: dict = {"agentCapabilities": {"loadSession": True}}
    turns: list = []
    stop_reason = "end_turn"
    instances: list = []

    def __init__(self, handler, stdin, stdout):
        self.handler = handler
        self.requests: list[tuple[str, dict]] = []
        self.closed = False
        FakeConnection.instances.append(self)

    async def send_request(self, method, params=None):
        self.requests.append((method, params))
        if method == "initialize":
            return self.init_response
        if method == "session/new":
            return {"sessionId": "acp-1"}
        if method == "session/load":
            return {}
        if method == "session/prompt":
            updates = self.turns.pop(0) if self.turns else []
            for update in updates:
                await self.handler("session/update", {"sessionId": params["sessionId"], "update": update}, True)
            return {"stopReason": self.stop_reason}
        return None

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_acp(monkeypatch, tmp_path):
    FakeConnection.instances = []
    FakeConnection.turns = []
    FakeConnection.stop_reason = "end_turn"
    FakeConnection.init_response = {"agentCapabilities": {"loadSession": True}}
    monkeypatch.setattr("remote_orchestrator.drivers.acp_driver.Connection", FakeConnection)

    async def no_terminate(process, timeout):
        process.returncode = 0

    monkeypatch.setattr("remote_orchestrator.drivers.base.terminate_process_tree", no_terminate)

    driver = AcpDriver(ACP_CONFIG, str(tmp_path))

    async def fake_create(cmd, **kwargs):
        driver._process = FakeProcess()
        return driver._process

    monkeypatch.setattr(driver, "_create_process", fake_create)
    return driver


async def test_spawn_normalizes_a_turn(fake_acp):
    FakeConnection.turns = [
        [
            {"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "On it"}},
            {
                "sessionUpdate": "tool_call",
                "toolCallId": "call_1",
                "title": "Fix",
                "rawInput": {"description": "Fix", "subagent_type": "fix-agent"},
            },
            {"sessionUpdate": "tool_call_update", "toolCallId": "call_1", "status": "completed"},
            {"sessionUpdate": "usage_update", "cost": {"amount": 0.2}},
        ]
    ]
    events = [e async for e in fake_acp.spawn("fix the bug")]

    assert [e["type"] for e in events] == ["system", "assistant", "assistant", "user", "result"]
    assert events[0] == {"type": "system", "subtype": "init", "session_id": "acp-1"}
    assert events[-1]["subtype"] == "success"
    assert events[-1]["total_cost_usd"] == 0.2
    assert fake_acp.returncode == 0

    connection = FakeConnection.instances[0]
    methods = [m for m, _ in connection.requests]
    assert methods == ["initialize", "session/new", "session/prompt"]
    assert connection.requests[2][1]["prompt"] == [{"type": "text", "text": "fix the bug"}]
    assert connection.closed


async def test_sent_messages_are_prompted_before_result(fake_acp):
    FakeConnection.turns = [[], []]
    events = fake_acp.spawn("first")
    init = await events.__anext__()
    assert init["subtype"] == "init"

    await fake_acp.send("second")
    rest = [e async for e in events]
    assert [e["type"] for e in rest] == ["result"]

    prompts = [
        params["prompt"][0]["text"]
        for method, params in FakeConnection.instances[0].requests
        if method == "session/prompt"
    ]
    assert prompts == ["first", "second"]

    with pytest.raises(InvalidStateError):
        await fake_acp.send("too late")


async def test_resume_loads_existing_session(fake_acp):
    events = [e async for e in fake_acp.spawn("continue", resume_session_id="acp-old")]
    assert events[0]["session_id"] == "acp-old"
    methods = [m for m, _ in FakeConnection.instances[0].requests]
    assert methods == ["initialize", "session/load", "session/prompt"]


async def test_unsuccessful_stop_reason_is_error_result(fake_acp):
    FakeConnection.stop_reason = "refusal"
    events = [e async for e in fake_acp.spawn("task")]
    assert events[-1]["subtype"] == "error"
    assert events[-1]["errors"] == ["Agent stopped: refusal"]


async def test_authentication_required(fake_acp):
    FakeConnection.init_response = {
        "authMethods": [{"name": "Login", "description": "Run claude login"}],
        "agentInfo": {"name": "Claude"},
    }
    with pytest.raises(AgentAuthenticationError) as exc_info:
        [e async for e in fake_acp.spawn("task")]
    assert isinstance(exc_info.value, ProcessFailureError)
    assert "Run claude login" in str(exc_info.value)
    assert FakeConnection.instances[0].closed


async def test_send_before_spawn_raises(tmp_path):
    driver = AcpDriver(ACP_CONFIG, str(tmp_path))
    assert driver.supports_send
    with pytest.raises(InvalidStateError):
        await driver.send("hi")
