"""Tests for the command line entry point."""

import json
from unittest.mock import patch

import pytest

from remote_orchestrator.cli import _build_config, _interactive, build_parser, format_event, main
from remote_orchestrator.config import DriverConfig, OrchestratorConfig
from remote_orchestrator.drivers.base import AgentDriver
from remote_orchestrator.persistence import OrchestrationPersistence
from remote_orchestrator.session import OrchestrationSessionManager
from remote_orchestrator.store import MessageStore
from remote_orchestrator.types import (
    Message,
    Orchestration,
    OrchestrationStatus,
    OrchestratorEvent,
    Role,
    Subtask,
)


class ScriptedDriver(AgentDriver):
    def __init__(self, events):
        super().__init__(DriverConfig("scripted", "Scripted", "scripted", []), ".")
        self._events = events

    async def spawn(self, prompt, resume_session_id=None):
        for event in self._events:
            yield event
        self._returncode = 0


# ---------------------------------------------------------------------------
# Argument handling
# ---------------------------------------------------------------------------


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.mode == "interactive"
    assert args.task == []
    assert not args.no_persist


def test_build_config_overrides(tmp_path, monkeypatch):
    monkeypatch.delenv("REMOTE_ORCHESTRATOR_DRIVER", raising=False)
    args = build_parser().parse_args(
        ["--driver", "acp", "--data-dir", str(tmp_path), "--no-persist", "do", "it"]
    )
    config = _build_config(args)
    assert config.driver == "acp"
    assert config.data_dir == tmp_path
    assert config.persist is False
    assert args.task == ["do", "it"]


def test_list_empty(tmp_path, capsys):
    main(["--list", "--data-dir", str(tmp_path)])
    assert "No orchestrations found." in capsys.readouterr().out


def test_show_unknown_exits_nonzero(tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        main(["--show", "missing", "--data-dir", str(tmp_path)])
    assert exc_info.value.code == 1


# ---------------------------------------------------------------------------
# Event rendering
# ---------------------------------------------------------------------------


def test_format_event():
    assistant = Message(2, "o1", Role.ASSISTANT, '[{"type": "text", "text": "Working"}]')
    user = Message(1, "o1", Role.USER, "fix it")
    subtask = Subtask("t1", "o1", "Write tests", "test-agent")

    assert format_event(OrchestratorEvent.status_change("o1", OrchestrationStatus.EXECUTING)) == "[status] executing"
    assert format_event(OrchestratorEvent.message(assistant)) == "Working"
    assert format_event(OrchestratorEvent.message(user)) is None
    assert format_event(OrchestratorEvent.subtask_started(subtask)) == "[subtask] started test-agent: Write tests"
    assert format_event(OrchestratorEvent.completed("o1", 0.5)) == "[done] total cost $0.5000"
    assert format_event(OrchestratorEvent.error("o1", "boom")) == "[error] boom"


async def test_interactive_prints_until_terminal(capsys):
    manager = OrchestrationSessionManager(
        OrchestratorConfig(persist=False),
        driver_factory=lambda workspace: ScriptedDriver(
            [
                {"type": "assistant", "message": {"content": [{"type": "text", "text": "Done it"}]}},
                {"type": "result", "subtype": "success", "total_cost_usd": 0.01},
            ]
        ),
    )
    status = await _interactive(manager, "fix it", "demo", "/p")
    assert status == OrchestrationStatus.COMPLETED

    out = capsys.readouterr().out
    assert "Done it" in out
    assert "[done] total cost $0.0100" in out
    assert out.rstrip().endswith("[status] completed")


def test_unavailable_driver_reports_config_error(tmp_path, capsys):
    with patch("remote_orchestrator.cli.is_driver_available", return_value=False):
        with pytest.raises(SystemExit) as exc_info:
            main(["--mode", "extension", "--data-dir", str(tmp_path), "task"])
    assert exc_info.value.code == 1
    reply = json.loads(capsys.readouterr().out)
    assert reply["type"] == "error"
    assert reply["code"] == "ConfigError"


def test_show_prints_bracketed_user_message(tmp_path, capsys):
    store = MessageStore(OrchestrationPersistence(tmp_path))
    store.add(Orchestration(id="o1", name="fix", project="demo", original_task="[1, 2] fix this"))
    store.append("o1", Role.USER, "[1, 2] fix this")
    store.append("o1", Role.ASSISTANT, '[{"type": "text", "text": "Fixed"}]')
    store.flush("o1", force=True)

    with pytest.raises(SystemExit) as exc_info:
        main(["--show", "o1", "--data-dir", str(tmp_path)])
    assert exc_info.value.code == 0
    out = capsys.readouterr().out
    assert "User: [1, 2] fix this" in out
    assert "Assistant: Fixed" in out
