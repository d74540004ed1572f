"""Configuration for the orchestration engine."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from remote_orchestrator.broadcast import DEFAULT_QUEUE_SIZE
from remote_orchestrator.persistence import DATA_DIR

_ENV_PREFIX = "REMOTE_ORCHESTRATOR_"


@dataclass
class DriverConfig:
    id: str
    name: str
    command: str
    args: list[str]


DRIVERS: list[DriverConfig] = [
    DriverConfig("claude-cli", "Claude Code CLI", "claude", []),
    DriverConfig(
        "claude-code-acp", "Claude Code (ACP)", "npx", ["@zed-industries/claude-code-acp"]
    ),
]

DEFAULT_DRIVER = "claude-cli"


@dataclass(frozen=True)
class SubAgentDefinition:
    """A specialist the driving process can delegate to through ``Task``."""

    name: str
    description: str
    prompt: str
    tools: tuple[str, ...]
    model: str = "sonnet"

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "prompt": self.prompt,
            "tools": list(self.tools),
            "model": self.model,
        }


_EDIT_TOOLS = ("Read", "Write", "Edit", "Bash", "Glob", "Grep")

SUBAGENTS: list[SubAgentDefinition] = [
    SubAgentDefinition(
        "code-agent",
        "Writes and modifies code. Use it to implement features, refactor, "
        "or change existing code.",
        "You are an expert software developer. Write clean, maintainable code "
        "that follows the conventions already used in the project. Stay "
        "focused on the requested change.",
        _EDIT_TOOLS,
    ),
    SubAgentDefinition(
        "test-agent",
        "Writes and runs tests. Use it for unit or integration tests and to "
        "validate changes.",
        "You are a testing expert. Cover the nominal path and the edge cases "
        "with the project's own test framework, and check that the existing "
        "suite still passes. Test behavior, not implementation.",
        _EDIT_TOOLS,
    ),
    SubAgentDefinition(
        "review-agent",
        "Reviews code quality. Use it to find problems and suggest concrete "
        "improvements.",
        "You are a senior developer doing a code review. Point out likely "
        "bugs and security issues, ordered by importance, with actionable "
        "suggestions.",
        ("Read", "Glob", "Grep"),
        model="haiku",
    ),
    SubAgentDefinition(
        "fix-agent",
        "Fixes bugs. Use it when tests fail or errors have been found.",
        "You are a debugging expert. Find the root cause from the errors and "
        "stack traces, fix it without regressions, and verify the fix.",
        _EDIT_TOOLS,
    ),
]

ORCHESTRATOR_SYSTEM_PROMPT = """\
You coordinate a team of specialised sub-agents to solve complex software tasks.

Delegate work with the Task tool to one of these agents:
- code-agent: writes and modifies code
- test-agent: writes and runs tests
- review-agent: reviews code and suggests improvements
- fix-agent: fixes bugs found by tests or reviews

Ask the user first when the task is ambiguous. Break complex work into clear
subtasks and run independent ones in parallel, at most 4 at a time. When a
test fails, send fix-agent and then run the tests again; escalate to the user
after 5 such cycles. Always delegate instead of writing code yourself.

Start each answer with your understanding of the task, how you will split it,
and which agents you will use. Be concise."""


def agents_json(subagents: Sequence[SubAgentDefinition]) -> str:
    """Serialize sub-agent definitions for the CLI's ``--agents`` flag."""
    return json.dumps({a.name: a.to_dict() for a in subagents}, ensure_ascii=False)


def _env(name: str, default: str) -> str:
    return os.environ.get(_ENV_PREFIX + name, default)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(_ENV_PREFIX + name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class OrchestratorConfig:
    data_dir: Path = field(default_factory=lambda: DATA_DIR)
    persist: bool = True
    driver: str = DEFAULT_DRIVER
    max_turns: int = 100
    subscriber_queue_size: int = DEFAULT_QUEUE_SIZE
    kill_timeout: float = 5.0
    projects_base_path: str = "~/projects"
    # Minimum seconds between snapshot writes while a run is streaming
    snapshot_interval: float = 1.0
    system_prompt: str = ORCHESTRATOR_SYSTEM_PROMPT
    subagents: list[SubAgentDefinition] = field(default_factory=lambda: list(SUBAGENTS))

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        """Build a config from REMOTE_ORCHESTRATOR_* environment variables."""
        defaults = cls()
        return cls(
            data_dir=Path(_env("DATA_DIR", str(defaults.data_dir))).expanduser(),
            persist=_env_flag("PERSIST", defaults.persist),
            driver=_env("DRIVER", defaults.driver),
            max_turns=int(_env("MAX_TURNS", str(defaults.max_turns))),
            subscriber_queue_size=int(
                _env("QUEUE_SIZE", str(defaults.subscriber_queue_size))
            ),
            kill_timeout=float(_env("KILL_TIMEOUT", str(defaults.kill_timeout))),
            projects_base_path=_env("PROJECTS_PATH", defaults.projects_base_path),
            snapshot_interval=float(
                _env("SNAPSHOT_INTERVAL", str(defaults.snapshot_interval))
            ),
        )

    def resolve_project_path(self, project: str) -> str:
        """Resolve a project name to its directory under the projects base path."""
        return str(Path(self.projects_base_path).expanduser() / project)
