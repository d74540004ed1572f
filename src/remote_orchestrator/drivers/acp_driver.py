"""Driver for agents speaking the Agent Client Protocol (ACP) over stdio.

ACP session updates are normalized into the same raw event shapes the
stream-json CLI emits, so the session manager and parser never need to
know which transport produced an event:

  agent_message_chunk*        -> {"type": "assistant", content: [text]}
  tool_call                   -> {"type": "assistant", content: [tool_use]}
  tool_call_update (finished) -> {"type": "user", content: [tool_result]}
  prompt response             -> {"type": "result", ...}
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator

import acp
from acp.connection import Connection

from remote_orchestrator import __version__
from remote_orchestrator.drivers.base import AgentDriver
from remote_orchestrator.errors import InvalidStateError, ProcessFailureError
from remote_orchestrator.parser import coerce_cost
from remote_orchestrator.subtasks import DELEGATE_TOOL_NAME

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = acp.PROTOCOL_VERSION

# Default timeout for ACP session/new (seconds)
_SESSION_NEW_TIMEOUT = 30

_SUCCESS_STOP_REASONS = {"end_turn", "max_tokens", "max_turn_requests"}


class AgentAuthenticationError(ProcessFailureError):
    """Raised when an ACP agent requires authentication before use."""

    def __init__(self, agent_name: str, auth_methods: list[dict[str, Any]]):
        self.agent_name = agent_name
        self.auth_methods = auth_methods
        instructions = []
        for method in auth_methods:
            name = method.get("name", "Unknown")
            desc = method.get("description", "")
            if desc:
                instructions.append(f"  - {name}: {desc}")
            else:
                instructions.append(f"  - {name}")
        methods_text = "\n".join(instructions)
        super().__init__(
            f"Agent '{agent_name}' requires authentication.\n"
            f"Available auth methods:\n{methods_text}"
        )


def _tool_name(update: dict[str, Any]) -> str:
    """Name a tool call the way the stream-json CLI would."""
    meta = update.get("_meta")
    if isinstance(meta, dict):
        claude_meta = meta.get("claudeCode")
        if isinstance(claude_meta, dict) and isinstance(claude_meta.get("toolName"), str):
            return claude_meta["toolName"]
    raw_input = update.get("rawInput")
    if isinstance(raw_input, dict) and "subagent_type" in raw_input:
        return DELEGATE_TOOL_NAME
    title = update.get("title")
    return title if isinstance(title, str) and title else "tool"


class _ClientHandler:
    """ACP method handler for the client side of the connection.

    The ACP Connection expects a callable matching:
        (method: str, params: JsonValue | None, is_notification: bool) -> JsonValue | None

    Session updates are converted to raw events and queued for the driver.
    """

    def __init__(self) -> None:
        self.events: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._text_parts: list[str] = []
        self.cost_usd: float = 0.0

    async def __call__(
        self, method: str, params: Any | None, is_notification: bool
    ) -> Any | None:
        """Dispatch incoming ACP methods and notifications."""
        if method == "session/update":
            await self._handle_session_update(params)
            return None
        elif method in ("session/request_permission", "requestPermission"):
            return self._handle_request_permission(params)
        elif method in ("fs/read_text_file", "readTextFile"):
            return self._handle_read_text_file(params)
        else:
            logger.debug(f"Unhandled ACP method: {method}")
            return None

    async def _handle_session_update(self, params: Any) -> None:
        if not isinstance(params, dict):
            return
        update = params.get("update", params)
        if not isinstance(update, dict):
            return

        kind = update.get("sessionUpdate", "")
        if kind == "agent_message_chunk":
            content = update.get("content")
            if isinstance(content, dict) and isinstance(content.get("text"), str):
                self._text_parts.append(content["text"])
        elif kind == "tool_call":
            await self.flush_text()
            tool_use: dict[str, Any] = {
                "type": "tool_use",
                "id": update.get("toolCallId"),
                "name": _tool_name(update),
            }
            if isinstance(update.get("rawInput"), dict):
                tool_use["input"] = update["rawInput"]
            await self.events.put({"type": "assistant", "message": {"content": [tool_use]}})
        elif kind == "tool_call_update":
            status = update.get("status")
            if status in ("completed", "failed"):
                await self.flush_text()
                await self.events.put(
                    {
                        "type": "user",
                        "message": {
                            "content": [
                                {
                                    "type": "tool_result",
                                    "tool_use_id": update.get("toolCallId"),
                                    "is_error": status == "failed",
                                }
                            ]
                        },
                    }
                )
        elif kind == "usage_update":
            cost = update.get("cost")
            amount = coerce_cost(cost.get("amount")) if isinstance(cost, dict) else None
            if amount is not None:
                self.cost_usd = amount
        else:
            logger.debug(f"Ignoring ACP session update: {kind}")

    async def flush_text(self) -> None:
        """Emit buffered message chunks as one assistant text message."""
        if not self._text_parts:
            return
        text = "".join(self._text_parts)
        self._text_parts.clear()
        await self.events.put(
            {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}
        )

    def _handle_request_permission(self, params: Any) -> dict[str, Any]:
        """Auto-approve all permission requests from the agent."""
        options = params.get("options", []) if isinstance(params, dict) else []
        options = [opt for opt in options if isinstance(opt, dict)]

        chosen = next(
            (o for o in options if o.get("kind") in ("allow_once", "allow_always")),
            options[0] if options else {},
        )
        return {
            "outcome": {
                "optionId": chosen.get("optionId", chosen.get("option_id", "")),
                "outcome": "selected",
            }
        }

    def _handle_read_text_file(self, params: Any) -> dict[str, Any]:
        """Handle file read requests from the agent."""
        path = params.get("path", "") if isinstance(params, dict) else ""
        try:
            with open(path) as f:
                content = f.read()
            return {"content": content}
        except OSError as e:
            logger.warning(f"Failed to read file {path}: {e}")
            return {"content": ""}


class AcpDriver(AgentDriver):
    """Keeps one ACP session per process; follow-up messages reuse it."""

    supports_send = True

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._connection: Connection | None = None
        self._handler = _ClientHandler()
        self._session_id: str | None = None
        self._queued: list[str] = []
        self._finished = False

    @property
    def session_id(self) -> str | None:
        """The active ACP session ID."""
        return self._session_id

    def build_command(self) -> list[str]:
        return [self._config.command, *self._config.args]

    async def send(self, message: str) -> None:
        """Queue a message; it is prompted when the current turn ends."""
        if self._finished or self._connection is None:
            raise InvalidStateError("ACP session is not live")
        self._queued.append(message)

    async def spawn(
        self, prompt: str, resume_session_id: str | None = None
    ) -> AsyncGenerator[dict[str, Any], None]:
        process = await self._create_process(
            self.build_command(), stdin=asyncio.subprocess.PIPE
        )
        assert process.stdin is not None
        assert process.stdout is not None
        assert process.stderr is not None
        stderr_task = asyncio.create_task(self._read_stderr(process.stderr))
        self._connection = Connection(self._handler, process.stdin, process.stdout)

        try:
            capabilities = await self._initialize()
            session_id = await self._open_session(resume_session_id, capabilities)
            yield {"type": "system", "subtype": "init", "session_id": session_id}

            pending = [prompt]
            stop_reason = "end_turn"
            while pending:
                async for event in self._prompt(pending.pop(0)):
                    yield event
                stop_reason = self._last_stop_reason
                if stop_reason not in _SUCCESS_STOP_REASONS:
                    break
                pending.extend(self._queued)
                self._queued.clear()

            self._finished = True
            result: dict[str, Any] = {
                "type": "result",
                "subtype": "success" if stop_reason in _SUCCESS_STOP_REASONS else "error",
                "stop_reason": stop_reason,
                "total_cost_usd": self._handler.cost_usd,
            }
            if stop_reason not in _SUCCESS_STOP_REASONS:
                result["errors"] = [f"Agent stopped: {stop_reason}"]
            self._returncode = 0
            yield result
        finally:
            self._finished = True
            await self.kill()
            if not stderr_task.done():
                stderr_task.cancel()
            if self._returncode is None:
                self._returncode = process.returncode

    async def _initialize(self) -> dict[str, Any]:
        """Send ACP initialize request, receive capabilities.

        Raises:
            AgentAuthenticationError: if the agent requires authentication.
        """
        assert self._connection is not None, "Call spawn() first"

        response = await self._connection.send_request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "clientCapabilities": {"fs": {"readTextFile": True, "writeTextFile": False}},
                "clientInfo": {"name": "remote-orchestrator", "version": __version__},
            },
        )
        response = response or {}

        auth_methods = response.get("authMethods", [])
        if auth_methods:
            agent_info = response.get("agentInfo", {})
            agent_name = agent_info.get("name", self._config.name)
            raise AgentAuthenticationError(agent_name, auth_methods)

        return response.get("agentCapabilities", {}) or {}

    async def _open_session(
        self, resume_session_id: str | None, capabilities: dict[str, Any]
    ) -> str:
        """Load the previous session when supported, otherwise create one."""
        assert self._connection is not None, "Call spawn() first"

        params = {"cwd": self._workspace, "mcpServers": []}
        try:
            if resume_session_id and capabilities.get("loadSession"):
                await asyncio.wait_for(
                    self._connection.send_request(
                        "session/load", {**params, "sessionId": resume_session_id}
                    ),
                    timeout=_SESSION_NEW_TIMEOUT,
                )
                self._session_id = resume_session_id
            else:
                response = await asyncio.wait_for(
                    self._connection.send_request("session/new", params),
                    timeout=_SESSION_NEW_TIMEOUT,
                )
                self._session_id = (response or {}).get("sessionId", "")
        except asyncio.TimeoutError:
            raise ProcessFailureError(
                f"Agent did not open a session within {_SESSION_NEW_TIMEOUT}s. "
                "The agent may require authentication, is unresponsive or hit rate limit."
            ) from None
        return self._session_id or ""

    async def _prompt(self, content: str) -> AsyncGenerator[dict[str, Any], None]:
        """Send session/prompt and yield normalized events until the turn ends."""
        assert self._connection is not None, "Call spawn() first"
        self._last_stop_reason = "unknown"

        prompt_task = asyncio.create_task(
            self._connection.send_request(
                "session/prompt",
                {
                    "sessionId": self._session_id,
                    "prompt": [{"type": "text", "text": content}],
                },
            )
        )

        try:
            while not prompt_task.done():
                if self._process is not None and self._process.returncode is not None:
                    raise ProcessFailureError(
                        f"Agent process exited unexpectedly (code {self._process.returncode})",
                        returncode=self._process.returncode,
                    )
                try:
                    event = await asyncio.wait_for(self._handler.events.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                yield event
        finally:
            if not prompt_task.done():
                prompt_task.cancel()

        await self._handler.flush_text()
        while not self._handler.events.empty():
            yield await self._handler.events.get()

        try:
            response = prompt_task.result() or {}
        except Exception as e:
            raise ProcessFailureError(f"Prompt failed: {e}") from e
        self._last_stop_reason = response.get("stopReason", "unknown")

    async def kill(self) -> None:
        """Close the connection and terminate the agent process."""
        if self._connection is not None:
            try:
                await self._connection.close()
            except Exception as e:
                logger.debug(f"Error closing ACP connection: {e}")
            self._connection = None
        await super().kill()
