"""Extension communication protocol.

JSON over stdin/stdout for the dashboard backend. The backend spawns
`python -m remote_orchestrator --mode extension` and communicates via
newline-delimited JSON.

Backend -> Orchestrator (stdin):
  {"type": "create", "task": "...", "project": "demo", "projectPath": "/path"}
  {"type": "resume", "orchestrationId": "...", "message": "..."}
  {"type": "cancel", "orchestrationId": "..."}
  {"type": "get", "orchestrationId": "..."}
  {"type": "list", "project": "demo"}

Orchestrator -> Backend (stdout):
  {"type": "created", "orchestrationId": "..."}
  {"type": "resumed", "orchestrationId": "..."}
  {"type": "cancelled", "orchestrationId": "...", "cancelled": true}
  {"type": "orchestration", "orchestration": {...}, "messages": [...], "subtasks": [...]}
  {"type": "orchestrations", "orchestrations": [...]}
  {"type": "event", "event": {"type": "status-change", "orchestrationId": "...", ...}}
  {"type": "error", "code": "NotFoundError", "message": "..."}

A command carrying "requestId" gets it echoed on its reply.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

from remote_orchestrator.broadcast import Subscription
from remote_orchestrator.errors import InvalidArgumentError, OrchestratorError
from remote_orchestrator.session import OrchestrationSessionManager

logger = logging.getLogger(__name__)


def _emit(msg: dict[str, Any]) -> None:
    """Write a JSON message to stdout (the backend reads this)."""
    line = json.dumps(msg, default=str)
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def _read_command() -> dict[str, Any] | None:
    """Read a JSON command from stdin. Returns None on EOF."""
    line = sys.stdin.readline()
    if not line:
        return None
    try:
        cmd = json.loads(line.strip())
    except json.JSONDecodeError:
        return {"type": "__invalid__", "raw": line.strip()[:200]}
    return cmd if isinstance(cmd, dict) else {"type": "__invalid__", "raw": str(cmd)[:200]}


def _require(cmd: dict[str, Any], *keys: str) -> str:
    """Return the first string value found under ``keys``."""
    for key in keys:
        value = cmd.get(key)
        if isinstance(value, str) and value:
            return value
    raise InvalidArgumentError(f"Missing field: {keys[0]}")


def _optional(cmd: dict[str, Any], *keys: str) -> str:
    """Return the first value present under ``keys``, or "" when none is.

    A present value that is not a string is rejected.
    """
    for key in keys:
        value = cmd.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise InvalidArgumentError(f"Field {key} must be a string")
        if value:
            return value
    return ""


class ExtensionProtocol:
    """Runs the orchestration engine in extension mode.

    Reads JSON commands from stdin, emits replies and relays every
    broadcast event to stdout.
    """

    def __init__(self, manager: OrchestrationSessionManager):
        self._manager = manager
        self._relay_task: asyncio.Task[None] | None = None

    async def run(self) -> None:
        """Main extension mode loop.

        Reads commands from stdin and processes them sequentially. EOF
        cancels every live orchestration and returns.
        """
        subscription = self._manager.subscribe()
        self._relay_task = asyncio.create_task(self._relay(subscription))
        try:
            while True:
                cmd = await asyncio.get_running_loop().run_in_executor(None, _read_command)
                if cmd is None:
                    break
                await self.handle(cmd)
        finally:
            await self._manager.shutdown()
            subscription.close()
            await self._relay_task

    async def _relay(self, subscription: Subscription) -> None:
        async for event in subscription:
            _emit({"type": "event", "event": event.to_dict()})
        if subscription.dropped:
            logger.warning("Event relay fell behind and was dropped")

    async def handle(self, cmd: dict[str, Any]) -> None:
        """Dispatch one command and emit its reply."""
        cmd_type = cmd.get("type", "")
        try:
            if cmd_type == "create":
                reply = await self._handle_create(cmd)
            elif cmd_type == "resume":
                reply = await self._handle_resume(cmd)
            elif cmd_type == "cancel":
                reply = await self._handle_cancel(cmd)
            elif cmd_type == "get":
                reply = self._handle_get(cmd)
            elif cmd_type == "list":
                reply = self._handle_list(cmd)
            elif cmd_type == "__invalid__":
                raise InvalidArgumentError(f"Invalid JSON command: {cmd.get('raw', '')}")
            else:
                raise InvalidArgumentError(f"Unknown command type: {cmd_type}")
        except OrchestratorError as e:
            reply = {"type": "error", "code": type(e).__name__, "message": str(e)}
        except Exception as e:
            logger.error(f"Command {cmd_type!r} failed: {e}")
            reply = {"type": "error", "code": "InternalError", "message": str(e)}

        if "requestId" in cmd:
            reply["requestId"] = cmd["requestId"]
        _emit(reply)

    async def _handle_create(self, cmd: dict[str, Any]) -> dict[str, Any]:
        orchestration_id = await self._manager.create(
            _optional(cmd, "task"),
            _optional(cmd, "project"),
            _optional(cmd, "projectPath", "project_path"),
        )
        return {"type": "created", "orchestrationId": orchestration_id}

    async def _handle_resume(self, cmd: dict[str, Any]) -> dict[str, Any]:
        orchestration_id = _require(cmd, "orchestrationId", "orchestration_id")
        await self._manager.resume(orchestration_id, _optional(cmd, "message"))
        return {"type": "resumed", "orchestrationId": orchestration_id}

    async def _handle_cancel(self, cmd: dict[str, Any]) -> dict[str, Any]:
        orchestration_id = _require(cmd, "orchestrationId", "orchestration_id")
        cancelled = await self._manager.cancel(orchestration_id)
        return {"type": "cancelled", "orchestrationId": orchestration_id, "cancelled": cancelled}

    def _handle_get(self, cmd: dict[str, Any]) -> dict[str, Any]:
        orchestration_id = _require(cmd, "orchestrationId", "orchestration_id")
        orchestration = self._manager.get(orchestration_id)
        return {
            "type": "orchestration",
            "orchestration": orchestration.to_dict(),
            "messages": [m.to_dict() for m in self._manager.get_messages(orchestration_id)],
            "subtasks": [s.to_dict() for s in self._manager.get_subtasks(orchestration_id)],
        }

    def _handle_list(self, cmd: dict[str, Any]) -> dict[str, Any]:
        project = _optional(cmd, "project") or None
        return {
            "type": "orchestrations",
            "orchestrations": [o.to_dict() for o in self._manager.list(project)],
        }
