"""Driver interface for the external agent process behind an orchestration."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, AsyncGenerator, Sequence

from remote_orchestrator.config import DriverConfig, SubAgentDefinition
from remote_orchestrator.errors import InvalidStateError, ProcessFailureError

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 20


class AgentDriver(ABC):
    """Narrow interface over one driving process.

    ``spawn`` starts the process and yields raw event dicts until it
    exits; ``kill`` terminates the whole process tree. Drivers that can
    accept follow-up instructions while live set ``supports_send``.
    """

    supports_send = False

    def __init__(
        self,
        config: DriverConfig,
        workspace: str,
        *,
        max_turns: int = 100,
        kill_timeout: float = 5.0,
        system_prompt: str | None = None,
        subagents: Sequence[SubAgentDefinition] = (),
    ) -> None:
        self._config = config
        self._workspace = os.path.abspath(os.path.expanduser(workspace))
        self._max_turns = max_turns
        self._kill_timeout = kill_timeout
        self._system_prompt = system_prompt
        self._subagents = list(subagents)
        self._process: asyncio.subprocess.Process | None = None
        self._returncode: int | None = None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

    @property
    def returncode(self) -> int | None:
        """Exit code once the event stream is exhausted."""
        return self._returncode

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @abstractmethod
    def spawn(
        self, prompt: str, resume_session_id: str | None = None
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Start the process with ``prompt`` and stream its raw events."""

    async def send(self, message: str) -> None:
        """Deliver a follow-up instruction to the live process."""
        raise InvalidStateError(f"Driver '{self._config.id}' cannot accept messages")

    async def kill(self) -> None:
        """Terminate the process tree and clean up."""
        if self._process is not None:
            await terminate_process_tree(self._process, self._kill_timeout)

    def _check_workspace(self) -> None:
        if not os.path.isdir(self._workspace):
            raise ProcessFailureError(f"Project path does not exist: {self._workspace}")

    async def _create_process(self, cmd: list[str], **kwargs: Any) -> asyncio.subprocess.Process:
        """Spawn ``cmd`` in its own process group inside the workspace."""
        self._check_workspace()
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._workspace,
                start_new_session=True,
                **kwargs,
            )
        except FileNotFoundError as e:
            raise ProcessFailureError(f"Driving process command not found: {cmd[0]}") from e
        except OSError as e:
            raise ProcessFailureError(f"Driving process failed to start: {e}") from e
        logger.info(f"Spawned {self._config.name} (pid {self._process.pid}) in {self._workspace}")
        return self._process

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        """Read stderr line-by-line, keeping a tail for error reports."""
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.debug(f"[agent stderr] {text}")
                self._stderr_tail.append(text)


async def terminate_process_tree(
    process: asyncio.subprocess.Process, timeout: float
) -> None:
    """SIGTERM the process group, then SIGKILL it if it does not exit in time."""
    if process.returncode is not None:
        return
    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout)
        return
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} ignored SIGTERM, killing")
    _signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
    try:
        await asyncio.wait_for(process.wait(), timeout)
    except asyncio.TimeoutError:
        logger.error(f"Process {process.pid} did not exit after SIGKILL")


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(os.getpgid(process.pid), sig)
        else:
            process.send_signal(sig)
    except (ProcessLookupError, PermissionError):
        pass  # already gone
