"""Driver for the Claude Code CLI in stream-json print mode."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, AsyncGenerator

from remote_orchestrator.config import agents_json
from remote_orchestrator.drivers.base import AgentDriver
from remote_orchestrator.parser import parse_stream_line

logger = logging.getLogger(__name__)

# stream-json lines carry whole tool outputs; the asyncio default of 64 KiB is too small
_STREAM_LIMIT = 16 * 1024 * 1024


class CliDriver(AgentDriver):
    """Runs one ``claude -p`` process per instruction.

    The CLI is single-shot: it exits after its final ``result`` event, so
    follow-up instructions need a fresh process (``--resume`` when the
    session id is known).
    """

    def build_command(self, prompt: str, resume_session_id: str | None = None) -> list[str]:
        """Build the argv for one CLI run."""
        cmd = [
            self._config.command,
            *self._config.args,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--max-turns",
            str(self._max_turns),
            "--dangerously-skip-permissions",
        ]
        if self._system_prompt:
            cmd.extend(["--append-system-prompt", self._system_prompt])
        if self._subagents:
            cmd.extend(["--agents", agents_json(self._subagents)])
        if resume_session_id:
            cmd.extend(["--resume", resume_session_id])
        return cmd

    @staticmethod
    def build_env() -> dict[str, str]:
        # Without an API key the CLI falls back to its subscription login
        env = os.environ.copy()
        env.pop("ANTHROPIC_API_KEY", None)
        return env

    async def spawn(
        self, prompt: str, resume_session_id: str | None = None
    ) -> AsyncGenerator[dict[str, Any], None]:
        cmd = self.build_command(prompt, resume_session_id)
        process = await self._create_process(
            cmd,
            stdin=asyncio.subprocess.DEVNULL,
            env=self.build_env(),
            limit=_STREAM_LIMIT,
        )
        assert process.stdout is not None
        assert process.stderr is not None
        stderr_task = asyncio.create_task(self._read_stderr(process.stderr))

        try:
            while True:
                try:
                    line = await process.stdout.readline()
                except ValueError:
                    logger.warning("Skipping oversized stream-json line")
                    continue
                if not line:
                    break
                event = parse_stream_line(line)
                if event is not None:
                    logger.debug(f"[agent event] {event.get('type')}")
                    yield event

            self._returncode = await process.wait()
            await stderr_task
            logger.info(f"{self._config.name} exited with code {self._returncode}")
        finally:
            if process.returncode is None:
                await self.kill()
            if not stderr_task.done():
                stderr_task.cancel()
            if self._returncode is None:
                self._returncode = process.returncode
