"""Orchestration session manager.

Ties together the driving-process drivers, the event parser, the subtask
tracker, the message store and the broadcast channel. Each orchestration
is worked by its own ``_OrchestrationWorker``, which exclusively owns the
orchestration's lifecycle, subtask tracker and live process; callers only
observe progress through published events.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable

from remote_orchestrator.broadcast import BroadcastChannel, Subscription
from remote_orchestrator.config import OrchestratorConfig
from remote_orchestrator.cost import CostTracker
from remote_orchestrator.drivers.base import AgentDriver
from remote_orchestrator.drivers.registry import create_driver
from remote_orchestrator.errors import (
    InvalidArgumentError,
    InvalidStateError,
    ProcessFailureError,
)
from remote_orchestrator.lifecycle import OrchestrationLifecycle, map_status
from remote_orchestrator.parser import (
    event_type,
    extract_tool_results,
    message_content,
    message_text,
    parse_content,
    result_cost,
    result_errors,
    serialize_blocks,
)
from remote_orchestrator.persistence import OrchestrationPersistence
from remote_orchestrator.store import MessageStore
from remote_orchestrator.subtasks import SubtaskTracker
from remote_orchestrator.types import (
    Message,
    Orchestration,
    OrchestrationStatus,
    OrchestratorEvent,
    Role,
    Subtask,
    TERMINAL_STATUSES,
    ToolInvocation,
)

logger = logging.getLogger(__name__)

DriverFactory = Callable[[str], AgentDriver]

_NAME_LENGTH = 100


def build_continuation_prompt(history: list[Message], message: str) -> str:
    """Prompt a fresh process with the transcript so far plus the new message."""
    turns = []
    for m in history:
        text = message_text(m.role, m.content)
        if m.role == Role.USER:
            turns.append(f"User: {text}")
        elif text:
            turns.append(f"Assistant: {text}")
    return (
        "Previous conversation:\n"
        + "\n\n".join(turns)
        + f"\n\nNew message from user: {message}"
    )


class _OrchestrationWorker:
    """Drives one orchestration's process runs and applies their events."""

    def __init__(self, manager: OrchestrationSessionManager, record: Orchestration) -> None:
        self._manager = manager
        self._store = manager.store
        self.record = record
        self.lifecycle = OrchestrationLifecycle(record)
        self.lifecycle.on_state_change(self._on_state_change)
        self.tracker = SubtaskTracker(record.id, self._store.get_subtasks(record.id))
        self.driver: AgentDriver | None = None
        self.cancelling = False
        # Held by resume and cancel while they stop or start runs
        self.control = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._closed = record.is_terminal
        self._terminated = asyncio.Event()
        if record.is_terminal:
            self._terminated.set()

    @property
    def is_live(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- process runs ---------------------------------------------------------

    def start(self, prompt: str, resume_session_id: str | None = None) -> None:
        """Start a process run in the background."""
        self._task = asyncio.create_task(
            self._run(prompt, resume_session_id),
            name=f"orchestration-{self.record.id}",
        )

    async def stop(self) -> None:
        """Stop the current run without a terminal transition."""
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        if self._task is task:
            self._task = None
        for subtask in self.tracker.fail_running():
            self._subtask_completed(subtask)

    async def wait(self) -> None:
        await self._terminated.wait()

    async def _run(self, prompt: str, resume_session_id: str | None) -> None:
        orchestration_id = self.record.id
        costs = CostTracker()
        try:
            self.driver = driver = self._manager.driver_factory(self.record.project_path)
            events = driver.spawn(prompt, resume_session_id)
            try:
                async for event in events:
                    self._handle_event(event, costs)
                    self._store.flush(orchestration_id)
                    if self.lifecycle.is_terminal:
                        break
            finally:
                await events.aclose()
        except ProcessFailureError as e:
            self._fail(str(e))
            return
        except asyncio.CancelledError:
            logger.info(f"[orchestration {orchestration_id}] process run stopped")
            raise
        except Exception as e:
            logger.error(f"[orchestration {orchestration_id}] worker error: {e}")
            self._fail(f"Unexpected error: {e}")
            return

        if self.lifecycle.is_terminal:
            return
        returncode = driver.returncode
        if returncode in (0, None):
            self._terminate(OrchestrationStatus.COMPLETED)
        else:
            error = f"Process exited with code {returncode}"
            if driver.stderr_tail:
                error += f": {driver.stderr_tail}"
            self._fail(error)

    # -- event handling -------------------------------------------------------

    def _handle_event(self, event: dict[str, Any], costs: CostTracker) -> None:
        if self.lifecycle.state == OrchestrationStatus.PLANNING:
            self.lifecycle.transition(OrchestrationStatus.EXECUTING)

        kind = event_type(event)
        if kind == "system":
            self._handle_system(event)
        elif kind == "assistant":
            self._handle_assistant(event)
        elif kind == "user":
            self._handle_tool_results(event, costs)
        elif kind == "result":
            self._handle_result(event, costs)
        else:
            logger.debug(f"[orchestration {self.record.id}] ignoring event type {kind!r}")

    def _handle_system(self, event: dict[str, Any]) -> None:
        subtype = event.get("subtype")
        if subtype == "init":
            session_id = event.get("session_id")
            if isinstance(session_id, str) and session_id and session_id != self.record.session_id:
                self.record.session_id = session_id
                logger.info(f"[orchestration {self.record.id}] session {session_id}")
        elif subtype == "status":
            target = map_status(event.get("status"))
            if target in TERMINAL_STATUSES or target == self.lifecycle.state:
                return
            if self.lifecycle.can_transition(target):
                self.lifecycle.transition(target)
            else:
                logger.debug(
                    f"[orchestration {self.record.id}] ignoring status "
                    f"{self.lifecycle.state.value} -> {target.value}"
                )

    def _handle_assistant(self, event: dict[str, Any]) -> None:
        blocks = parse_content(message_content(event))
        if not blocks:
            return

        message = self._store.append(self.record.id, Role.ASSISTANT, serialize_blocks(blocks))
        if message is not None:
            self._publish(OrchestratorEvent.message(message))

        invocations = [b for b in blocks if isinstance(b, ToolInvocation)]
        for subtask in self.tracker.observe(invocations):
            self._store.put_subtask(subtask)
            self._publish(OrchestratorEvent.subtask_started(subtask))
            if self.lifecycle.state == OrchestrationStatus.EXECUTING:
                self.lifecycle.transition(OrchestrationStatus.ITERATING)

    def _handle_tool_results(self, event: dict[str, Any], costs: CostTracker) -> None:
        for result in extract_tool_results(event):
            subtask = self.tracker.complete(result)
            if subtask is None:
                continue
            if result.cost_usd:
                self.record.total_cost_usd += costs.record_subtask(subtask.id, result.cost_usd)
            self._subtask_completed(subtask)

        if self.lifecycle.state == OrchestrationStatus.ITERATING and not self.tracker.running:
            self.lifecycle.transition(OrchestrationStatus.EXECUTING)

    def _handle_result(self, event: dict[str, Any], costs: CostTracker) -> None:
        reported = result_cost(event)
        if reported is not None:
            self.record.total_cost_usd += costs.record_reported_total(reported)
        logger.info(f"[orchestration {self.record.id}] {costs.summary()}")

        subtype = event.get("subtype")
        if subtype == "success" and event.get("is_error") is not True:
            self._terminate(OrchestrationStatus.COMPLETED)
        else:
            errors = result_errors(event)
            self._fail("; ".join(errors) or f"Process reported {subtype or 'an error'}")

    # -- transitions ----------------------------------------------------------

    def _subtask_completed(self, subtask: Subtask) -> None:
        self._store.put_subtask(subtask)
        self._publish(OrchestratorEvent.subtask_completed(subtask))

    def _fail(self, error: str) -> None:
        logger.error(f"[orchestration {self.record.id}] failed: {error}")
        self._terminate(OrchestrationStatus.FAILED, error)

    def _terminate(self, target: OrchestrationStatus, error: str | None = None) -> None:
        """Enter a terminal status; the status-change is the last event published."""
        if self.lifecycle.is_terminal:
            return
        for subtask in self.tracker.fail_running():
            self._subtask_completed(subtask)
        if target == OrchestrationStatus.COMPLETED:
            if not self.lifecycle.can_transition(target):
                self.lifecycle.transition(OrchestrationStatus.EXECUTING)
            self._publish(
                OrchestratorEvent.completed(self.record.id, self.record.total_cost_usd)
            )
        elif error is not None:
            self._publish(OrchestratorEvent.error(self.record.id, error))
        self.lifecycle.transition(target)

    def _on_state_change(self, old: OrchestrationStatus, new: OrchestrationStatus) -> None:
        self._publish(OrchestratorEvent.status_change(self.record.id, new))
        self._store.flush(self.record.id, force=True)
        if new in TERMINAL_STATUSES:
            self._closed = True
            self._terminated.set()
            self._manager._release(self)

    def _publish(self, event: OrchestratorEvent) -> None:
        if self._closed:
            logger.debug(f"[orchestration {self.record.id}] dropping {event.type} after close")
            return
        self._manager.channel.publish(event)


class OrchestrationSessionManager:
    """Creates, resumes and cancels orchestrations.

    Usage:
        manager = OrchestrationSessionManager(OrchestratorConfig.from_env())
        subscription = manager.subscribe()
        orchestration_id = await manager.create("fix the bug", "demo", "/path/demo")
        async for event in subscription:
            ...
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        store: MessageStore | None = None,
        channel: BroadcastChannel | None = None,
        driver_factory: DriverFactory | None = None,
    ) -> None:
        self.config = config or OrchestratorConfig()
        if store is None:
            persistence = (
                OrchestrationPersistence(self.config.data_dir) if self.config.persist else None
            )
            store = MessageStore(persistence, snapshot_interval=self.config.snapshot_interval)
        self.store = store
        self.channel = channel or BroadcastChannel(self.config.subscriber_queue_size)
        self.driver_factory: DriverFactory = driver_factory or (
            lambda workspace: create_driver(self.config, workspace)
        )
        self._workers: dict[str, _OrchestrationWorker] = {}

    def _worker(self, orchestration_id: str) -> _OrchestrationWorker:
        worker = self._workers.get(orchestration_id)
        if worker is None:
            # Restored from persistence: no live process yet
            worker = _OrchestrationWorker(self, self.store.get(orchestration_id))
            if not worker.record.is_terminal:
                self._workers[orchestration_id] = worker
        return worker

    def _release(self, worker: _OrchestrationWorker) -> None:
        """Forget a worker whose orchestration reached a terminal status."""
        if self._workers.get(worker.record.id) is worker:
            del self._workers[worker.record.id]

    # -- commands -------------------------------------------------------------

    async def create(self, task: str, project: str, project_path: str = "") -> str:
        """Start an orchestration and return its id without waiting for output."""
        if not isinstance(task, str) or not task.strip():
            raise InvalidArgumentError("Task must be a non-empty string")
        if not isinstance(project, str) or not project.strip():
            raise InvalidArgumentError("Project must be a non-empty string")
        if not isinstance(project_path, str):
            raise InvalidArgumentError("Project path must be a string")

        record = Orchestration(
            id=str(uuid.uuid4()),
            name=task[:_NAME_LENGTH],
            project=project,
            original_task=task,
            project_path=project_path or self.config.resolve_project_path(project),
        )
        self.store.add(record)
        worker = _OrchestrationWorker(self, record)
        self._workers[record.id] = worker

        message = self.store.append(record.id, Role.USER, task, dedupe=False)
        assert message is not None
        self.channel.publish(OrchestratorEvent.message(message))
        self.store.flush(record.id, force=True)

        logger.info(f"[orchestration {record.id}] created for project {project}")
        worker.start(task)
        return record.id

    async def resume(self, orchestration_id: str, message: str) -> None:
        """Send a follow-up instruction to a non-terminal orchestration."""
        record = self.store.get(orchestration_id)
        self._check_resumable(record)
        if not isinstance(message, str) or not message.strip():
            raise InvalidArgumentError("Message must be a non-empty string")
        worker = self._worker(orchestration_id)
        if worker.cancelling:
            raise InvalidStateError(f"Orchestration {orchestration_id} is being cancelled")

        async with worker.control:
            self._check_resumable(record)
            if worker.cancelling:
                raise InvalidStateError(f"Orchestration {orchestration_id} is being cancelled")

            history = self.store.get_messages(orchestration_id)
            stored = self.store.append(orchestration_id, Role.USER, message, dedupe=False)
            assert stored is not None
            self.channel.publish(OrchestratorEvent.message(stored))

            delivered = False
            if worker.is_live and worker.driver is not None and worker.driver.supports_send:
                try:
                    await worker.driver.send(message)
                    delivered = True
                    logger.info(f"[orchestration {orchestration_id}] message sent to live process")
                except InvalidStateError as e:
                    logger.info(f"[orchestration {orchestration_id}] live process closed: {e}")

            if not delivered:
                await worker.stop()
                # Cancel may have arrived, or the run finished, while stopping
                self._check_resumable(record)
                if worker.cancelling:
                    raise InvalidStateError(
                        f"Orchestration {orchestration_id} is being cancelled"
                    )

            if worker.lifecycle.state != OrchestrationStatus.EXECUTING:
                worker.lifecycle.transition(OrchestrationStatus.EXECUTING)
            self.store.flush(orchestration_id, force=True)

            if not delivered:
                if record.session_id:
                    worker.start(message, resume_session_id=record.session_id)
                else:
                    worker.start(build_continuation_prompt(history, message))

    @staticmethod
    def _check_resumable(record: Orchestration) -> None:
        if record.is_terminal:
            raise InvalidStateError(f"Orchestration {record.id} is {record.status.value}")

    async def cancel(self, orchestration_id: str) -> bool:
        """Stop an orchestration. Returns False if unknown or already terminal."""
        if orchestration_id not in self.store:
            return False
        if self.store.get(orchestration_id).is_terminal:
            return False
        worker = self._worker(orchestration_id)
        if worker.cancelling:
            return False

        worker.cancelling = True
        try:
            # Waits for an in-flight resume, then stops whatever run it started
            async with worker.control:
                if worker.record.is_terminal:
                    return False
                await worker.stop()
                worker._terminate(OrchestrationStatus.CANCELLED)
        finally:
            worker.cancelling = False
        logger.info(f"[orchestration {orchestration_id}] cancelled")
        return True

    async def shutdown(self) -> None:
        """Cancel every orchestration with a live process."""
        for orchestration_id, worker in list(self._workers.items()):
            if worker.is_live:
                await self.cancel(orchestration_id)

    async def wait(self, orchestration_id: str) -> Orchestration:
        """Wait until an orchestration reaches a terminal status."""
        worker = self._worker(orchestration_id)
        await worker.wait()
        return worker.record

    # -- reads ----------------------------------------------------------------

    def get(self, orchestration_id: str) -> Orchestration:
        return self.store.get(orchestration_id)

    def get_messages(self, orchestration_id: str) -> list[Message]:
        return self.store.get_messages(orchestration_id)

    def get_subtasks(self, orchestration_id: str) -> list[Subtask]:
        return self.store.get_subtasks(orchestration_id)

    def list(self, project: str | None = None) -> list[Orchestration]:
        return self.store.list(project)

    def subscribe(self) -> Subscription:
        return self.channel.subscribe()
