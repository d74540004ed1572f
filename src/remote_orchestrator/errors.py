"""Error taxonomy for the orchestration engine.

InvalidArgumentError, NotFoundError and InvalidStateError are raised
synchronously to the caller. ProcessFailureError never crosses the
asynchronous create/resume boundary: the worker turns it into a
``failed`` status and an ``error`` event.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all engine errors."""


class InvalidArgumentError(OrchestratorError):
    """Raised when caller input is unusable (e.g. empty task)."""


class NotFoundError(OrchestratorError):
    """Raised when an orchestration id is unknown."""

    def __init__(self, orchestration_id: str) -> None:
        self.orchestration_id = orchestration_id
        super().__init__(f"Orchestration {orchestration_id} not found")


class InvalidStateError(OrchestratorError):
    """Raised when an operation is not valid for the current status."""


class ProcessFailureError(OrchestratorError):
    """Raised by drivers when the driving process cannot be started or is lost."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        self.returncode = returncode
        super().__init__(message)
