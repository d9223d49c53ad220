"""Error taxonomy shared by pools, agents and the orchestrator."""
from __future__ import annotations

from typing import Optional


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestration layer."""

    retryable = False


class ValidationError(OrchestratorError):
    """Unknown agent or task type, or malformed task input. Never retried."""


class ExecutionError(OrchestratorError):
    """A task handler raised or reported failure."""

    retryable = True

    def __init__(self, message: str, *, task_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class TaskTimeoutError(ExecutionError):
    """The job exceeded its timeout; counted as an execution failure."""


class StalledJobError(ExecutionError):
    """The job stalled more than once."""


class StoreUnavailableError(OrchestratorError):
    """The task store could not be reached."""


class PoolClosedError(OrchestratorError):
    """The worker pool has been closed and accepts no more work."""


class JobNotFoundError(OrchestratorError):
    """No job or task matches the given identifier."""


class JobStateError(OrchestratorError):
    """The requested operation is not valid in the job's current state."""


class NotInitializedError(OrchestratorError):
    """The orchestrator was used before initialize() completed."""
