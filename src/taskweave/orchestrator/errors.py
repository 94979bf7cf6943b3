"""Exception taxonomy raised at engine seams and by executors."""

from __future__ import annotations


class TaskweaveError(RuntimeError):
    """Base class for engine errors."""


class ExecutorError(TaskweaveError):
    """Executor failure with explicit retryability hint."""

    transient: bool = False

    def __init__(self, message: str, *, reason_code: str | None = None) -> None:
        super().__init__(message)
        self.reason_code = reason_code


class TransientError(ExecutorError):
    """Retryable failure: network timeout, rate limit, temporary unavailability."""

    transient = True


class PermanentError(ExecutorError):
    """Non-retryable failure: invalid input, not found, authorization."""

    transient = False


class ExecutionCancelledError(TaskweaveError):
    """Raised by cooperative executors once their deadline is cancelled."""


class QueueFullError(TaskweaveError):
    """Backpressure signal: the queue is at capacity."""


class QueueClosedError(TaskweaveError):
    """Raised when enqueueing after queue shutdown."""


class InvalidTransitionError(TaskweaveError):
    """Illegal task lifecycle transition."""


class TaskNotFoundError(TaskweaveError, KeyError):
    """Unknown task id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Task not found"
