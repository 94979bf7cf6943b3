"""Domain models for task execution, workers, and topology results."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from taskweave.orchestrator.errors import InvalidTransitionError
from taskweave.storage.common import utc_now


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.SUCCEEDED,
        TaskStatus.FAILED,
        TaskStatus.DEAD_LETTERED,
        TaskStatus.CANCELLED,
    },
)

# Anything not listed here is an illegal transition.
_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {
            TaskStatus.SUCCEEDED,
            TaskStatus.FAILED,
            TaskStatus.DEAD_LETTERED,
            TaskStatus.CANCELLED,
        },
    ),
}


class WorkerStatus(str, Enum):
    """Worker agent states."""

    IDLE = "idle"
    BUSY = "busy"
    DRAINING = "draining"
    STOPPED = "stopped"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class Outcome(str, Enum):
    """Tagged result variants of one execution."""

    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    TIMEOUT = "timeout"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"


RETRYABLE_OUTCOMES = frozenset({Outcome.TRANSIENT_FAILURE, Outcome.TIMEOUT})


class ErrorKind(str, Enum):
    """Structured error kinds exposed to callers."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    PARTIAL_FAILURE = "partial_failure"
    TIMEOUT = "timeout"
    CIRCUIT_OPEN = "circuit_open"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"
    RATE_LIMITED = "rate_limited"
    CANCELLED = "cancelled"
    NO_CONSENSUS = "no_consensus"


_OUTCOME_BY_KIND: dict[ErrorKind, Outcome] = {
    ErrorKind.TRANSIENT: Outcome.TRANSIENT_FAILURE,
    ErrorKind.RATE_LIMITED: Outcome.TRANSIENT_FAILURE,
    ErrorKind.PERMANENT: Outcome.PERMANENT_FAILURE,
    ErrorKind.PARTIAL_FAILURE: Outcome.PERMANENT_FAILURE,
    ErrorKind.MAX_ITERATIONS_EXCEEDED: Outcome.PERMANENT_FAILURE,
    ErrorKind.NO_CONSENSUS: Outcome.PERMANENT_FAILURE,
    ErrorKind.TIMEOUT: Outcome.TIMEOUT,
    ErrorKind.CIRCUIT_OPEN: Outcome.CIRCUIT_OPEN,
    ErrorKind.CANCELLED: Outcome.CANCELLED,
}


def outcome_for_kind(kind: ErrorKind) -> Outcome:
    """Map a structured error kind onto its result variant."""

    return _OUTCOME_BY_KIND[kind]


@dataclass(slots=True, frozen=True)
class ErrorInfo:
    """Caller-facing error detail: kind plus sanitized summary, never a traceback."""

    kind: ErrorKind
    summary: str
    reason_code: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "summary": self.summary,
            "reason_code": self.reason_code,
        }


@dataclass(slots=True)
class AttemptRecord:
    """One executor invocation (or fast-failed rejection) in a task's history."""

    attempt_no: int
    executor: str
    stage: str | None
    outcome: Outcome
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    error: ErrorInfo | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "attempt_no": self.attempt_no,
            "executor": self.executor,
            "stage": self.stage,
            "outcome": self.outcome.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "error": self.error.to_dict() if self.error is not None else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AttemptRecord:
        error_raw = payload.get("error")
        error = None
        if isinstance(error_raw, dict):
            error = ErrorInfo(
                kind=ErrorKind(error_raw["kind"]),
                summary=str(error_raw.get("summary", "")),
                reason_code=error_raw.get("reason_code"),
            )
        return cls(
            attempt_no=int(payload["attempt_no"]),
            executor=str(payload["executor"]),
            stage=payload.get("stage"),
            outcome=Outcome(payload["outcome"]),
            started_at=datetime.fromisoformat(payload["started_at"]),
            finished_at=datetime.fromisoformat(payload["finished_at"]),
            duration_seconds=float(payload["duration_seconds"]),
            error=error,
        )


@dataclass(slots=True)
class BranchResult:
    """One fan-out / swarm branch entry; failed branches keep their slot."""

    index: int
    branch: str
    outcome: Outcome
    output: Any = None
    error: ErrorInfo | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS


@dataclass(slots=True)
class ExecutionResult:
    """Tagged outcome of executing a task, a stage, or a single step."""

    task_id: str
    outcome: Outcome
    output: Any = None
    error: ErrorInfo | None = None
    duration_seconds: float = 0.0
    attempts: list[AttemptRecord] = field(default_factory=list)
    stage: str | None = None
    branches: list[BranchResult] | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @classmethod
    def success(cls, task_id: str, output: Any, **kwargs: Any) -> ExecutionResult:
        return cls(task_id=task_id, outcome=Outcome.SUCCESS, output=output, **kwargs)

    @classmethod
    def failure(cls, task_id: str, error: ErrorInfo, **kwargs: Any) -> ExecutionResult:
        return cls(
            task_id=task_id,
            outcome=outcome_for_kind(error.kind),
            error=error,
            **kwargs,
        )


class RetryBudget:
    """Task-wide retry allowance shared by every step and branch of one task."""

    def __init__(self, *, max_retries: int, used: int = 0) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        self.max_retries = max_retries
        self._used = min(used, max_retries)
        self._lock = threading.Lock()

    @property
    def used(self) -> int:
        with self._lock:
            return self._used

    @property
    def remaining(self) -> int:
        with self._lock:
            return self.max_retries - self._used

    def try_consume(self) -> bool:
        """Reserve one retry; False once the budget is spent."""

        with self._lock:
            if self._used >= self.max_retries:
                return False
            self._used += 1
            return True


@dataclass(slots=True)
class Task:
    """Unit of work tracked through the engine lifecycle."""

    payload: Any = None
    task_type: str = "default"
    task_id: str = field(default_factory=lambda: uuid4().hex)
    priority: int = 0
    max_retries: int = 3
    retries_attempted: int = 0
    timeout_seconds: float | None = None
    status: TaskStatus = TaskStatus.QUEUED
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    replay_of: str | None = None
    result: ExecutionResult | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status_to: TaskStatus) -> TaskStatus:
        """Move to ``status_to`` and return the previous status."""

        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if status_to not in allowed:
            raise InvalidTransitionError(
                f"Task {self.task_id} cannot move from {self.status.value} to {status_to.value}",
            )
        previous = self.status
        self.status = status_to
        now = utc_now()
        if status_to == TaskStatus.RUNNING:
            self.started_at = now
        if status_to in TERMINAL_STATUSES:
            self.finished_at = now
        return previous


@dataclass(slots=True)
class WorkerAgent:
    """Readable worker state tracked by the pool."""

    worker_id: str
    status: WorkerStatus = WorkerStatus.IDLE
    current_task_id: str | None = None
    processed: int = 0
    started_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class CircuitBreakerState:
    """Mutable breaker counters for one protected dependency."""

    name: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    opened_at: float | None = None
    last_failure_at: float | None = None
    half_open_in_flight: int = 0


@dataclass(slots=True)
class TaskEvent:
    """Structured lifecycle event emitted to the observability hub."""

    event_type: str
    task_id: str | None
    timestamp: datetime = field(default_factory=utc_now)
    status_from: TaskStatus | None = None
    status_to: TaskStatus | None = None
    duration_seconds: float | None = None
    details: dict[str, Any] = field(default_factory=dict)
