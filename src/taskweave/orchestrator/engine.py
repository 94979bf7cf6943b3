"""Task engine: submission, lifecycle tracking, dispatch, and shutdown."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from taskweave.config import Settings
from taskweave.orchestrator.backend.base import CancellationToken
from taskweave.orchestrator.cache import ResultCache, TTLCache
from taskweave.orchestrator.circuit_breaker import BreakerStateStore, CircuitBreakerRegistry
from taskweave.orchestrator.errors import TaskNotFoundError
from taskweave.orchestrator.metrics import MetricsSnapshot
from taskweave.orchestrator.models import (
    CircuitBreakerState,
    CircuitState,
    ErrorInfo,
    ErrorKind,
    ExecutionResult,
    Outcome,
    Task,
    TaskStatus,
    WorkerAgent,
)
from taskweave.orchestrator.observability import EventFilter, EventPredicate, EventSubscription, ObservabilityHub
from taskweave.orchestrator.repository import DeadLetterStore, ErrorContext, InMemoryDeadLetterStore
from taskweave.orchestrator.resilience import ExecutionContext, ResilienceWrapper, TokenBucketRateLimiter
from taskweave.orchestrator.sanitization import summarize_exception
from taskweave.orchestrator.task_queue import TaskQueue
from taskweave.orchestrator.topology import DispatchContext, Topology
from taskweave.orchestrator.worker import WorkerPool

logger = logging.getLogger(__name__)

_DEAD_LETTER_OUTCOMES = frozenset(
    {Outcome.TRANSIENT_FAILURE, Outcome.TIMEOUT, Outcome.CIRCUIT_OPEN},
)
_SHUTDOWN_GRACE_SECONDS = 1.0


@dataclass(slots=True)
class _TaskRecord:
    task: Task
    token: CancellationToken = field(default_factory=CancellationToken)
    done: threading.Event = field(default_factory=threading.Event)


class TaskEngine:
    """Accepts tasks, runs them through topologies on a worker pool.

    Task types map to topologies; tasks with an unregistered type use
    ``default_topology``. Executor errors never escape: each task ends in
    exactly one terminal status with an :class:`ExecutionResult`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        topologies: Mapping[str, Topology] | None = None,
        default_topology: Topology | None = None,
        settings: Settings | None = None,
        dead_letters: DeadLetterStore | None = None,
        hub: ObservabilityHub | None = None,
        breaker_store: BreakerStateStore | None = None,
        rate_limiters: dict[str, TokenBucketRateLimiter] | None = None,
        cache: ResultCache | None = None,
        rng: random.Random | None = None,
        autostart: bool = True,
    ) -> None:
        self.settings = settings or Settings()
        self.settings.validate()
        self.hub = hub or ObservabilityHub()
        self.breakers = CircuitBreakerRegistry(
            config=self.settings.breaker.config(),
            store=breaker_store,
            listener=self._on_circuit_transition,
        )
        if cache is None and self.settings.cache.max_entries > 0:
            cache = TTLCache(
                max_entries=self.settings.cache.max_entries,
                ttl_seconds=self.settings.cache.ttl_seconds,
            )
        self.wrapper = ResilienceWrapper(
            hub=self.hub,
            breakers=self.breakers,
            retry_policy=self.settings.retry.policy(),
            rate_limiters=rate_limiters,
            cache=cache,
            rng=rng,
            default_timeout_seconds=self.settings.retry.task_timeout_seconds,
        )
        self.queue = TaskQueue(
            capacity=self.settings.queue.capacity,
            ordering=self.settings.queue.ordering,
        )
        self.dead_letters: DeadLetterStore = dead_letters or InMemoryDeadLetterStore()
        self.pool = WorkerPool(
            queue=self.queue,
            handler=self._handle,
            size=self.settings.worker.workers,
            scaling=self.settings.worker.scaling_policy(),
            hub=self.hub,
        )
        self.default_topology = default_topology
        self._topologies: dict[str, Topology] = dict(topologies or {})
        self._tasks: dict[str, _TaskRecord] = {}
        self._lock = threading.Lock()
        self._closed = False
        if autostart:
            self.start()

    def __enter__(self) -> TaskEngine:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.drain()

    def start(self) -> None:
        self.pool.start()

    def register(self, task_type: str, topology: Topology) -> None:
        with self._lock:
            self._topologies[task_type] = topology

    def new_task(self, payload: Any, *, task_type: str = "default", **kwargs: Any) -> Task:
        """Build a task carrying the configured retry and timeout defaults."""

        kwargs.setdefault("max_retries", self.settings.retry.max_retries)
        kwargs.setdefault("timeout_seconds", self.settings.retry.task_timeout_seconds)
        return Task(payload=payload, task_type=task_type, **kwargs)

    def submit(self, task: Task) -> str:
        """Enqueue ``task``; raises :class:`QueueFullError` under backpressure."""

        if task.status != TaskStatus.QUEUED:
            raise ValueError(f"Only queued tasks can be submitted; {task.task_id} is {task.status.value}.")
        # Holding the lock until "queued" is emitted keeps it ahead of "running".
        with self._lock:
            if task.task_id in self._tasks:
                raise ValueError(f"Duplicate task id: {task.task_id}")
            self.queue.enqueue(task)
            self._tasks[task.task_id] = _TaskRecord(task=task)
            self.hub.event(
                "queued",
                task.task_id,
                status_to=TaskStatus.QUEUED,
                details={
                    "task_type": task.task_type,
                    "priority": task.priority,
                    "max_retries": task.max_retries,
                    "replay_of": task.replay_of,
                },
            )
        self.hub.metrics.observe("queue_depth", value=self.queue.depth)
        return task.task_id

    def get_task(self, task_id: str) -> Task:
        return self._record(task_id).task

    def status(self, task_id: str) -> TaskStatus:
        return self._record(task_id).task.status

    def result(self, task_id: str, timeout: float | None = None) -> ExecutionResult | None:
        """Block until the task is terminal; None when ``timeout`` elapses first."""

        record = self._record(task_id)
        if not record.done.wait(timeout):
            return None
        return record.task.result

    def cancel(self, task_id: str) -> bool:
        """Cancel a queued or running task; False when already terminal."""

        record = self._record(task_id)
        with self._lock:
            task = record.task
            if task.is_terminal:
                return False
            if task.status == TaskStatus.QUEUED:
                self.queue.remove(task_id)
                record.token.cancel("cancelled by caller")
                self._finish_locked(
                    record,
                    ExecutionResult.failure(
                        task_id,
                        ErrorInfo(
                            kind=ErrorKind.CANCELLED,
                            summary="Task cancelled before it started.",
                            reason_code="cancelled",
                        ),
                    ),
                    status_to=TaskStatus.CANCELLED,
                )
                return True
        record.token.cancel("cancelled by caller")
        logger.info("Cancellation requested for running task %s", task_id)
        return True

    def drain(self, timeout: float | None = None) -> bool:
        """Stop intake, let in-flight tasks finish, then shut down.

        Tasks still queued are cancelled. Returns True when every worker
        finished within ``timeout``.
        """

        effective = self.settings.drain_timeout_seconds if timeout is None else timeout
        self._cancel_pending(reason="engine draining")
        drained = self.pool.drain(effective)
        self.shutdown()
        return drained

    def shutdown(self) -> None:
        """Cancel everything still running and close subscriptions."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._cancel_pending(reason="engine shutdown")
        with self._lock:
            running = [record for record in self._tasks.values() if not record.task.is_terminal]
        for record in running:
            record.token.cancel("engine shutdown")
        if not self.pool.drain(_SHUTDOWN_GRACE_SECONDS):
            logger.warning("Shutdown left %d workers running", self.pool.active_count)
        self.hub.close()

    def subscribe(
        self,
        event_filter: EventFilter | EventPredicate | None = None,
        *,
        max_buffer: int = 10_000,
    ) -> EventSubscription:
        return self.hub.subscribe(event_filter, max_buffer=max_buffer)

    def replay_dead_letters(self, limit: int = 100) -> list[str]:
        """Resubmit replayable dead letters as new tasks; returns new task ids."""

        submitted: list[str] = []
        for view in self.dead_letters.list_pending_replay(limit):
            if not view.payload_replayable:
                logger.warning(
                    "Dead letter %s skipped: payload is not replayable",
                    view.dead_letter_id,
                )
                continue
            task = view.to_task()
            self.submit(task)
            self.dead_letters.mark_replayed(view.dead_letter_id, replay_task_id=task.task_id)
            submitted.append(task.task_id)
        if submitted:
            logger.info("Replayed %d dead letters", len(submitted))
        return submitted

    def metrics_snapshot(self) -> MetricsSnapshot:
        return self.hub.metrics.snapshot()

    def workers(self) -> list[WorkerAgent]:
        return self.pool.workers()

    def circuit_states(self) -> dict[str, CircuitState]:
        return self.breakers.states()

    def _record(self, task_id: str) -> _TaskRecord:
        with self._lock:
            record = self._tasks.get(task_id)
        if record is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return record

    def _topology_for(self, task: Task) -> Topology | None:
        with self._lock:
            return self._topologies.get(task.task_type, self.default_topology)

    def _handle(self, task: Task) -> None:
        record = self._record(task.task_id)
        with self._lock:
            if task.status != TaskStatus.QUEUED:
                return
            previous = task.transition(TaskStatus.RUNNING)
        self.hub.event(
            "running",
            task.task_id,
            status_from=previous,
            status_to=TaskStatus.RUNNING,
            details={"task_type": task.task_type},
        )

        started = time.monotonic()
        ctx = ExecutionContext.for_task(task, token=record.token)
        topology = self._topology_for(task)
        with self.hub.tracer.span(
            f"task:{task.task_type}",
            task_id=task.task_id,
            topology=getattr(topology, "name", None),
        ) as span:
            ctx.span = span
            result = self._run_topology(task, topology, ctx)
            span.set_attribute("outcome", result.outcome.value)
            if not result.ok:
                span.status = "error"
        result.duration_seconds = time.monotonic() - started
        result.attempts = ctx.history.records()

        status_to = self._status_for(record, result)
        dead_letter_id = None
        if status_to == TaskStatus.DEAD_LETTERED:
            dead_letter_id = self._dead_letter(task, result)
            if dead_letter_id is None:
                status_to = TaskStatus.FAILED
        with self._lock:
            self._finish_locked(record, result, status_to=status_to, dead_letter_id=dead_letter_id)

    def _run_topology(self, task: Task, topology: Topology | None, ctx: ExecutionContext) -> ExecutionResult:
        if topology is None:
            return ExecutionResult.failure(
                task.task_id,
                ErrorInfo(
                    kind=ErrorKind.PERMANENT,
                    summary=f"No topology registered for task type {task.task_type!r}.",
                    reason_code="unknown_task_type",
                ),
            )
        dispatch = DispatchContext(wrapper=self.wrapper, execution=ctx, hub=self.hub)
        try:
            return topology.run(task, dispatch)
        except Exception as error:
            logger.exception("Topology %s crashed on task %s", getattr(topology, "name", topology), task.task_id)
            return ExecutionResult.failure(
                task.task_id,
                ErrorInfo(
                    kind=ErrorKind.PERMANENT,
                    summary=summarize_exception(error),
                    reason_code="topology_crashed",
                ),
            )

    def _status_for(self, record: _TaskRecord, result: ExecutionResult) -> TaskStatus:
        if record.token.cancelled:
            return TaskStatus.CANCELLED
        if result.ok:
            return TaskStatus.SUCCEEDED
        if result.outcome in _DEAD_LETTER_OUTCOMES:
            return TaskStatus.DEAD_LETTERED
        return TaskStatus.FAILED

    def _dead_letter(self, task: Task, result: ExecutionResult) -> str | None:
        error_context = ErrorContext.from_result(result, attempts=result.attempts)
        try:
            view = self.dead_letters.store(task, error_context)
        except Exception:
            logger.exception("Dead-letter store rejected task %s; marking it failed", task.task_id)
            return None
        return view.dead_letter_id

    def _finish_locked(
        self,
        record: _TaskRecord,
        result: ExecutionResult,
        *,
        status_to: TaskStatus,
        dead_letter_id: str | None = None,
    ) -> None:
        task = record.task
        previous = task.transition(status_to)
        task.result = result
        self.hub.event(
            status_to.value,
            task.task_id,
            status_from=previous,
            status_to=status_to,
            duration_seconds=result.duration_seconds,
            details={
                "outcome": result.outcome.value,
                "stage": result.stage,
                "attempts": len(result.attempts),
                "retries_attempted": task.retries_attempted,
                "error_kind": result.error.kind.value if result.error is not None else None,
                "error_summary": result.error.summary if result.error is not None else None,
                "dead_letter_id": dead_letter_id,
            },
        )
        record.done.set()

    def _cancel_pending(self, *, reason: str) -> None:
        for task in self.queue.shutdown(discard=True):
            with self._lock:
                record = self._tasks.get(task.task_id)
                if record is None or task.status != TaskStatus.QUEUED:
                    continue
                record.token.cancel(reason)
                self._finish_locked(
                    record,
                    ExecutionResult.failure(
                        task.task_id,
                        ErrorInfo(kind=ErrorKind.CANCELLED, summary=f"Task cancelled: {reason}.", reason_code="drained"),
                    ),
                    status_to=TaskStatus.CANCELLED,
                )

    def _on_circuit_transition(
        self,
        name: str,
        state_from: CircuitState,
        state_to: CircuitState,
        state: CircuitBreakerState,
    ) -> None:
        self.hub.metrics.increment("circuit_transitions_total", {"dependency": name, "to": state_to.value})
        self.hub.event(
            "circuit_state_changed",
            None,
            details={
                "dependency": name,
                "from": state_from.value,
                "to": state_to.value,
                "consecutive_failures": state.consecutive_failures,
            },
        )

