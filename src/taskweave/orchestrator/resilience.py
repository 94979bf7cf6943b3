"""Retry, circuit breaking, rate limiting, timeout, and fallback around executors."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from typing import Any

from taskweave.orchestrator.backend.base import (
    CancellationToken,
    Deadline,
    Executor,
    as_executor,
)
from taskweave.orchestrator.cache import ResultCache
from taskweave.orchestrator.circuit_breaker import CircuitBreakerRegistry
from taskweave.orchestrator.errors import ExecutionCancelledError
from taskweave.orchestrator.failure_classifier import classify_exception
from taskweave.orchestrator.models import (
    AttemptRecord,
    ErrorInfo,
    ErrorKind,
    ExecutionResult,
    Outcome,
    RetryBudget,
    Task,
    outcome_for_kind,
)
from taskweave.orchestrator.observability import ObservabilityHub, Span
from taskweave.storage.common import utc_now

logger = logging.getLogger(__name__)

_JOIN_SLICE_SECONDS = 0.05
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Exponential backoff with full jitter between attempts."""

    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    jitter: bool = True
    retry_on_timeout: bool = True

    def validate(self) -> None:
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0.")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds.")

    def is_retryable(self, outcome: Outcome) -> bool:
        if outcome == Outcome.TRANSIENT_FAILURE:
            return True
        return outcome == Outcome.TIMEOUT and self.retry_on_timeout

    def compute_delay(self, *, retry_number: int, rng: random.Random) -> float:
        max_delay = min(
            self.max_delay_seconds,
            self.base_delay_seconds * (2 ** max(retry_number - 1, 0)),
        )
        if not self.jitter:
            return max_delay
        return rng.uniform(0, max_delay)


class TokenBucketRateLimiter:
    """Token bucket shared by every worker calling one dependency."""

    def __init__(
        self,
        *,
        rate_per_second: float,
        capacity: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be > 0.")
        self.rate_per_second = rate_per_second
        self.capacity = capacity if capacity is not None else max(1, int(rate_per_second))
        if self.capacity <= 0:
            raise ValueError("capacity must be > 0.")
        self._clock = clock
        self._tokens = float(self.capacity)
        self._updated_at = clock()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._take()[0]

    def acquire(self, *, timeout: float | None, token: CancellationToken | None = None) -> bool:
        """Wait for a token up to ``timeout`` seconds; False if none arrived."""

        give_up_at = None if timeout is None else time.monotonic() + timeout
        while True:
            acquired, wait_seconds = self._take()
            if acquired:
                return True
            if give_up_at is not None:
                remaining = give_up_at - time.monotonic()
                if remaining <= 0:
                    return False
                wait_seconds = min(wait_seconds, remaining)
            if token is not None:
                if token.wait(wait_seconds):
                    return False
            else:
                time.sleep(wait_seconds)

    def _take(self) -> tuple[bool, float]:
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._updated_at)
            self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate_per_second)
            self._updated_at = now
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True, 0.0
            return False, (1.0 - self._tokens) / self.rate_per_second


@dataclass(slots=True)
class Step:
    """One named unit of work: primary executor plus its fallback chain."""

    name: str
    executor: Executor | Callable[[Any, Deadline], Any]
    fallbacks: tuple[Executor | Callable[[Any, Deadline], Any], ...] = ()
    dependency: str | None = None
    timeout_seconds: float | None = None
    cache_key: Callable[[Any], Hashable] | None = None
    retryable: bool = True

    def __post_init__(self) -> None:
        self.executor = as_executor(self.executor, name=self.name)
        self.fallbacks = tuple(
            as_executor(fallback, name=f"{self.name}_fallback_{index}")
            for index, fallback in enumerate(self.fallbacks, start=1)
        )

    @property
    def dependency_key(self) -> str:
        return self.dependency or self.executor.name  # type: ignore[union-attr]


class AttemptHistory:
    """Append-only attempt log for one task, shared across parallel branches."""

    def __init__(self) -> None:
        self._records: list[AttemptRecord] = []
        self._lock = threading.Lock()

    def next_attempt_no(self) -> int:
        with self._lock:
            return len(self._records) + 1

    def append(self, record: AttemptRecord) -> None:
        with self._lock:
            self._records.append(record)

    def records(self) -> list[AttemptRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


@dataclass(slots=True)
class ExecutionContext:
    """Per-task state threaded through every resilient invocation."""

    task: Task
    budget: RetryBudget
    token: CancellationToken
    history: AttemptHistory = field(default_factory=AttemptHistory)
    span: Span | None = None

    @classmethod
    def for_task(cls, task: Task, *, token: CancellationToken | None = None) -> ExecutionContext:
        return cls(
            task=task,
            budget=RetryBudget(max_retries=task.max_retries, used=task.retries_attempted),
            token=token or CancellationToken(),
        )


class ResilienceWrapper:
    """Wraps every executor invocation; never raises for executor failures."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        hub: ObservabilityHub,
        breakers: CircuitBreakerRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        rate_limiters: dict[str, TokenBucketRateLimiter] | None = None,
        cache: ResultCache | None = None,
        rng: random.Random | None = None,
        abandon_grace_seconds: float = 0.05,
        default_timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.hub = hub
        self.breakers = breakers or CircuitBreakerRegistry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.retry_policy.validate()
        self.rate_limiters = dict(rate_limiters or {})
        self.cache = cache
        self.abandon_grace_seconds = abandon_grace_seconds
        self.default_timeout_seconds = default_timeout_seconds
        self._random = rng or random.Random()  # noqa: S311
        self._random_lock = threading.Lock()

    def execute(
        self,
        step: Step,
        payload: Any,
        ctx: ExecutionContext,
        *,
        stage: str | None = None,
    ) -> ExecutionResult:
        """Run ``step`` with retries, then its fallback chain."""

        started = time.monotonic()
        attempts: list[AttemptRecord] = []
        primary: Executor = step.executor  # type: ignore[assignment]
        result = self._run_with_retries(
            executor=primary,
            step=step,
            payload=payload,
            ctx=ctx,
            stage=stage,
            attempts=attempts,
        )
        if result.outcome not in {Outcome.SUCCESS, Outcome.PERMANENT_FAILURE, Outcome.CANCELLED}:
            for fallback in step.fallbacks:
                self.hub.event(
                    "fallback_invoked",
                    ctx.task.task_id,
                    details={
                        "stage": stage,
                        "step": step.name,
                        "executor": fallback.name,  # type: ignore[union-attr]
                        "after_outcome": result.outcome.value,
                    },
                )
                result = self._attempt(
                    executor=fallback,  # type: ignore[arg-type]
                    step=step,
                    payload=payload,
                    ctx=ctx,
                    stage=stage,
                    dependency=fallback.name,  # type: ignore[union-attr]
                    attempts=attempts,
                )
                if result.outcome in {Outcome.SUCCESS, Outcome.CANCELLED}:
                    break
        result.attempts = attempts
        result.stage = stage
        result.duration_seconds = time.monotonic() - started
        return result

    def _run_with_retries(  # noqa: PLR0913
        self,
        *,
        executor: Executor,
        step: Step,
        payload: Any,
        ctx: ExecutionContext,
        stage: str | None,
        attempts: list[AttemptRecord],
    ) -> ExecutionResult:
        retry_number = 0
        while True:
            result = self._attempt(
                executor=executor,
                step=step,
                payload=payload,
                ctx=ctx,
                stage=stage,
                dependency=step.dependency_key,
                attempts=attempts,
            )
            if not step.retryable or not self.retry_policy.is_retryable(result.outcome):
                return result
            # Branches abandoned after fan-in no longer touch the task.
            if ctx.token.cancelled:
                return self._cancelled_result(ctx)
            if not ctx.budget.try_consume():
                return result
            if ctx.token.cancelled:
                return self._cancelled_result(ctx)
            ctx.task.retries_attempted = ctx.budget.used
            retry_number += 1
            with self._random_lock:
                delay = self.retry_policy.compute_delay(
                    retry_number=retry_number,
                    rng=self._random,
                )
            self.hub.event(
                "retry_scheduled",
                ctx.task.task_id,
                details={
                    "stage": stage,
                    "executor": executor.name,
                    "retry_number": retry_number,
                    "retries_attempted": ctx.task.retries_attempted,
                    "delay_seconds": round(delay, 4),
                    "after_outcome": result.outcome.value,
                },
            )
            if ctx.token.wait(delay):
                return self._cancelled_result(ctx)

    def _attempt(  # noqa: PLR0913
        self,
        *,
        executor: Executor,
        step: Step,
        payload: Any,
        ctx: ExecutionContext,
        stage: str | None,
        dependency: str,
        attempts: list[AttemptRecord],
    ) -> ExecutionResult:
        task_id = ctx.task.task_id
        if ctx.token.cancelled:
            return self._cancelled_result(ctx)

        cache_key = None
        if self.cache is not None and step.cache_key is not None:
            cache_key = (dependency, step.cache_key(payload))
            hit, value = self.cache.get(cache_key)
            if hit:
                self.hub.metrics.increment("cache_hits_total", {"dependency": dependency})
                return ExecutionResult.success(task_id, value)

        started_at = utc_now()
        started = time.monotonic()
        breaker = self.breakers.get(dependency)
        if not breaker.allow():
            error = ErrorInfo(
                kind=ErrorKind.CIRCUIT_OPEN,
                summary=f"Circuit open for dependency {dependency}; call not attempted.",
                reason_code=f"{dependency}_circuit_open",
            )
            return self._record(
                ctx=ctx,
                executor=executor,
                stage=stage,
                started_at=started_at,
                started=started,
                result=ExecutionResult.failure(task_id, error),
                attempts=attempts,
            )

        timeout = self._effective_timeout(step, ctx.task)
        limiter = self.rate_limiters.get(dependency)
        if limiter is not None and not limiter.acquire(timeout=timeout, token=ctx.token):
            breaker.release()
            if ctx.token.cancelled:
                return self._cancelled_result(ctx)
            error = ErrorInfo(
                kind=ErrorKind.RATE_LIMITED,
                summary=f"Rate limit for dependency {dependency} not satisfied before deadline.",
                reason_code=f"{dependency}_rate_limited",
            )
            return self._record(
                ctx=ctx,
                executor=executor,
                stage=stage,
                started_at=started_at,
                started=started,
                result=ExecutionResult.failure(task_id, error),
                attempts=attempts,
            )

        result = self._call(
            executor=executor,
            payload=payload,
            ctx=ctx,
            timeout=timeout,
            stage=stage,
        )
        if result.outcome == Outcome.SUCCESS:
            breaker.record_success()
        elif result.outcome == Outcome.PERMANENT_FAILURE:
            breaker.record_rejection()
        elif result.outcome == Outcome.CANCELLED:
            breaker.release()
        else:
            breaker.record_failure()

        if result.ok and cache_key is not None and self.cache is not None:
            self.cache.put(cache_key, result.output)

        return self._record(
            ctx=ctx,
            executor=executor,
            stage=stage,
            started_at=started_at,
            started=started,
            result=result,
            attempts=attempts,
        )

    def _effective_timeout(self, step: Step, task: Task) -> float | None:
        if step.timeout_seconds is not None:
            return step.timeout_seconds
        if task.timeout_seconds is not None:
            return task.timeout_seconds
        return self.default_timeout_seconds

    def _call(
        self,
        *,
        executor: Executor,
        payload: Any,
        ctx: ExecutionContext,
        timeout: float | None,
        stage: str | None,
    ) -> ExecutionResult:
        task_id = ctx.task.task_id
        attempt_token = ctx.token.child()
        deadline = Deadline.after(timeout, token=attempt_token)

        if timeout is None:
            try:
                output = executor.execute(payload, deadline)
            except Exception as error:  # noqa: BLE001
                return self._failure_from_exception(error, executor=executor, ctx=ctx)
            return ExecutionResult.success(task_id, output)

        outputs: list[Any] = []
        errors: list[Exception] = []

        def _target() -> None:
            try:
                outputs.append(executor.execute(payload, deadline))
            except Exception as error:  # noqa: BLE001
                errors.append(error)

        thread = threading.Thread(
            target=_target,
            daemon=True,
            name=f"taskweave-exec-{task_id[:8]}",
        )
        give_up_at = time.monotonic() + timeout
        thread.start()
        while thread.is_alive():
            remaining = give_up_at - time.monotonic()
            if remaining <= 0 or ctx.token.cancelled:
                break
            thread.join(min(remaining, _JOIN_SLICE_SECONDS))

        if thread.is_alive():
            cancelled = ctx.token.cancelled
            attempt_token.cancel("cancelled" if cancelled else "deadline exceeded")
            thread.join(self.abandon_grace_seconds)
            if thread.is_alive():
                self.hub.event(
                    "executor_abandoned",
                    task_id,
                    details={"executor": executor.name, "stage": stage, "timeout_seconds": timeout},
                )
                self.hub.metrics.increment("executors_abandoned_total", {"executor": executor.name})
            if cancelled:
                return self._cancelled_result(ctx)
            return ExecutionResult.failure(
                task_id,
                ErrorInfo(
                    kind=ErrorKind.TIMEOUT,
                    summary=f"Executor {executor.name} exceeded {timeout:g}s deadline.",
                    reason_code=f"{executor.name}_timeout",
                ),
            )

        if errors:
            return self._failure_from_exception(errors[0], executor=executor, ctx=ctx)
        if not outputs:
            return ExecutionResult.failure(
                task_id,
                ErrorInfo(
                    kind=ErrorKind.PERMANENT,
                    summary=f"Executor {executor.name} terminated without a result.",
                    reason_code=f"{executor.name}_no_result",
                ),
            )
        return ExecutionResult.success(task_id, outputs[0])

    def _failure_from_exception(
        self,
        error: Exception,
        *,
        executor: Executor,
        ctx: ExecutionContext,
    ) -> ExecutionResult:
        if isinstance(error, ExecutionCancelledError):
            if ctx.token.cancelled:
                return self._cancelled_result(ctx)
            return ExecutionResult.failure(
                ctx.task.task_id,
                ErrorInfo(
                    kind=ErrorKind.TIMEOUT,
                    summary=f"Executor {executor.name} stopped at its deadline.",
                    reason_code=f"{executor.name}_timeout",
                ),
            )
        classification = classify_exception(error, executor=executor.name)
        logger.debug(
            "Executor %s failed for task %s: %s",
            executor.name,
            ctx.task.task_id,
            classification.to_event_details(executor=executor.name),
        )
        return ExecutionResult(
            task_id=ctx.task.task_id,
            outcome=outcome_for_kind(classification.kind),
            error=classification.to_error_info(error),
        )

    def _record(  # noqa: PLR0913
        self,
        *,
        ctx: ExecutionContext,
        executor: Executor,
        stage: str | None,
        started_at: Any,
        started: float,
        result: ExecutionResult,
        attempts: list[AttemptRecord],
    ) -> ExecutionResult:
        duration = time.monotonic() - started
        record = AttemptRecord(
            attempt_no=ctx.history.next_attempt_no(),
            executor=executor.name,
            stage=stage,
            outcome=result.outcome,
            started_at=started_at,
            finished_at=utc_now(),
            duration_seconds=duration,
            error=result.error,
        )
        ctx.history.append(record)
        attempts.append(record)
        result.duration_seconds = duration
        self.hub.metrics.observe(
            "attempt_duration_seconds",
            {"executor": executor.name, "outcome": result.outcome.value},
            value=duration,
        )
        self.hub.event(
            "attempt_finished",
            ctx.task.task_id,
            duration_seconds=duration,
            details={
                "attempt_no": record.attempt_no,
                "executor": executor.name,
                "stage": stage,
                "outcome": result.outcome.value,
                "error_kind": result.error.kind.value if result.error is not None else None,
            },
        )
        return result

    def _cancelled_result(self, ctx: ExecutionContext) -> ExecutionResult:
        return ExecutionResult.failure(
            ctx.task.task_id,
            ErrorInfo(
                kind=ErrorKind.CANCELLED,
                summary=f"Task {ctx.task.task_id} was cancelled.",
                reason_code="cancelled",
            ),
        )
