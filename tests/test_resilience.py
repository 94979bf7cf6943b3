from __future__ import annotations

import random
import time

import allure
import pytest

from taskweave.orchestrator.backend import EchoExecutor, ScriptedExecutor, SleepExecutor
from taskweave.orchestrator.cache import TTLCache
from taskweave.orchestrator.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from taskweave.orchestrator.errors import PermanentError, TransientError
from taskweave.orchestrator.models import CircuitState, ErrorKind, Outcome, Task
from taskweave.orchestrator.observability import EventFilter, ObservabilityHub
from taskweave.orchestrator.resilience import (
    DEFAULT_TIMEOUT_SECONDS,
    ExecutionContext,
    ResilienceWrapper,
    RetryPolicy,
    Step,
    TokenBucketRateLimiter,
)

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Retry, Timeout, Fallback"),
]


def _always_transient(name: str = "svc") -> ScriptedExecutor:
    return ScriptedExecutor([TransientError("service temporarily unavailable")], name=name)


def test_transient_failures_are_retried_until_budget_is_spent(wrapper: ResilienceWrapper) -> None:
    executor = _always_transient()
    task = Task(payload="x", max_retries=2)
    ctx = ExecutionContext.for_task(task)
    retries = wrapper.hub.subscribe(EventFilter.of(event_types=["retry_scheduled"]))

    result = wrapper.execute(Step("call", executor), task.payload, ctx)

    assert result.outcome == Outcome.TRANSIENT_FAILURE
    assert result.error is not None
    assert result.error.kind == ErrorKind.TRANSIENT
    assert executor.calls == 3
    assert [attempt.attempt_no for attempt in result.attempts] == [1, 2, 3]
    assert task.retries_attempted == 2
    assert len(retries.drain()) == 2


def test_permanent_error_is_never_retried(wrapper: ResilienceWrapper) -> None:
    executor = ScriptedExecutor([PermanentError("invalid input")], name="svc")
    fallback = EchoExecutor(name="backup")
    task = Task(payload="x", max_retries=5)

    result = wrapper.execute(Step("call", executor, fallbacks=(fallback,)), "x", ExecutionContext.for_task(task))

    assert result.outcome == Outcome.PERMANENT_FAILURE
    assert executor.calls == 1
    assert fallback.calls == 0
    assert task.retries_attempted == 0


def test_transient_then_success(wrapper: ResilienceWrapper) -> None:
    executor = ScriptedExecutor([ConnectionError("connection reset"), "done"], name="svc")
    task = Task(payload="x", max_retries=3)

    result = wrapper.execute(Step("call", executor), "x", ExecutionContext.for_task(task))

    assert result.ok
    assert result.output == "done"
    assert [attempt.outcome for attempt in result.attempts] == [Outcome.TRANSIENT_FAILURE, Outcome.SUCCESS]
    assert task.retries_attempted == 1


def test_unclassified_exception_is_permanent_with_sanitized_summary(wrapper: ResilienceWrapper) -> None:
    def _boom(payload, deadline):
        raise ValueError("bad payload api_key=abcdef123456\nTraceback line")

    result = wrapper.execute(Step("call", _boom), "x", ExecutionContext.for_task(Task(max_retries=3)))

    assert result.outcome == Outcome.PERMANENT_FAILURE
    assert result.error is not None
    assert result.error.summary.startswith("ValueError: bad payload")
    assert "abcdef123456" not in result.error.summary
    assert "Traceback" not in result.error.summary


def test_invalid_input_with_status_like_number_is_not_retried(wrapper: ResilienceWrapper) -> None:
    calls = []

    def _reject(payload, deadline):
        calls.append(payload)
        raise ValueError("invalid quantity for order 14290")

    task = Task(payload="x", max_retries=2)
    result = wrapper.execute(Step("call", _reject), "x", ExecutionContext.for_task(task))

    assert result.outcome == Outcome.PERMANENT_FAILURE
    assert result.error is not None
    assert result.error.kind == ErrorKind.PERMANENT
    assert len(calls) == 1
    assert task.retries_attempted == 0


def test_cooperative_executor_times_out(wrapper: ResilienceWrapper) -> None:
    executor = SleepExecutor(seconds=5.0, name="slow")
    task = Task(payload="x", max_retries=0, timeout_seconds=0.05)

    started = time.monotonic()
    result = wrapper.execute(Step("call", executor), "x", ExecutionContext.for_task(task))

    assert result.outcome == Outcome.TIMEOUT
    assert result.error is not None
    assert result.error.kind == ErrorKind.TIMEOUT
    assert time.monotonic() - started < 2.0


def test_non_cooperative_executor_is_abandoned_and_reported(hub: ObservabilityHub) -> None:
    wrapper = ResilienceWrapper(
        hub=hub,
        retry_policy=RetryPolicy(base_delay_seconds=0.0, max_delay_seconds=0.0),
        abandon_grace_seconds=0.01,
    )
    abandoned = hub.subscribe(EventFilter.of(event_types=["executor_abandoned"]))
    executor = SleepExecutor(seconds=0.5, name="stubborn", cooperative=False)
    task = Task(payload="x", max_retries=0)

    result = wrapper.execute(
        Step("call", executor, timeout_seconds=0.05),
        "x",
        ExecutionContext.for_task(task),
    )

    assert result.outcome == Outcome.TIMEOUT
    events = abandoned.drain()
    assert len(events) == 1
    assert events[0].details["executor"] == "stubborn"
    assert hub.metrics.snapshot().counter("executors_abandoned_total", executor="stubborn") == 1


def test_timeouts_are_retried(wrapper: ResilienceWrapper) -> None:
    calls = {"n": 0}

    def _slow_then_fast(payload, deadline):
        calls["n"] += 1
        if calls["n"] == 1:
            deadline.token.wait(5.0)
            deadline.raise_if_cancelled()
        return "fast"

    task = Task(payload="x", max_retries=1, timeout_seconds=0.05)
    result = wrapper.execute(Step("call", _slow_then_fast), "x", ExecutionContext.for_task(task))

    assert result.ok
    assert [attempt.outcome for attempt in result.attempts] == [Outcome.TIMEOUT, Outcome.SUCCESS]


def test_fallback_chain_runs_after_primary_is_exhausted(wrapper: ResilienceWrapper) -> None:
    primary = _always_transient("primary")
    broken_fallback = _always_transient("fallback_1")
    good_fallback = EchoExecutor(name="fallback_2", prefix="fb:")
    invoked = wrapper.hub.subscribe(EventFilter.of(event_types=["fallback_invoked"]))
    task = Task(payload="x", max_retries=1)

    result = wrapper.execute(
        Step("call", primary, fallbacks=(broken_fallback, good_fallback)),
        "x",
        ExecutionContext.for_task(task),
    )

    assert result.ok
    assert result.output == "fb:x"
    assert primary.calls == 2
    assert broken_fallback.calls == 1
    assert good_fallback.calls == 1
    assert [event.details["executor"] for event in invoked.drain()] == ["fallback_1", "fallback_2"]
    assert [attempt.executor for attempt in result.attempts] == ["primary", "primary", "fallback_1", "fallback_2"]


def test_exhausted_fallback_chain_returns_last_failure(wrapper: ResilienceWrapper) -> None:
    result = wrapper.execute(
        Step("call", _always_transient("primary"), fallbacks=(_always_transient("backup"),)),
        "x",
        ExecutionContext.for_task(Task(max_retries=0)),
    )

    assert result.outcome == Outcome.TRANSIENT_FAILURE
    assert [attempt.executor for attempt in result.attempts] == ["primary", "backup"]


def test_open_circuit_fast_fails_without_calling_executor(hub: ObservabilityHub) -> None:
    breakers = CircuitBreakerRegistry(
        config=CircuitBreakerConfig(failure_threshold=2, recovery_timeout_seconds=60.0),
    )
    wrapper = ResilienceWrapper(
        hub=hub,
        breakers=breakers,
        retry_policy=RetryPolicy(base_delay_seconds=0.0, max_delay_seconds=0.0),
    )
    executor = _always_transient()
    step = Step("call", executor, dependency="billing")

    wrapper.execute(step, "x", ExecutionContext.for_task(Task(max_retries=1)))
    assert breakers.get("billing").state == CircuitState.OPEN
    calls_before = executor.calls

    result = wrapper.execute(step, "x", ExecutionContext.for_task(Task(max_retries=3)))

    assert result.outcome == Outcome.CIRCUIT_OPEN
    assert result.error is not None
    assert result.error.kind == ErrorKind.CIRCUIT_OPEN
    assert executor.calls == calls_before
    assert len(result.attempts) == 1


def test_default_deadline_bounds_executions_without_explicit_timeout(hub: ObservabilityHub) -> None:
    assert ResilienceWrapper(hub=hub).default_timeout_seconds == DEFAULT_TIMEOUT_SECONDS
    wrapper = ResilienceWrapper(
        hub=hub,
        retry_policy=RetryPolicy(base_delay_seconds=0.0, max_delay_seconds=0.0),
        default_timeout_seconds=0.05,
    )
    task = Task(payload="x", max_retries=0)
    assert task.timeout_seconds is None

    started = time.monotonic()
    result = wrapper.execute(Step("call", SleepExecutor(seconds=5.0, name="hung")), "x", ExecutionContext.for_task(task))

    assert result.outcome == Outcome.TIMEOUT
    assert time.monotonic() - started < 2.0


def test_half_open_trial_rejected_permanently_reopens_circuit(hub: ObservabilityHub) -> None:
    breakers = CircuitBreakerRegistry(
        config=CircuitBreakerConfig(failure_threshold=1, recovery_timeout_seconds=0.0),
    )
    wrapper = ResilienceWrapper(
        hub=hub,
        breakers=breakers,
        retry_policy=RetryPolicy(base_delay_seconds=0.0, max_delay_seconds=0.0),
    )
    executor = ScriptedExecutor(
        [TransientError("service temporarily unavailable"), PermanentError("invalid request")],
        name="svc",
    )
    step = Step("call", executor, dependency="billing")

    wrapper.execute(step, "x", ExecutionContext.for_task(Task(max_retries=0)))
    assert breakers.get("billing").state == CircuitState.OPEN

    trial = wrapper.execute(step, "x", ExecutionContext.for_task(Task(max_retries=0)))

    assert trial.outcome == Outcome.PERMANENT_FAILURE
    assert executor.calls == 2
    assert breakers.get("billing").state == CircuitState.OPEN


def test_permanent_errors_do_not_trip_the_breaker(hub: ObservabilityHub) -> None:
    breakers = CircuitBreakerRegistry(config=CircuitBreakerConfig(failure_threshold=1))
    wrapper = ResilienceWrapper(hub=hub, breakers=breakers)
    executor = ScriptedExecutor([PermanentError("not found")], name="svc")

    for _ in range(3):
        wrapper.execute(Step("call", executor), "x", ExecutionContext.for_task(Task(max_retries=0)))

    assert breakers.get("svc").state == CircuitState.CLOSED


def test_cache_hit_skips_executor(wrapper: ResilienceWrapper) -> None:
    wrapper.cache = TTLCache(max_entries=10, ttl_seconds=60.0)
    executor = EchoExecutor(name="svc", prefix="v:")
    step = Step("call", executor, cache_key=lambda payload: payload)

    first = wrapper.execute(step, "k", ExecutionContext.for_task(Task()))
    second = wrapper.execute(step, "k", ExecutionContext.for_task(Task()))

    assert first.output == second.output == "v:k"
    assert executor.calls == 1
    assert second.attempts == []


def test_rate_limiter_rejects_when_no_token_before_deadline(hub: ObservabilityHub) -> None:
    wrapper = ResilienceWrapper(
        hub=hub,
        rate_limiters={"svc": TokenBucketRateLimiter(rate_per_second=0.01, capacity=1)},
    )
    executor = EchoExecutor(name="svc")
    step = Step("call", executor, timeout_seconds=0.05)

    first = wrapper.execute(step, "a", ExecutionContext.for_task(Task(max_retries=0)))
    second = wrapper.execute(step, "b", ExecutionContext.for_task(Task(max_retries=0)))

    assert first.ok
    assert second.outcome == Outcome.TRANSIENT_FAILURE
    assert second.error is not None
    assert second.error.kind == ErrorKind.RATE_LIMITED
    assert executor.calls == 1


def test_cancelled_context_stops_before_calling(wrapper: ResilienceWrapper) -> None:
    executor = EchoExecutor()
    ctx = ExecutionContext.for_task(Task(payload="x"))
    ctx.token.cancel()

    result = wrapper.execute(Step("call", executor), "x", ctx)

    assert result.outcome == Outcome.CANCELLED
    assert executor.calls == 0


def test_shared_budget_caps_retries_across_steps(wrapper: ResilienceWrapper) -> None:
    task = Task(payload="x", max_retries=3)
    ctx = ExecutionContext.for_task(task)

    wrapper.execute(Step("a", _always_transient("a")), "x", ctx)
    result = wrapper.execute(Step("b", _always_transient("b")), "x", ctx)

    assert task.retries_attempted == 3
    assert len(result.attempts) == 1
    assert len(ctx.history) == 5


def test_retry_delay_is_exponential_and_capped() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0, jitter=False)
    rng = random.Random(0)

    assert [policy.compute_delay(retry_number=n, rng=rng) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_jittered_delay_stays_within_bounds() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=8.0)
    rng = random.Random(42)

    for retry_number in range(1, 8):
        delay = policy.compute_delay(retry_number=retry_number, rng=rng)
        assert 0.0 <= delay <= min(8.0, 2 ** (retry_number - 1))


def test_retry_policy_validation() -> None:
    with pytest.raises(ValueError, match="max_delay_seconds"):
        RetryPolicy(base_delay_seconds=2.0, max_delay_seconds=1.0).validate()


def test_token_bucket_refills_over_time() -> None:
    now = [0.0]
    limiter = TokenBucketRateLimiter(rate_per_second=2.0, capacity=2, clock=lambda: now[0])

    assert limiter.try_acquire()
    assert limiter.try_acquire()
    assert not limiter.try_acquire()
    now[0] += 0.5
    assert limiter.try_acquire()
    assert not limiter.try_acquire()
