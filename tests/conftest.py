"""Shared test fixtures."""

from __future__ import annotations

import random
from collections.abc import Callable, Iterator

import pytest

from taskweave.config import QueueSettings, RetrySettings, Settings, WorkerSettings
from taskweave.orchestrator.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from taskweave.orchestrator.engine import TaskEngine
from taskweave.orchestrator.models import Task
from taskweave.orchestrator.observability import ObservabilityHub
from taskweave.orchestrator.resilience import ExecutionContext, ResilienceWrapper, RetryPolicy
from taskweave.orchestrator.topology import DispatchContext


@pytest.fixture()
def hub() -> ObservabilityHub:
    return ObservabilityHub()


@pytest.fixture()
def wrapper(hub: ObservabilityHub) -> ResilienceWrapper:
    """Wrapper with zero backoff and a breaker that will not trip in short tests."""

    return ResilienceWrapper(
        hub=hub,
        breakers=CircuitBreakerRegistry(config=CircuitBreakerConfig(failure_threshold=100)),
        retry_policy=RetryPolicy(base_delay_seconds=0.0, max_delay_seconds=0.0),
        rng=random.Random(1),
    )


@pytest.fixture()
def dispatch(wrapper: ResilienceWrapper, hub: ObservabilityHub) -> Callable[[Task], DispatchContext]:
    def _build(task: Task) -> DispatchContext:
        return DispatchContext(wrapper=wrapper, execution=ExecutionContext.for_task(task), hub=hub)

    return _build


@pytest.fixture()
def fast_settings() -> Settings:
    return Settings(
        queue=QueueSettings(capacity=100),
        worker=WorkerSettings(workers=2),
        retry=RetrySettings(max_retries=2, base_seconds=0.0, max_seconds=0.0),
        drain_timeout_seconds=5.0,
    )


@pytest.fixture()
def make_engine(fast_settings: Settings) -> Iterator[Callable[..., TaskEngine]]:
    engines: list[TaskEngine] = []

    def _build(**kwargs) -> TaskEngine:
        kwargs.setdefault("settings", fast_settings)
        engine = TaskEngine(**kwargs)
        engines.append(engine)
        return engine

    yield _build
    for engine in engines:
        engine.shutdown()
