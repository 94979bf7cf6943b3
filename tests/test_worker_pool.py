from __future__ import annotations

import threading
import time
from collections.abc import Callable

import allure
import pytest

from taskweave.orchestrator.models import Task, WorkerStatus
from taskweave.orchestrator.observability import EventFilter, ObservabilityHub
from taskweave.orchestrator.task_queue import TaskQueue
from taskweave.orchestrator.worker import ScalingPolicy, WorkerPool

pytestmark = [
    allure.epic("Engine Core"),
    allure.feature("Worker Pool"),
]


def _wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    give_up_at = time.monotonic() + timeout
    while time.monotonic() < give_up_at:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class _Recorder:
    def __init__(self, *, delay: float = 0.0, gate: threading.Event | None = None) -> None:
        self.delay = delay
        self.gate = gate
        self.handled: list[str] = []
        self.in_flight = 0
        self.peak = 0
        self._lock = threading.Lock()

    def __call__(self, task: Task) -> None:
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            if self.gate is not None:
                self.gate.wait(5.0)
            if self.delay:
                time.sleep(self.delay)
        finally:
            with self._lock:
                self.in_flight -= 1
                self.handled.append(task.task_id)


def test_workers_process_tasks_in_parallel() -> None:
    queue = TaskQueue()
    recorder = _Recorder(delay=0.2)
    pool = WorkerPool(queue=queue, handler=recorder, size=3, poll_interval_seconds=0.02)
    tasks = [Task(payload=index) for index in range(9)]
    for task in tasks:
        queue.enqueue(task)

    started = time.monotonic()
    pool.start()
    assert _wait_until(lambda: len(recorder.handled) == 9)
    elapsed = time.monotonic() - started
    pool.drain(timeout=2.0)

    assert sorted(recorder.handled) == sorted(task.task_id for task in tasks)
    assert recorder.peak == 3
    assert elapsed < 1.5


def test_handler_exception_does_not_kill_worker() -> None:
    queue = TaskQueue()
    handled: list[object] = []

    def _handler(task: Task) -> None:
        if task.payload == "boom":
            raise RuntimeError("handler bug")
        handled.append(task.payload)

    pool = WorkerPool(queue=queue, handler=_handler, size=1, poll_interval_seconds=0.02)
    pool.start()
    for payload in ("boom", "a", "b"):
        queue.enqueue(Task(payload=payload))

    assert _wait_until(lambda: handled == ["a", "b"])
    assert pool.active_count == 1
    assert _wait_until(lambda: pool.workers()[0].processed == 3)
    assert pool.drain(timeout=2.0)


def test_drain_finishes_in_flight_and_pending_work() -> None:
    queue = TaskQueue()
    hub = ObservabilityHub()
    stopped = hub.subscribe(EventFilter.of(event_types=["worker_stopped"]))
    recorder = _Recorder(delay=0.05)
    pool = WorkerPool(queue=queue, handler=recorder, size=2, hub=hub, poll_interval_seconds=0.02)
    for index in range(6):
        queue.enqueue(Task(payload=index))
    pool.start()

    assert pool.drain(timeout=5.0)

    assert len(recorder.handled) == 6
    assert queue.closed
    assert pool.active_count == 0
    assert {agent.status for agent in pool.workers()} == {WorkerStatus.STOPPED}
    assert len(stopped.drain()) == 2


def test_drain_timeout_reports_busy_workers() -> None:
    queue = TaskQueue()
    gate = threading.Event()
    recorder = _Recorder(gate=gate)
    pool = WorkerPool(queue=queue, handler=recorder, size=1, poll_interval_seconds=0.02)
    pool.start()
    queue.enqueue(Task(payload="stuck"))
    assert _wait_until(lambda: recorder.in_flight == 1)

    assert not pool.drain(timeout=0.1)
    assert pool.workers()[0].status == WorkerStatus.DRAINING

    gate.set()
    assert _wait_until(lambda: pool.active_count == 0)


def test_start_is_idempotent() -> None:
    pool = WorkerPool(queue=TaskQueue(), handler=lambda task: None, size=2, poll_interval_seconds=0.02)

    pool.start()
    pool.start()

    assert pool.active_count == 2
    assert pool.drain(timeout=2.0)


def test_pool_scales_up_under_load_and_back_down_when_idle() -> None:
    queue = TaskQueue()
    hub = ObservabilityHub()
    scaled = hub.subscribe(EventFilter.of(event_types=["pool_scaled"]))
    gate = threading.Event()
    recorder = _Recorder(gate=gate)
    policy = ScalingPolicy(
        min_workers=1,
        max_workers=3,
        high_watermark=2,
        low_watermark=0,
        sustain_seconds=0.0,
        check_interval_seconds=0.02,
    )
    pool = WorkerPool(
        queue=queue,
        handler=recorder,
        size=1,
        scaling=policy,
        hub=hub,
        poll_interval_seconds=0.02,
    )
    for index in range(10):
        queue.enqueue(Task(payload=index))
    pool.start()

    assert _wait_until(lambda: pool.active_count == 3)
    gate.set()
    assert _wait_until(lambda: len(recorder.handled) == 10)
    assert _wait_until(lambda: pool.active_count == 1)
    assert pool.drain(timeout=2.0)

    directions = [event.details["direction"] for event in scaled.drain()]
    assert directions.count("up") == 2
    assert directions.count("down") == 2


def test_scaling_bounds_initial_size() -> None:
    pool = WorkerPool(
        queue=TaskQueue(),
        handler=lambda task: None,
        size=10,
        scaling=ScalingPolicy(min_workers=1, max_workers=4),
    )

    assert pool.initial_size == 4


@pytest.mark.parametrize(
    "policy",
    [
        ScalingPolicy(min_workers=0),
        ScalingPolicy(min_workers=3, max_workers=2),
        ScalingPolicy(high_watermark=1, low_watermark=1),
        ScalingPolicy(check_interval_seconds=0),
    ],
)
def test_invalid_scaling_policy(policy: ScalingPolicy) -> None:
    with pytest.raises(ValueError):
        policy.validate()


def test_pool_size_must_be_positive() -> None:
    with pytest.raises(ValueError, match="size"):
        WorkerPool(queue=TaskQueue(), handler=lambda task: None, size=0)
