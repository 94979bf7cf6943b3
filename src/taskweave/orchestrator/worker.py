"""Pull-based worker pool with optional queue-depth scaling."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from taskweave.orchestrator.models import Task, WorkerAgent, WorkerStatus
from taskweave.orchestrator.observability import ObservabilityHub
from taskweave.orchestrator.task_queue import QUEUE_SHUTDOWN, TaskQueue

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Task], None]


@dataclass(slots=True, frozen=True)
class ScalingPolicy:
    """Queue-depth driven pool sizing."""

    min_workers: int = 1
    max_workers: int = 8
    high_watermark: int = 10
    low_watermark: int = 0
    sustain_seconds: float = 1.0
    check_interval_seconds: float = 0.25

    def validate(self) -> None:
        if self.min_workers <= 0:
            raise ValueError("min_workers must be > 0.")
        if self.max_workers < self.min_workers:
            raise ValueError("max_workers must be >= min_workers.")
        if self.low_watermark < 0 or self.high_watermark <= self.low_watermark:
            raise ValueError("Watermarks must satisfy 0 <= low_watermark < high_watermark.")
        if self.sustain_seconds < 0:
            raise ValueError("sustain_seconds must be >= 0.")
        if self.check_interval_seconds <= 0:
            raise ValueError("check_interval_seconds must be > 0.")


class WorkerPool:
    """Daemon threads that dequeue tasks and hand them to ``handler``.

    The handler owns task state; exceptions it raises are logged and the
    worker keeps going. With a :class:`ScalingPolicy` a monitor thread adds
    workers while the queue stays above the high watermark, and idle workers
    retire themselves while depth is at or below the low watermark.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: TaskQueue,
        handler: TaskHandler,
        size: int = 4,
        scaling: ScalingPolicy | None = None,
        hub: ObservabilityHub | None = None,
        poll_interval_seconds: float = 0.1,
        name: str = "taskweave-worker",
    ) -> None:
        if scaling is not None:
            scaling.validate()
            size = min(max(size, scaling.min_workers), scaling.max_workers)
        if size <= 0:
            raise ValueError("Worker pool size must be > 0.")
        self.queue = queue
        self.handler = handler
        self.initial_size = size
        self.scaling = scaling
        self.hub = hub
        self.poll_interval_seconds = poll_interval_seconds
        self.name = name
        self._agents: dict[str, WorkerAgent] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._live = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._started = False
        self._draining = False
        self._stop_monitor = threading.Event()
        self._monitor: threading.Thread | None = None

    @property
    def started(self) -> bool:
        return self._started

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._live

    def workers(self) -> list[WorkerAgent]:
        with self._lock:
            return [replace(agent) for agent in self._agents.values()]

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
        for _ in range(self.initial_size):
            self._spawn()
        if self.scaling is not None:
            self._monitor = threading.Thread(
                target=self._monitor_loop,
                name=f"{self.name}-scaler",
                daemon=True,
            )
            self._monitor.start()
        logger.info("Worker pool started with %d workers", self.initial_size)

    def drain(self, timeout: float | None = None) -> bool:
        """Stop intake, let in-flight tasks finish; True if every worker exited."""

        with self._lock:
            self._draining = True
            for agent in self._agents.values():
                if agent.status != WorkerStatus.STOPPED:
                    agent.status = WorkerStatus.DRAINING
            threads = list(self._threads.values())
        self.queue.shutdown()
        self._stop_monitor.set()

        give_up_at = None if timeout is None else time.monotonic() + timeout
        for thread in threads:
            remaining = None if give_up_at is None else max(0.0, give_up_at - time.monotonic())
            thread.join(remaining)
        if self._monitor is not None:
            self._monitor.join(self.scaling.check_interval_seconds * 2 if self.scaling else None)
        drained = not any(thread.is_alive() for thread in threads)
        if not drained:
            logger.warning("Worker pool drain timed out with %d busy workers", self.active_count)
        return drained

    def _spawn(self) -> WorkerAgent:
        worker_id = f"{self.name}-{next(self._ids)}"
        agent = WorkerAgent(worker_id=worker_id)
        thread = threading.Thread(
            target=self._run,
            args=(agent,),
            name=worker_id,
            daemon=True,
        )
        with self._lock:
            self._agents[worker_id] = agent
            self._threads[worker_id] = thread
            self._live += 1
        thread.start()
        return agent

    def _run(self, agent: WorkerAgent) -> None:
        self._event("worker_started", agent)
        idle_since = time.monotonic()
        try:
            while True:
                item = self.queue.dequeue(timeout=self.poll_interval_seconds)
                if item is QUEUE_SHUTDOWN:
                    return
                if item is None:
                    if self._claim_retirement(idle_since=idle_since):
                        return
                    continue
                task: Task = item  # type: ignore[assignment]
                with self._lock:
                    agent.status = WorkerStatus.BUSY
                    agent.current_task_id = task.task_id
                try:
                    self.handler(task)
                except Exception:
                    logger.exception(
                        "Worker %s: handler failed for task %s",
                        agent.worker_id,
                        task.task_id,
                    )
                finally:
                    with self._lock:
                        agent.processed += 1
                        agent.current_task_id = None
                        agent.status = WorkerStatus.DRAINING if self._draining else WorkerStatus.IDLE
                    idle_since = time.monotonic()
        finally:
            with self._lock:
                if agent.status != WorkerStatus.STOPPED:
                    self._live -= 1
                agent.status = WorkerStatus.STOPPED
                self._threads.pop(agent.worker_id, None)
            self._event("worker_stopped", agent)

    def _claim_retirement(self, *, idle_since: float) -> bool:
        policy = self.scaling
        if policy is None:
            return False
        if time.monotonic() - idle_since < policy.sustain_seconds:
            return False
        if self.queue.depth > policy.low_watermark:
            return False
        with self._lock:
            if self._draining or self._live <= policy.min_workers:
                return False
            self._live -= 1
            live = self._live
            for agent in self._agents.values():
                if agent.worker_id == threading.current_thread().name:
                    agent.status = WorkerStatus.STOPPED
        logger.info("Retiring idle worker %s (workers=%d)", threading.current_thread().name, live)
        self._scaled(direction="down", workers=live)
        return True

    def _monitor_loop(self) -> None:
        policy = self.scaling
        if policy is None:
            return
        above_since: float | None = None
        while not self._stop_monitor.wait(policy.check_interval_seconds):
            depth = self.queue.depth
            if depth <= policy.high_watermark:
                above_since = None
                continue
            now = time.monotonic()
            if above_since is None:
                above_since = now
            if now - above_since < policy.sustain_seconds:
                continue
            with self._lock:
                can_grow = not self._draining and self._live < policy.max_workers
            if can_grow:
                self._spawn()
                logger.info("Scaled worker pool up to %d (depth=%d)", self.active_count, depth)
                self._scaled(direction="up", workers=self.active_count, depth=depth)
            above_since = now

    def _event(self, event_type: str, agent: WorkerAgent) -> None:
        if self.hub is None:
            return
        self.hub.event(
            event_type,
            None,
            details={"worker_id": agent.worker_id, "processed": agent.processed},
        )

    def _scaled(self, *, direction: str, workers: int, depth: int | None = None) -> None:
        if self.hub is None:
            return
        self.hub.event(
            "pool_scaled",
            None,
            details={"direction": direction, "workers": workers, "depth": depth},
        )
