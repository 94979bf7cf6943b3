"""Bounded in-process task queue with FIFO or priority ordering."""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from enum import Enum
from typing import Final

from taskweave.orchestrator.errors import QueueClosedError, QueueFullError
from taskweave.orchestrator.models import Task


class QueueOrdering(str, Enum):
    """Dequeue ordering policy."""

    FIFO = "fifo"
    PRIORITY = "priority"


class _Shutdown:
    def __repr__(self) -> str:
        return "QUEUE_SHUTDOWN"


QUEUE_SHUTDOWN: Final = _Shutdown()


class TaskQueue:
    """Thread-safe holding area between submitters and workers.

    ``enqueue`` never drops silently: it raises :class:`QueueFullError` at
    capacity. ``dequeue`` blocks until a task arrives, returns ``None`` on
    timeout, and returns :data:`QUEUE_SHUTDOWN` once the queue is shut down
    and empty. Priority ordering dequeues higher ``Task.priority`` first and
    keeps FIFO among equal priorities.
    """

    def __init__(
        self,
        *,
        capacity: int | None = None,
        ordering: QueueOrdering | str = QueueOrdering.FIFO,
    ) -> None:
        if capacity is not None and capacity <= 0:
            raise ValueError("Queue capacity must be a positive integer or None.")
        self.capacity = capacity
        self.ordering = QueueOrdering(ordering)
        self._heap: list[tuple[int, int, Task]] = []
        self._removed: set[str] = set()
        self._size = 0
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    @property
    def depth(self) -> int:
        with self._condition:
            return self._size

    def __len__(self) -> int:
        return self.depth

    def enqueue(self, task: Task) -> None:
        """Add one task or raise on backpressure / shutdown."""

        with self._condition:
            if self._closed:
                raise QueueClosedError("Queue is shut down; new tasks are not accepted.")
            if self.capacity is not None and self._size >= self.capacity:
                raise QueueFullError(
                    f"Queue is full (capacity={self.capacity}); task {task.task_id} rejected.",
                )
            heapq.heappush(self._heap, (self._sort_key(task), next(self._sequence), task))
            self._size += 1
            self._condition.notify()

    def dequeue(self, timeout: float | None = None) -> Task | _Shutdown | None:
        """Block for the next task; see class docstring for sentinel semantics."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while True:
                task = self._pop_locked()
                if task is not None:
                    return task
                if self._closed:
                    return QUEUE_SHUTDOWN
                if deadline is None:
                    self._condition.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._condition.wait(remaining)

    def remove(self, task_id: str) -> bool:
        """Drop a pending task; False when it is not queued."""

        with self._condition:
            for _, _, task in self._heap:
                if task.task_id == task_id and task_id not in self._removed:
                    self._removed.add(task_id)
                    self._size -= 1
                    self._condition.notify_all()
                    return True
            return False

    def shutdown(self, *, discard: bool = False) -> list[Task]:
        """Stop intake and wake every waiting dequeuer.

        With ``discard=True`` pending tasks are removed and returned; otherwise
        they stay dequeueable until the queue runs empty.
        """

        with self._condition:
            self._closed = True
            discarded: list[Task] = []
            if discard:
                while True:
                    task = self._pop_locked()
                    if task is None:
                        break
                    discarded.append(task)
            self._condition.notify_all()
            return discarded

    def snapshot(self) -> list[Task]:
        """Pending tasks in dequeue order."""

        with self._condition:
            ordered = sorted(self._heap, key=lambda item: (item[0], item[1]))
            return [task for _, _, task in ordered if task.task_id not in self._removed]

    def _pop_locked(self) -> Task | None:
        while self._heap:
            _, _, task = heapq.heappop(self._heap)
            if task.task_id in self._removed:
                self._removed.discard(task.task_id)
                continue
            self._size -= 1
            return task
        return None

    def _sort_key(self, task: Task) -> int:
        if self.ordering == QueueOrdering.PRIORITY:
            return -task.priority
        return 0
