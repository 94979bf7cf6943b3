"""Event hub, lifecycle subscriptions, and lightweight tracing spans."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from taskweave.orchestrator.metrics import MetricsRegistry
from taskweave.orchestrator.models import TERMINAL_STATUSES, TaskEvent
from taskweave.storage.common import utc_now

logger = logging.getLogger(__name__)

_CLOSED = object()
_WARNING_EVENTS = frozenset({"executor_abandoned", "dead_lettered", "circuit_state_changed"})


@dataclass(slots=True, frozen=True)
class EventFilter:
    """Matches events by type and/or task id; empty fields match everything."""

    event_types: frozenset[str] = frozenset()
    task_ids: frozenset[str] = frozenset()

    @classmethod
    def of(
        cls,
        *,
        event_types: tuple[str, ...] | list[str] = (),
        task_ids: tuple[str, ...] | list[str] = (),
    ) -> EventFilter:
        return cls(event_types=frozenset(event_types), task_ids=frozenset(task_ids))

    def __call__(self, event: TaskEvent) -> bool:
        if self.event_types and event.event_type not in self.event_types:
            return False
        return not (self.task_ids and event.task_id not in self.task_ids)


EventPredicate = Callable[[TaskEvent], bool]


class EventSubscription:
    """Stream of lifecycle events matching one filter.

    Iterating blocks until the next event and stops once the subscription or
    the hub is closed. Delivery never blocks emitters: when the buffer is
    full the event is dropped and counted in :attr:`dropped`.
    """

    def __init__(
        self,
        *,
        predicate: EventPredicate,
        on_close: Callable[[EventSubscription], None],
        max_buffer: int = 10_000,
    ) -> None:
        self.predicate = predicate
        self.dropped = 0
        self._queue: queue.Queue[TaskEvent | object] = queue.Queue(maxsize=max_buffer + 1)
        self._max_buffer = max_buffer
        self._on_close = on_close
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: TaskEvent) -> None:
        with self._lock:
            if self._closed:
                return
            if self._queue.qsize() >= self._max_buffer:
                self.dropped += 1
                return
            self._queue.put_nowait(event)

    def get(self, timeout: float | None = None) -> TaskEvent | None:
        """Next event, or None on timeout / after close."""

        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    def drain(self) -> list[TaskEvent]:
        """Events buffered right now, without blocking."""

        events: list[TaskEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                return events
            events.append(item)  # type: ignore[arg-type]

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put_nowait(_CLOSED)
        self._on_close(self)

    def __iter__(self) -> Iterator[TaskEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def __enter__(self) -> EventSubscription:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


@dataclass(slots=True)
class Span:
    """One traced unit: a task execution or a topology stage."""

    name: str
    trace_id: str
    span_id: str
    parent_id: str | None
    started_at: datetime
    start_monotonic: float
    attributes: dict[str, Any] = field(default_factory=dict)
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    status: str = "ok"

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value


class Tracer:
    """Creates nested spans and keeps the most recent finished ones."""

    def __init__(self, *, metrics: MetricsRegistry | None = None, max_spans: int = 5_000) -> None:
        self.metrics = metrics
        self._finished: deque[Span] = deque(maxlen=max_spans)
        self._lock = threading.Lock()

    @contextmanager
    def span(self, name: str, *, parent: Span | None = None, **attributes: Any) -> Iterator[Span]:
        current = Span(
            name=name,
            trace_id=parent.trace_id if parent is not None else uuid4().hex,
            span_id=uuid4().hex[:16],
            parent_id=parent.span_id if parent is not None else None,
            started_at=utc_now(),
            start_monotonic=time.monotonic(),
            attributes=dict(attributes),
        )
        try:
            yield current
        except BaseException:
            current.status = "error"
            raise
        finally:
            current.finished_at = utc_now()
            current.duration_seconds = time.monotonic() - current.start_monotonic
            with self._lock:
                self._finished.append(current)
            if self.metrics is not None:
                kind = "task" if parent is None else "stage"
                self.metrics.observe(
                    f"{kind}_span_seconds",
                    {"span": name},
                    value=current.duration_seconds,
                )

    def finished_spans(self, *, trace_id: str | None = None) -> list[Span]:
        with self._lock:
            spans = list(self._finished)
        if trace_id is None:
            return spans
        return [span for span in spans if span.trace_id == trace_id]


class ObservabilityHub:
    """Single emission point: log, count, and fan out every lifecycle event."""

    def __init__(
        self,
        *,
        metrics: MetricsRegistry | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self.metrics = metrics or MetricsRegistry()
        self.tracer = tracer or Tracer(metrics=self.metrics)
        self._subscriptions: list[EventSubscription] = []
        self._lock = threading.Lock()

    def emit(self, event: TaskEvent) -> None:
        self._log(event)
        self.metrics.increment("events_total", {"event_type": event.event_type})
        if event.status_to is not None and event.status_to in TERMINAL_STATUSES:
            self.metrics.increment("tasks_total", {"status": event.status_to.value})
            if event.duration_seconds is not None:
                self.metrics.observe(
                    "task_duration_seconds",
                    {"status": event.status_to.value},
                    value=event.duration_seconds,
                )
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            try:
                matched = subscription.predicate(event)
            except Exception:  # noqa: BLE001
                logger.warning("Event filter raised; dropping subscription", exc_info=True)
                subscription.close()
                continue
            if matched:
                subscription.deliver(event)

    def event(self, event_type: str, task_id: str | None = None, **kwargs: Any) -> TaskEvent:
        """Build and emit one event; returns it for callers that chain."""

        built = TaskEvent(event_type=event_type, task_id=task_id, **kwargs)
        self.emit(built)
        return built

    def subscribe(
        self,
        event_filter: EventFilter | EventPredicate | None = None,
        *,
        max_buffer: int = 10_000,
    ) -> EventSubscription:
        predicate: EventPredicate = event_filter if event_filter is not None else EventFilter()
        subscription = EventSubscription(
            predicate=predicate,
            on_close=self._unsubscribe,
            max_buffer=max_buffer,
        )
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def close(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.close()

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _log(self, event: TaskEvent) -> None:
        level = logging.WARNING if event.event_type in _WARNING_EVENTS else logging.DEBUG
        if not logger.isEnabledFor(level):
            return
        logger.log(
            level,
            "event=%s task_id=%s from=%s to=%s duration=%s details=%s",
            event.event_type,
            event.task_id,
            event.status_from.value if event.status_from is not None else None,
            event.status_to.value if event.status_to is not None else None,
            f"{event.duration_seconds:.3f}" if event.duration_seconds is not None else None,
            event.details,
        )
