"""Circuit breakers shared across workers through an explicit state store."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, replace
from typing import Protocol

from taskweave.orchestrator.models import CircuitBreakerState, CircuitState

logger = logging.getLogger(__name__)

TransitionListener = Callable[[str, CircuitState, CircuitState, CircuitBreakerState], None]


@dataclass(slots=True, frozen=True)
class CircuitBreakerConfig:
    """Thresholds for one breaker."""

    failure_threshold: int = 5
    recovery_timeout_seconds: float = 30.0
    success_threshold: int = 1
    half_open_max_calls: int = 1
    failure_window_seconds: float | None = None

    def validate(self) -> None:
        if self.failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0.")
        if self.recovery_timeout_seconds < 0:
            raise ValueError("recovery_timeout_seconds must be >= 0.")
        if self.success_threshold <= 0:
            raise ValueError("success_threshold must be > 0.")
        if self.half_open_max_calls <= 0:
            raise ValueError("half_open_max_calls must be > 0.")
        if self.failure_window_seconds is not None and self.failure_window_seconds <= 0:
            raise ValueError("failure_window_seconds must be > 0 when set.")


class BreakerStateStore(Protocol):
    """Backend holding breaker state; one instance may serve many engines.

    ``locked`` must make the load-modify-save sequence atomic for a name.
    """

    def locked(self, name: str) -> AbstractContextManager[CircuitBreakerState]:
        """Context manager yielding mutable state; changes persist on exit."""


class InMemoryBreakerStateStore:
    """Process-local store: one lock per breaker name."""

    def __init__(self) -> None:
        self._states: dict[str, CircuitBreakerState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def locked(self, name: str) -> Iterator[CircuitBreakerState]:
        with self._registry_lock:
            lock = self._locks.setdefault(name, threading.Lock())
            state = self._states.setdefault(name, CircuitBreakerState(name=name))
        with lock:
            yield state


class CircuitBreaker:
    """Closed -> Open -> HalfOpen state machine for one protected dependency.

    Call :meth:`allow` before an attempt; when it returns True, report the
    verdict with :meth:`record_success`, :meth:`record_failure`,
    :meth:`record_rejection`, or :meth:`release` (attempt ended without a verdict, e.g. cancelled).
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        store: BreakerStateStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        listener: TransitionListener | None = None,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.config.validate()
        self._store = store or InMemoryBreakerStateStore()
        self._clock = clock
        self._listener = listener

    @property
    def state(self) -> CircuitState:
        return self.snapshot().state

    def snapshot(self) -> CircuitBreakerState:
        with self._store.locked(self.name) as state:
            return replace(state)

    def allow(self) -> bool:
        """Reserve permission for one call; False means fast-fail."""

        with self._store.locked(self.name) as state:
            if state.state == CircuitState.CLOSED:
                return True
            if state.state == CircuitState.OPEN:
                opened_at = state.opened_at if state.opened_at is not None else self._clock()
                if self._clock() - opened_at < self.config.recovery_timeout_seconds:
                    return False
                self._transition(state, CircuitState.HALF_OPEN)
                state.consecutive_successes = 0
                state.half_open_in_flight = 1
                return True
            if state.half_open_in_flight >= self.config.half_open_max_calls:
                return False
            state.half_open_in_flight += 1
            return True

    def record_success(self) -> None:
        with self._store.locked(self.name) as state:
            if state.state == CircuitState.HALF_OPEN:
                state.half_open_in_flight = max(0, state.half_open_in_flight - 1)
                state.consecutive_successes += 1
                if state.consecutive_successes >= self.config.success_threshold:
                    self._transition(state, CircuitState.CLOSED)
                    state.consecutive_failures = 0
                    state.consecutive_successes = 0
                    state.opened_at = None
                    state.half_open_in_flight = 0
                return
            state.consecutive_failures = 0

    def record_failure(self) -> None:
        now = self._clock()
        with self._store.locked(self.name) as state:
            if state.state == CircuitState.HALF_OPEN:
                self._open(state, now=now)
                return
            if state.state == CircuitState.OPEN:
                return
            window = self.config.failure_window_seconds
            if (
                window is not None
                and state.last_failure_at is not None
                and now - state.last_failure_at > window
            ):
                state.consecutive_failures = 0
            state.consecutive_failures += 1
            state.last_failure_at = now
            if state.consecutive_failures >= self.config.failure_threshold:
                self._open(state, now=now)

    def record_rejection(self) -> None:
        """Report a permanent error: the dependency answered but refused the call.

        Closed breakers treat it like a success. A half-open trial only closes
        the circuit on a real success, so a rejected trial reopens it.
        """

        now = self._clock()
        with self._store.locked(self.name) as state:
            if state.state == CircuitState.HALF_OPEN:
                self._open(state, now=now)
                return
            if state.state == CircuitState.CLOSED:
                state.consecutive_failures = 0

    def release(self) -> None:
        """Free a half-open trial slot without deciding the circuit."""

        with self._store.locked(self.name) as state:
            if state.state == CircuitState.HALF_OPEN:
                state.half_open_in_flight = max(0, state.half_open_in_flight - 1)

    def reset(self) -> None:
        with self._store.locked(self.name) as state:
            if state.state != CircuitState.CLOSED:
                self._transition(state, CircuitState.CLOSED)
            state.consecutive_failures = 0
            state.consecutive_successes = 0
            state.opened_at = None
            state.half_open_in_flight = 0

    def _open(self, state: CircuitBreakerState, *, now: float) -> None:
        state.opened_at = now
        state.consecutive_successes = 0
        state.half_open_in_flight = 0
        self._transition(state, CircuitState.OPEN)

    def _transition(self, state: CircuitBreakerState, state_to: CircuitState) -> None:
        state_from = state.state
        state.state = state_to
        logger.info(
            "Circuit %s: %s -> %s (failures=%d)",
            self.name,
            state_from.value,
            state_to.value,
            state.consecutive_failures,
        )
        if self._listener is not None:
            self._listener(self.name, state_from, state_to, replace(state))


class CircuitBreakerRegistry:
    """Owns one breaker per dependency key, all backed by the same store."""

    def __init__(
        self,
        *,
        config: CircuitBreakerConfig | None = None,
        overrides: dict[str, CircuitBreakerConfig] | None = None,
        store: BreakerStateStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        listener: TransitionListener | None = None,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.overrides = dict(overrides or {})
        self.store = store or InMemoryBreakerStateStore()
        self._clock = clock
        self._listener = listener
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    config=self.overrides.get(name, self.config),
                    store=self.store,
                    clock=self._clock,
                    listener=self._listener,
                )
                self._breakers[name] = breaker
            return breaker

    def states(self) -> dict[str, CircuitState]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.state for breaker in breakers}
