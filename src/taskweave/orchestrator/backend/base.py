"""Executor interface, deadlines, and cooperative cancellation."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from taskweave.orchestrator.errors import ExecutionCancelledError


class CancellationToken:
    """Cooperative cancellation flag shared between engine and executor."""

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    def wait(self, timeout: float | None) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""

        if self._parent is None:
            return self._event.wait(timeout)
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self.cancelled:
                return True
            remaining = 0.05 if deadline is None else min(0.05, deadline - time.monotonic())
            if remaining <= 0:
                return self.cancelled
            self._event.wait(remaining)

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)


class Deadline:
    """Per-attempt execution bound handed to executors.

    Executors that honor cancellation poll :meth:`raise_if_cancelled` or
    :attr:`remaining` between units of work.
    """

    def __init__(
        self,
        *,
        expires_at: float | None,
        token: CancellationToken,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.expires_at = expires_at
        self.token = token
        self._clock = clock

    @classmethod
    def after(
        cls,
        seconds: float | None,
        *,
        token: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> Deadline:
        expires_at = None if seconds is None else clock() + seconds
        return cls(expires_at=expires_at, token=token or CancellationToken(), clock=clock)

    @property
    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and self._clock() >= self.expires_at

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled or self.expired

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ExecutionCancelledError(self.token.reason or "deadline exceeded")


@runtime_checkable
class Executor(Protocol):
    """Capability supplied by the caller to perform the actual work."""

    name: str

    def execute(self, payload: Any, deadline: Deadline) -> Any:
        """Run one attempt; raise ``TransientError``/``PermanentError`` on failure."""


class FunctionExecutor:
    """Adapts a plain ``fn(payload, deadline)`` callable to :class:`Executor`."""

    def __init__(self, fn: Callable[[Any, Deadline], Any], *, name: str | None = None) -> None:
        self._fn = fn
        self.name = name or getattr(fn, "__name__", "executor")

    def execute(self, payload: Any, deadline: Deadline) -> Any:
        return self._fn(payload, deadline)

    def __repr__(self) -> str:
        return f"FunctionExecutor(name={self.name!r})"


def as_executor(value: Executor | Callable[[Any, Deadline], Any], *, name: str | None = None) -> Executor:
    """Accept an executor object or a callable and return an :class:`Executor`."""

    if isinstance(value, Executor):
        return value
    if callable(value):
        return FunctionExecutor(value, name=name)
    raise TypeError(f"Unsupported executor: {value!r}")
