"""Deterministic local executors for demos, smoke runs, and tests."""

from __future__ import annotations

import random
import threading
import time
from typing import Any

from taskweave.orchestrator.backend.base import Deadline
from taskweave.orchestrator.errors import PermanentError, TransientError


class EchoExecutor:
    """Returns the payload, optionally tagged with a prefix."""

    def __init__(self, *, name: str = "echo", prefix: str | None = None) -> None:
        self.name = name
        self.prefix = prefix
        self.calls = 0
        self._lock = threading.Lock()

    def execute(self, payload: Any, deadline: Deadline) -> Any:
        deadline.raise_if_cancelled()
        with self._lock:
            self.calls += 1
        if self.prefix is None:
            return payload
        return f"{self.prefix}{payload}"


class SleepExecutor:
    """Sleeps cooperatively, then returns the payload."""

    def __init__(self, *, seconds: float, name: str = "sleep", cooperative: bool = True) -> None:
        self.name = name
        self.seconds = seconds
        self.cooperative = cooperative

    def execute(self, payload: Any, deadline: Deadline) -> Any:
        if not self.cooperative:
            time.sleep(self.seconds)
            return payload
        if deadline.token.wait(self.seconds):
            deadline.raise_if_cancelled()
        deadline.raise_if_cancelled()
        return payload


class FlakyExecutor:
    """Fails with a seeded probability; transient failures by default."""

    def __init__(
        self,
        *,
        failure_rate: float,
        seed: int = 0,
        name: str = "flaky",
        transient: bool = True,
    ) -> None:
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError("failure_rate must be within [0, 1].")
        self.name = name
        self.failure_rate = failure_rate
        self.transient = transient
        self._random = random.Random(seed)  # noqa: S311
        self._lock = threading.Lock()

    def execute(self, payload: Any, deadline: Deadline) -> Any:
        deadline.raise_if_cancelled()
        with self._lock:
            roll = self._random.random()
        if roll < self.failure_rate:
            if self.transient:
                raise TransientError(
                    f"{self.name}: service temporarily unavailable",
                    reason_code=f"{self.name}_flaky_transient",
                )
            raise PermanentError(
                f"{self.name}: invalid input rejected",
                reason_code=f"{self.name}_flaky_permanent",
            )
        return payload


class ScriptedExecutor:
    """Replays a fixed script of results/exceptions, then repeats the last entry."""

    def __init__(self, script: list[Any], *, name: str = "scripted") -> None:
        if not script:
            raise ValueError("script must not be empty.")
        self.name = name
        self._script = list(script)
        self.calls = 0
        self._lock = threading.Lock()

    def execute(self, payload: Any, deadline: Deadline) -> Any:
        deadline.raise_if_cancelled()
        with self._lock:
            index = min(self.calls, len(self._script) - 1)
            self.calls += 1
        step = self._script[index]
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(payload)
        return step
