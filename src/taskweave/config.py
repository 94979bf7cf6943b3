"""Runtime configuration for the task engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from taskweave.orchestrator.circuit_breaker import CircuitBreakerConfig
from taskweave.orchestrator.resilience import DEFAULT_TIMEOUT_SECONDS, RetryPolicy
from taskweave.orchestrator.task_queue import QueueOrdering
from taskweave.orchestrator.worker import ScalingPolicy


@dataclass(slots=True)
class QueueSettings:
    """Task queue settings."""

    capacity: int | None = 1_000
    ordering: QueueOrdering = QueueOrdering.FIFO


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool settings; scaling is off unless both bounds differ."""

    workers: int = 4
    min_workers: int | None = None
    max_workers: int | None = None
    scale_high_watermark: int = 10
    scale_low_watermark: int = 0
    scale_sustain_seconds: float = 1.0

    def scaling_policy(self) -> ScalingPolicy | None:
        if self.min_workers is None and self.max_workers is None:
            return None
        min_workers = self.min_workers or 1
        max_workers = self.max_workers or max(self.workers, min_workers)
        if min_workers == max_workers:
            return None
        return ScalingPolicy(
            min_workers=min_workers,
            max_workers=max_workers,
            high_watermark=self.scale_high_watermark,
            low_watermark=self.scale_low_watermark,
            sustain_seconds=self.scale_sustain_seconds,
        )


@dataclass(slots=True)
class RetrySettings:
    """Per-task retry and deadline defaults."""

    max_retries: int = 3
    base_seconds: float = 0.5
    max_seconds: float = 30.0
    task_timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS

    def policy(self) -> RetryPolicy:
        return RetryPolicy(base_delay_seconds=self.base_seconds, max_delay_seconds=self.max_seconds)


@dataclass(slots=True)
class BreakerSettings:
    """Circuit breaker defaults applied to every dependency."""

    failure_threshold: int = 5
    recovery_seconds: float = 30.0
    success_threshold: int = 1
    half_open_max_calls: int = 1
    window_seconds: float | None = None

    def config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            recovery_timeout_seconds=self.recovery_seconds,
            success_threshold=self.success_threshold,
            half_open_max_calls=self.half_open_max_calls,
            failure_window_seconds=self.window_seconds,
        )


@dataclass(slots=True)
class CacheSettings:
    """Result cache bounds; ``max_entries=0`` disables the cache."""

    max_entries: int = 0
    ttl_seconds: float | None = 300.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by engine concerns."""

    db_path: Path = Path(".taskweave.db")
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    breaker: BreakerSettings = field(default_factory=BreakerSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    drain_timeout_seconds: float = 30.0
    max_iterations: int = 5
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``TASKWEAVE_*`` environment variables."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKWEAVE_DB_PATH", ".taskweave.db")),
            queue=QueueSettings(
                capacity=_env_optional_int("TASKWEAVE_QUEUE_CAPACITY", 1_000),
                ordering=_env_ordering("TASKWEAVE_QUEUE_ORDERING"),
            ),
            worker=WorkerSettings(
                workers=_env_int("TASKWEAVE_WORKERS", 4),
                min_workers=_env_optional_int("TASKWEAVE_MIN_WORKERS", None),
                max_workers=_env_optional_int("TASKWEAVE_MAX_WORKERS", None),
                scale_high_watermark=_env_int("TASKWEAVE_SCALE_HIGH_WATERMARK", 10),
                scale_low_watermark=_env_int("TASKWEAVE_SCALE_LOW_WATERMARK", 0),
                scale_sustain_seconds=_env_float("TASKWEAVE_SCALE_SUSTAIN_SECONDS", 1.0),
            ),
            retry=RetrySettings(
                max_retries=_env_int("TASKWEAVE_MAX_RETRIES", 3),
                base_seconds=_env_float("TASKWEAVE_RETRY_BASE_SECONDS", 0.5),
                max_seconds=_env_float("TASKWEAVE_RETRY_MAX_SECONDS", 30.0),
                task_timeout_seconds=_env_optional_float(
                    "TASKWEAVE_TASK_TIMEOUT_SECONDS",
                    DEFAULT_TIMEOUT_SECONDS,
                ),
            ),
            breaker=BreakerSettings(
                failure_threshold=_env_int("TASKWEAVE_BREAKER_FAILURE_THRESHOLD", 5),
                recovery_seconds=_env_float("TASKWEAVE_BREAKER_RECOVERY_SECONDS", 30.0),
                success_threshold=_env_int("TASKWEAVE_BREAKER_SUCCESS_THRESHOLD", 1),
                half_open_max_calls=_env_int("TASKWEAVE_BREAKER_HALF_OPEN_MAX_CALLS", 1),
                window_seconds=_env_optional_float("TASKWEAVE_BREAKER_WINDOW_SECONDS", None),
            ),
            cache=CacheSettings(
                max_entries=_env_int("TASKWEAVE_CACHE_MAX_ENTRIES", 0),
                ttl_seconds=_env_optional_float("TASKWEAVE_CACHE_TTL_SECONDS", 300.0),
            ),
            drain_timeout_seconds=_env_float("TASKWEAVE_DRAIN_TIMEOUT_SECONDS", 30.0),
            max_iterations=_env_int("TASKWEAVE_MAX_ITERATIONS", 5),
            log_level=os.getenv("TASKWEAVE_LOG_LEVEL", "WARNING").strip().upper(),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error naming the offending variable."""

        if self.queue.capacity is not None and self.queue.capacity <= 0:
            raise ValueError("TASKWEAVE_QUEUE_CAPACITY must be > 0 (or empty for unbounded).")
        if self.worker.workers <= 0:
            raise ValueError("TASKWEAVE_WORKERS must be > 0.")
        if self.worker.min_workers is not None and self.worker.min_workers <= 0:
            raise ValueError("TASKWEAVE_MIN_WORKERS must be > 0.")
        if (
            self.worker.min_workers is not None
            and self.worker.max_workers is not None
            and self.worker.max_workers < self.worker.min_workers
        ):
            raise ValueError("TASKWEAVE_MAX_WORKERS must be >= TASKWEAVE_MIN_WORKERS.")
        if self.worker.scale_low_watermark < 0:
            raise ValueError("TASKWEAVE_SCALE_LOW_WATERMARK must be >= 0.")
        if self.worker.scale_high_watermark <= self.worker.scale_low_watermark:
            raise ValueError(
                "TASKWEAVE_SCALE_HIGH_WATERMARK must be > TASKWEAVE_SCALE_LOW_WATERMARK.",
            )
        if self.retry.max_retries < 0:
            raise ValueError("TASKWEAVE_MAX_RETRIES must be >= 0.")
        if self.retry.base_seconds < 0:
            raise ValueError("TASKWEAVE_RETRY_BASE_SECONDS must be >= 0.")
        if self.retry.max_seconds < self.retry.base_seconds:
            raise ValueError("TASKWEAVE_RETRY_MAX_SECONDS must be >= TASKWEAVE_RETRY_BASE_SECONDS.")
        if self.retry.task_timeout_seconds is not None and self.retry.task_timeout_seconds <= 0:
            raise ValueError("TASKWEAVE_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.breaker.failure_threshold <= 0:
            raise ValueError("TASKWEAVE_BREAKER_FAILURE_THRESHOLD must be > 0.")
        if self.breaker.recovery_seconds < 0:
            raise ValueError("TASKWEAVE_BREAKER_RECOVERY_SECONDS must be >= 0.")
        if self.breaker.success_threshold <= 0:
            raise ValueError("TASKWEAVE_BREAKER_SUCCESS_THRESHOLD must be > 0.")
        if self.breaker.half_open_max_calls <= 0:
            raise ValueError("TASKWEAVE_BREAKER_HALF_OPEN_MAX_CALLS must be > 0.")
        if self.breaker.window_seconds is not None and self.breaker.window_seconds <= 0:
            raise ValueError("TASKWEAVE_BREAKER_WINDOW_SECONDS must be > 0.")
        if self.cache.max_entries < 0:
            raise ValueError("TASKWEAVE_CACHE_MAX_ENTRIES must be >= 0.")
        if self.cache.ttl_seconds is not None and self.cache.ttl_seconds <= 0:
            raise ValueError("TASKWEAVE_CACHE_TTL_SECONDS must be > 0.")
        if self.drain_timeout_seconds < 0:
            raise ValueError("TASKWEAVE_DRAIN_TIMEOUT_SECONDS must be >= 0.")
        if self.max_iterations <= 0:
            raise ValueError("TASKWEAVE_MAX_ITERATIONS must be > 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid TASKWEAVE_LOG_LEVEL: {self.log_level!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_optional_int(name: str, default: int | None) -> int | None:
    value = os.getenv(name)
    if value is None:
        return default
    if not value.strip() or value.strip().lower() == "none":
        return None
    return _env_int(name, 0)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_optional_float(name: str, default: float | None) -> float | None:
    value = os.getenv(name)
    if value is None:
        return default
    if not value.strip() or value.strip().lower() == "none":
        return None
    return _env_float(name, 0.0)


def _env_ordering(name: str) -> QueueOrdering:
    value = os.getenv(name, QueueOrdering.FIFO.value).strip().lower()
    try:
        return QueueOrdering(value)
    except ValueError as error:
        raise ValueError(
            f"Invalid value for {name}: {value!r}. Expected 'fifo' or 'priority'.",
        ) from error
