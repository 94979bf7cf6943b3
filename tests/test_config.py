from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskweave.config import Settings, WorkerSettings
from taskweave.orchestrator.task_queue import QueueOrdering

pytestmark = [
    allure.epic("Engine Core"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()
    settings.validate()

    assert settings.queue.capacity == 1_000
    assert settings.retry.max_retries == 3
    assert settings.worker.scaling_policy() is None


def test_from_env_reads_taskweave_variables(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKWEAVE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("TASKWEAVE_QUEUE_CAPACITY", "")
    monkeypatch.setenv("TASKWEAVE_QUEUE_ORDERING", "Priority")
    monkeypatch.setenv("TASKWEAVE_WORKERS", "6")
    monkeypatch.setenv("TASKWEAVE_MAX_RETRIES", "5")
    monkeypatch.setenv("TASKWEAVE_RETRY_BASE_SECONDS", "0.25")
    monkeypatch.setenv("TASKWEAVE_TASK_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("TASKWEAVE_BREAKER_FAILURE_THRESHOLD", "3")
    monkeypatch.setenv("TASKWEAVE_BREAKER_WINDOW_SECONDS", "60")
    monkeypatch.setenv("TASKWEAVE_CACHE_TTL_SECONDS", "none")
    monkeypatch.setenv("TASKWEAVE_LOG_LEVEL", "debug")

    settings = Settings.from_env()
    settings.validate()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.queue.capacity is None
    assert settings.queue.ordering == QueueOrdering.PRIORITY
    assert settings.worker.workers == 6
    assert settings.retry.max_retries == 5
    assert settings.retry.policy().base_delay_seconds == 0.25
    assert settings.retry.task_timeout_seconds == 12.5
    assert settings.breaker.config().failure_threshold == 3
    assert settings.breaker.config().failure_window_seconds == 60.0
    assert settings.cache.ttl_seconds is None
    assert settings.log_level == "DEBUG"


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKWEAVE_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("TASKWEAVE_WORKERS", "many", "Invalid integer value for TASKWEAVE_WORKERS"),
        ("TASKWEAVE_RETRY_MAX_SECONDS", "soon", "Invalid number value for TASKWEAVE_RETRY_MAX_SECONDS"),
        ("TASKWEAVE_QUEUE_ORDERING", "lifo", "Invalid value for TASKWEAVE_QUEUE_ORDERING"),
    ],
)
def test_from_env_rejects_malformed_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("TASKWEAVE_QUEUE_CAPACITY", "0"),
        ("TASKWEAVE_WORKERS", "0"),
        ("TASKWEAVE_MAX_RETRIES", "-1"),
        ("TASKWEAVE_RETRY_MAX_SECONDS", "0.1"),
        ("TASKWEAVE_BREAKER_FAILURE_THRESHOLD", "0"),
        ("TASKWEAVE_CACHE_MAX_ENTRIES", "-5"),
        ("TASKWEAVE_MAX_ITERATIONS", "0"),
        ("TASKWEAVE_LOG_LEVEL", "chatty"),
    ],
)
def test_validate_names_the_offending_variable(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
) -> None:
    monkeypatch.setenv(name, value)
    settings = Settings.from_env()

    with pytest.raises(ValueError, match=name):
        settings.validate()


def test_scaling_policy_requires_distinct_bounds() -> None:
    assert WorkerSettings(workers=4, min_workers=4, max_workers=4).scaling_policy() is None

    policy = WorkerSettings(workers=2, min_workers=1, max_workers=6, scale_high_watermark=20).scaling_policy()

    assert policy is not None
    assert (policy.min_workers, policy.max_workers, policy.high_watermark) == (1, 6, 20)


def test_executions_get_a_finite_deadline_unless_opted_out(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TASKWEAVE_TASK_TIMEOUT_SECONDS", raising=False)
    assert Settings().retry.task_timeout_seconds == 30.0
    assert Settings.from_env().retry.task_timeout_seconds == 30.0

    monkeypatch.setenv("TASKWEAVE_TASK_TIMEOUT_SECONDS", "none")

    assert Settings.from_env().retry.task_timeout_seconds is None
