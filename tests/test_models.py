from __future__ import annotations

import allure
import pytest

from taskweave.orchestrator.errors import InvalidTransitionError
from taskweave.orchestrator.models import (
    AttemptRecord,
    ErrorInfo,
    ErrorKind,
    Outcome,
    RetryBudget,
    Task,
    TaskStatus,
    outcome_for_kind,
)
from taskweave.storage.common import utc_now

pytestmark = [
    allure.epic("Engine Core"),
    allure.feature("Task Lifecycle"),
]


def test_task_ids_are_unique() -> None:
    assert len({Task().task_id for _ in range(100)}) == 100


def test_transition_sets_timestamps() -> None:
    task = Task(payload="x")
    assert task.transition(TaskStatus.RUNNING) == TaskStatus.QUEUED
    assert task.started_at is not None
    assert task.finished_at is None

    assert task.transition(TaskStatus.SUCCEEDED) == TaskStatus.RUNNING
    assert task.finished_at is not None
    assert task.is_terminal


@pytest.mark.parametrize(
    ("path", "illegal"),
    [
        ((), TaskStatus.SUCCEEDED),
        ((TaskStatus.RUNNING,), TaskStatus.QUEUED),
        ((TaskStatus.RUNNING, TaskStatus.FAILED), TaskStatus.RUNNING),
        ((TaskStatus.CANCELLED,), TaskStatus.RUNNING),
        ((TaskStatus.RUNNING, TaskStatus.DEAD_LETTERED), TaskStatus.SUCCEEDED),
    ],
)
def test_illegal_transitions_are_rejected(path: tuple[TaskStatus, ...], illegal: TaskStatus) -> None:
    task = Task()
    for status in path:
        task.transition(status)
    before = task.status

    with pytest.raises(InvalidTransitionError):
        task.transition(illegal)
    assert task.status == before


def test_retry_budget_never_exceeds_max() -> None:
    budget = RetryBudget(max_retries=2)
    assert [budget.try_consume() for _ in range(4)] == [True, True, False, False]
    assert budget.used == 2
    assert budget.remaining == 0


def test_outcome_mapping_for_error_kinds() -> None:
    assert outcome_for_kind(ErrorKind.RATE_LIMITED) == Outcome.TRANSIENT_FAILURE
    assert outcome_for_kind(ErrorKind.PARTIAL_FAILURE) == Outcome.PERMANENT_FAILURE
    assert outcome_for_kind(ErrorKind.CIRCUIT_OPEN) == Outcome.CIRCUIT_OPEN


def test_attempt_record_serialization_keeps_error() -> None:
    now = utc_now()
    record = AttemptRecord(
        attempt_no=2,
        executor="svc",
        stage="enrich",
        outcome=Outcome.TIMEOUT,
        started_at=now,
        finished_at=now,
        duration_seconds=0.5,
        error=ErrorInfo(kind=ErrorKind.TIMEOUT, summary="slow", reason_code="svc_timeout"),
    )
    restored = AttemptRecord.from_dict(record.to_dict())
    assert restored == record
