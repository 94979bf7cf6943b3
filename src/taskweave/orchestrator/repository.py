"""Durable dead-letter store for tasks that exhausted retries and fallbacks."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskweave.orchestrator.errors import TaskNotFoundError
from taskweave.orchestrator.models import (
    AttemptRecord,
    ErrorInfo,
    ErrorKind,
    ExecutionResult,
    Task,
)
from taskweave.storage.alembic_runner import upgrade_head
from taskweave.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskweave.storage.sqlmodel_models import DeadLetter


@dataclass(slots=True)
class ErrorContext:
    """Why a task was dead-lettered, plus its full attempt history."""

    kind: ErrorKind
    summary: str
    reason_code: str | None = None
    failed_stage: str | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def first_attempt_at(self) -> datetime | None:
        return self.attempts[0].started_at if self.attempts else None

    @property
    def last_attempt_at(self) -> datetime | None:
        return self.attempts[-1].finished_at if self.attempts else None

    @classmethod
    def from_result(cls, result: ExecutionResult, *, attempts: list[AttemptRecord]) -> ErrorContext:
        error = result.error or ErrorInfo(
            kind=ErrorKind.PERMANENT,
            summary="Task failed without error detail.",
        )
        return cls(
            kind=error.kind,
            summary=error.summary,
            reason_code=error.reason_code,
            failed_stage=result.stage,
            attempts=list(attempts),
        )


@dataclass(slots=True)
class DeadLetterView:
    """Read model of one dead-lettered task."""

    dead_letter_id: str
    task_id: str
    task_type: str
    priority: int
    max_retries: int
    retries_attempted: int
    timeout_seconds: float | None
    payload: Any
    payload_replayable: bool
    error_kind: ErrorKind
    error_summary: str
    reason_code: str | None
    failed_stage: str | None
    attempts: list[AttemptRecord]
    first_attempt_at: datetime | None
    last_attempt_at: datetime | None
    created_at: datetime
    replayed_at: datetime | None = None
    replay_task_id: str | None = None

    @property
    def pending_replay(self) -> bool:
        return self.replayed_at is None

    def to_task(self) -> Task:
        """Fresh task carrying the stored payload, linked back to this entry."""

        return Task(
            payload=self.payload,
            task_type=self.task_type,
            priority=self.priority,
            max_retries=self.max_retries,
            timeout_seconds=self.timeout_seconds,
            replay_of=self.dead_letter_id,
        )


class DeadLetterStore(Protocol):
    """Persistence contract for dead letters."""

    def store(self, task: Task, error_context: ErrorContext) -> DeadLetterView:
        """Persist one exhausted task."""

    def get(self, dead_letter_id: str) -> DeadLetterView:
        """Return one entry or raise :class:`TaskNotFoundError`."""

    def list_pending_replay(self, limit: int = 100) -> list[DeadLetterView]:
        """Oldest entries not yet replayed."""

    def list_all(self, limit: int = 100) -> list[DeadLetterView]:
        """Newest entries first."""

    def mark_replayed(self, dead_letter_id: str, *, replay_task_id: str | None = None) -> bool:
        """Flag an entry as replayed; False when already replayed."""


class DeadLetterRepository:
    """Dead-letter persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def store(self, task: Task, error_context: ErrorContext) -> DeadLetterView:
        payload_json, replayable = _encode_payload(task.payload)
        row = DeadLetter(
            dead_letter_id=uuid4().hex,
            task_id=task.task_id,
            task_type=task.task_type,
            priority=task.priority,
            max_retries=task.max_retries,
            retries_attempted=task.retries_attempted,
            timeout_seconds=task.timeout_seconds,
            payload_json=payload_json,
            payload_replayable=replayable,
            error_kind=error_context.kind.value,
            error_summary=error_context.summary,
            reason_code=error_context.reason_code,
            failed_stage=error_context.failed_stage,
            attempts_json=json.dumps(
                [attempt.to_dict() for attempt in error_context.attempts],
                ensure_ascii=True,
            ),
            first_attempt_at=_optional_db_datetime(error_context.first_attempt_at),
            last_attempt_at=_optional_db_datetime(error_context.last_attempt_at),
            created_at=to_db_datetime(utc_now()),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_view(row)

    def get(self, dead_letter_id: str) -> DeadLetterView:
        with Session(self.engine) as session:
            row = session.exec(
                select(DeadLetter).where(DeadLetter.dead_letter_id == dead_letter_id),
            ).one_or_none()
            if row is None:
                raise TaskNotFoundError(f"Dead letter not found: {dead_letter_id}")
            return _to_view(row)

    def list_pending_replay(self, limit: int = 100) -> list[DeadLetterView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DeadLetter)
                .where(col(DeadLetter.replayed_at).is_(None))
                .order_by(col(DeadLetter.created_at).asc())
                .limit(limit),
            ).all()
            return [_to_view(row) for row in rows]

    def list_all(self, limit: int = 100) -> list[DeadLetterView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DeadLetter).order_by(col(DeadLetter.created_at).desc()).limit(limit),
            ).all()
            return [_to_view(row) for row in rows]

    def mark_replayed(self, dead_letter_id: str, *, replay_task_id: str | None = None) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(DeadLetter)
                .where(
                    col(DeadLetter.dead_letter_id) == dead_letter_id,
                    col(DeadLetter.replayed_at).is_(None),
                )
                .values(
                    replayed_at=to_db_datetime(utc_now()),
                    replay_task_id=replay_task_id,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


class InMemoryDeadLetterStore:
    """Process-local dead-letter store for embedded engines and tests."""

    def __init__(self) -> None:
        self._entries: dict[str, DeadLetterView] = {}
        self._lock = threading.Lock()

    def store(self, task: Task, error_context: ErrorContext) -> DeadLetterView:
        _, replayable = _encode_payload(task.payload)
        view = DeadLetterView(
            dead_letter_id=uuid4().hex,
            task_id=task.task_id,
            task_type=task.task_type,
            priority=task.priority,
            max_retries=task.max_retries,
            retries_attempted=task.retries_attempted,
            timeout_seconds=task.timeout_seconds,
            payload=task.payload if replayable else repr(task.payload),
            payload_replayable=replayable,
            error_kind=error_context.kind,
            error_summary=error_context.summary,
            reason_code=error_context.reason_code,
            failed_stage=error_context.failed_stage,
            attempts=list(error_context.attempts),
            first_attempt_at=error_context.first_attempt_at,
            last_attempt_at=error_context.last_attempt_at,
            created_at=utc_now(),
        )
        with self._lock:
            self._entries[view.dead_letter_id] = view
        return view

    def get(self, dead_letter_id: str) -> DeadLetterView:
        with self._lock:
            view = self._entries.get(dead_letter_id)
        if view is None:
            raise TaskNotFoundError(f"Dead letter not found: {dead_letter_id}")
        return view

    def list_pending_replay(self, limit: int = 100) -> list[DeadLetterView]:
        with self._lock:
            pending = [view for view in self._entries.values() if view.pending_replay]
        return pending[:limit]

    def list_all(self, limit: int = 100) -> list[DeadLetterView]:
        with self._lock:
            views = list(self._entries.values())
        return list(reversed(views))[:limit]

    def mark_replayed(self, dead_letter_id: str, *, replay_task_id: str | None = None) -> bool:
        with self._lock:
            view = self._entries.get(dead_letter_id)
            if view is None or not view.pending_replay:
                return False
            view.replayed_at = utc_now()
            view.replay_task_id = replay_task_id
            return True


def _encode_payload(payload: Any) -> tuple[str, bool]:
    try:
        return json.dumps(payload, ensure_ascii=True, sort_keys=True), True
    except (TypeError, ValueError):
        return json.dumps(repr(payload), ensure_ascii=True), False


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return to_db_datetime(value)


def _optional_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return to_utc_aware_datetime(value)


def _to_view(row: DeadLetter) -> DeadLetterView:
    return DeadLetterView(
        dead_letter_id=row.dead_letter_id,
        task_id=row.task_id,
        task_type=row.task_type,
        priority=row.priority,
        max_retries=row.max_retries,
        retries_attempted=row.retries_attempted,
        timeout_seconds=row.timeout_seconds,
        payload=json.loads(row.payload_json),
        payload_replayable=bool(row.payload_replayable),
        error_kind=ErrorKind(row.error_kind),
        error_summary=row.error_summary,
        reason_code=row.reason_code,
        failed_stage=row.failed_stage,
        attempts=[AttemptRecord.from_dict(item) for item in json.loads(row.attempts_json)],
        first_attempt_at=_optional_aware(row.first_attempt_at),
        last_attempt_at=_optional_aware(row.last_attempt_at),
        created_at=to_utc_aware_datetime(row.created_at),
        replayed_at=_optional_aware(row.replayed_at),
        replay_task_id=row.replay_task_id,
    )
