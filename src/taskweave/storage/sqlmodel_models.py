"""SQLModel ORM tables for engine storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, text
from sqlmodel import Field, SQLModel


class DeadLetter(SQLModel, table=True):
    __tablename__ = "dead_letters"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "idx_dead_letters_pending",
            "created_at",
            sqlite_where=text("replayed_at IS NULL"),
        ),
    )

    dead_letter_id: str = Field(primary_key=True)
    task_id: str = Field(index=True)
    task_type: str = Field(index=True)
    priority: int = 0
    max_retries: int = 0
    retries_attempted: int = 0
    timeout_seconds: float | None = None
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    payload_replayable: bool = True
    error_kind: str = Field(index=True)
    error_summary: str = Field(sa_column=Column(Text, nullable=False))
    reason_code: str | None = None
    failed_stage: str | None = None
    attempts_json: str = Field(sa_column=Column(Text, nullable=False))
    first_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    replayed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    replay_task_id: str | None = None
