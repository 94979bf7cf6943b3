"""Create dead-letter table for exhausted tasks."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "dead_letters",
        sa.Column("dead_letter_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "retries_attempted",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("timeout_seconds", sa.Float(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column(
            "payload_replayable",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("1"),
        ),
        sa.Column("error_kind", sa.String(), nullable=False),
        sa.Column("error_summary", sa.Text(), nullable=False),
        sa.Column("reason_code", sa.String(), nullable=True),
        sa.Column("failed_stage", sa.String(), nullable=True),
        sa.Column("attempts_json", sa.Text(), nullable=False),
        sa.Column("first_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("replayed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("replay_task_id", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("dead_letter_id"),
    )
    op.create_index("ix_dead_letters_task_id", "dead_letters", ["task_id"], unique=False)
    op.create_index("ix_dead_letters_task_type", "dead_letters", ["task_type"], unique=False)
    op.create_index("ix_dead_letters_error_kind", "dead_letters", ["error_kind"], unique=False)
    op.create_index(
        "idx_dead_letters_pending",
        "dead_letters",
        ["created_at"],
        unique=False,
        sqlite_where=sa.text("replayed_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("idx_dead_letters_pending", table_name="dead_letters")
    op.drop_index("ix_dead_letters_error_kind", table_name="dead_letters")
    op.drop_index("ix_dead_letters_task_type", table_name="dead_letters")
    op.drop_index("ix_dead_letters_task_id", table_name="dead_letters")
    op.drop_table("dead_letters")
