"""Dispatch journal baseline: attempts and events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "dispatch_attempts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("run_timestamp", sa.String(), nullable=False),
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("fallback_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rate_limited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("timed_out", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_dispatch_attempts_run_timestamp",
        "dispatch_attempts",
        ["run_timestamp"],
        unique=False,
    )
    op.create_index("ix_dispatch_attempts_task_id", "dispatch_attempts", ["task_id"], unique=False)
    op.create_index("ix_dispatch_attempts_status", "dispatch_attempts", ["status"], unique=False)
    op.create_index(
        "idx_dispatch_attempts_task_started",
        "dispatch_attempts",
        ["task_id", "started_at"],
        unique=False,
    )

    op.create_table(
        "dispatch_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("task_id", sa.Integer(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_dispatch_events_event_type",
        "dispatch_events",
        ["event_type"],
        unique=False,
    )
    op.create_index("ix_dispatch_events_task_id", "dispatch_events", ["task_id"], unique=False)
    op.create_index("idx_dispatch_events_time", "dispatch_events", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_dispatch_events_time", table_name="dispatch_events")
    op.drop_index("ix_dispatch_events_task_id", table_name="dispatch_events")
    op.drop_index("ix_dispatch_events_event_type", table_name="dispatch_events")
    op.drop_table("dispatch_events")
    op.drop_index("idx_dispatch_attempts_task_started", table_name="dispatch_attempts")
    op.drop_index("ix_dispatch_attempts_status", table_name="dispatch_attempts")
    op.drop_index("ix_dispatch_attempts_task_id", table_name="dispatch_attempts")
    op.drop_index("ix_dispatch_attempts_run_timestamp", table_name="dispatch_attempts")
    op.drop_table("dispatch_attempts")
