"""Orchestrator tasks, process sessions and task audit log."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20260108_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "orchestrator_tasks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("external_task_id", sa.String(), nullable=False),
        sa.Column("external_list_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("worktree_path", sa.String(), nullable=True),
        sa.Column("time_spent_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("output_log", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_orchestrator_tasks_external_task_id",
        "orchestrator_tasks",
        ["external_task_id"],
        unique=True,
    )
    op.create_index("ix_orchestrator_tasks_status", "orchestrator_tasks", ["status"])

    op.create_table(
        "process_sessions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["orchestrator_tasks.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_process_sessions_task_id", "process_sessions", ["task_id"])
    op.create_index(
        "idx_process_sessions_task_open",
        "process_sessions",
        ["task_id", "ended_at"],
    )

    op.create_table(
        "orchestrator_task_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("is_stderr", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["orchestrator_tasks.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_orchestrator_task_logs_task_id", "orchestrator_task_logs", ["task_id"])
    op.create_index(
        "ix_orchestrator_task_logs_event_type",
        "orchestrator_task_logs",
        ["event_type"],
    )
    op.create_index(
        "idx_task_logs_task_time",
        "orchestrator_task_logs",
        ["task_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("orchestrator_task_logs")
    op.drop_table("process_sessions")
    op.drop_table("orchestrator_tasks")
