"""SQLModel ORM tables for the orchestrator task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text
from sqlmodel import Field, SQLModel


class OrchestratorTask(SQLModel, table=True):
    __tablename__ = "orchestrator_tasks"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    external_task_id: str = Field(unique=True, index=True)
    external_list_id: str
    name: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    priority: int | None = None
    status: str = Field(index=True)
    worktree_path: str | None = None
    time_spent_ms: int = Field(default=0)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    output_log: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProcessSession(SQLModel, table=True):
    __tablename__ = "process_sessions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_process_sessions_task_open", "task_id", "ended_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("orchestrator_tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    pid: int | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    exit_code: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OrchestratorTaskLog(SQLModel, table=True):
    __tablename__ = "orchestrator_task_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_logs_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("orchestrator_tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    is_stderr: bool | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
