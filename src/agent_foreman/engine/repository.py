"""Persistent task store for orchestrated agent runs."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_foreman.engine.models import (
    LogEventKind,
    ProcessSessionView,
    TaskCreate,
    TaskDetails,
    TaskLogEntryView,
    TaskStats,
    TaskStatus,
    TaskView,
    accrue_time_ms,
    format_status_change,
)
from agent_foreman.storage.alembic_runner import upgrade_head
from agent_foreman.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_foreman.storage.sqlmodel_models import (
    OrchestratorTask,
    OrchestratorTaskLog,
    ProcessSession,
)

logger = logging.getLogger(__name__)


class TaskRepository:
    """Task, process session and audit log persistence backed by SQLModel + SQLite.

    Status mutations are guarded ``UPDATE ... WHERE status = <expected>``
    statements so that the reconciler, the scheduler and operator commands can
    race without overwriting each other.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Insert a task ingested from the external source."""

        now = utc_now()
        with Session(self.engine) as session:
            row = OrchestratorTask(
                external_task_id=payload.external_task_id,
                external_list_id=payload.external_list_id,
                name=payload.name,
                description=payload.description,
                priority=payload.priority,
                status=payload.status.value,
                worktree_path=payload.worktree_path,
                time_spent_ms=0,
                started_at=_optional_db_datetime(payload.started_at),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise RuntimeError(
                    f"Task already exists: external_task_id={payload.external_task_id}",
                ) from error
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: int) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(OrchestratorTask, task_id)
            return _to_task_view(row) if row is not None else None

    def find_by_external_id(self, external_task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(OrchestratorTask).where(
                    OrchestratorTask.external_task_id == external_task_id,
                ),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 100,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(OrchestratorTask)
                .order_by(col(OrchestratorTask.created_at).desc(), col(OrchestratorTask.id).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(OrchestratorTask.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def count_by_status(self, status: TaskStatus) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(OrchestratorTask)
                .where(OrchestratorTask.status == status.value),
            ).one()

    def status_counts(self) -> TaskStats:
        """Count tasks per status; ``running_processes`` is left for the caller."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(OrchestratorTask.status, func.count()).group_by(OrchestratorTask.status),
            ).all()
        known = {status.value for status in TaskStatus}
        stats = TaskStats()
        for status, count in rows:
            if status in known:
                setattr(stats, status, count)
        return stats

    def record_exit(
        self,
        *,
        task_id: int,
        exit_code: int,
        output_log: str,
        session_id: int | None = None,
    ) -> TaskView | None:
        """Apply a process exit to the task and close its open session.

        Only an ``in_progress`` task changes status (``completed`` for exit code
        0, ``failed`` otherwise) and accrues run time. Any other status is kept;
        the output log is stored regardless. Returns None for unknown tasks.

        When ``session_id`` is given and a newer process session exists for the
        task, the exit belongs to a superseded spawn and leaves the task as is.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(OrchestratorTask, task_id)
            if row is None:
                return None

            if session_id is not None:
                latest_id = session.exec(
                    select(func.max(ProcessSession.id)).where(ProcessSession.task_id == task_id),
                ).one()
                if latest_id is not None and latest_id != session_id:
                    logger.info(
                        "Ignoring stale exit of task %s (session %s, latest session %s)",
                        task_id,
                        session_id,
                        latest_id,
                    )
                    return _to_task_view(row)

            previous = TaskStatus(row.status)
            transitioned = False
            if previous is TaskStatus.IN_PROGRESS:
                final_status = TaskStatus.COMPLETED if exit_code == 0 else TaskStatus.FAILED
                result = session.exec(
                    sa_update(OrchestratorTask)
                    .where(
                        col(OrchestratorTask.id) == task_id,
                        col(OrchestratorTask.status) == TaskStatus.IN_PROGRESS.value,
                    )
                    .values(
                        status=final_status.value,
                        completed_at=to_db_datetime(now),
                        time_spent_ms=_accrued(row, now),
                        output_log=output_log,
                        updated_at=to_db_datetime(now),
                    ),
                )
                transitioned = result.rowcount == 1
                if transitioned:
                    self._add_log(
                        session=session,
                        task_id=task_id,
                        event_type=LogEventKind.STATUS,
                        message=format_status_change(
                            previous,
                            final_status,
                            f"exit code {exit_code}",
                        ),
                    )
            if not transitioned:
                logger.info(
                    "Task %s exited with code %s while %s; keeping status",
                    task_id,
                    exit_code,
                    row.status,
                )
                session.exec(
                    sa_update(OrchestratorTask)
                    .where(col(OrchestratorTask.id) == task_id)
                    .values(output_log=output_log, updated_at=to_db_datetime(now)),
                )

            self._close_open_sessions(
                session=session,
                task_id=task_id,
                exit_code=exit_code,
                now=now,
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def mark_failed(self, task_id: int, *, note: str) -> bool:
        """Fail an ``in_progress`` task that could not be provisioned or spawned."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(OrchestratorTask)
                .where(
                    col(OrchestratorTask.id) == task_id,
                    col(OrchestratorTask.status) == TaskStatus.IN_PROGRESS.value,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    completed_at=to_db_datetime(now),
                    time_spent_ms=_accrued(row, now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_log(
                session=session,
                task_id=task_id,
                event_type=LogEventKind.STATUS,
                message=format_status_change(TaskStatus.IN_PROGRESS, TaskStatus.FAILED, note),
            )
            self._close_open_sessions(session=session, task_id=task_id, exit_code=None, now=now)
            session.commit()
            return True

    def stop_task(self, task_id: int) -> TaskView:
        """Move an ``in_progress`` task to ``stopped``, accruing its run time."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            if row.status != TaskStatus.IN_PROGRESS.value:
                raise RuntimeError(
                    f"Task {task_id} cannot be stopped from status={row.status}",
                )
            result = session.exec(
                sa_update(OrchestratorTask)
                .where(
                    col(OrchestratorTask.id) == task_id,
                    col(OrchestratorTask.status) == TaskStatus.IN_PROGRESS.value,
                )
                .values(
                    status=TaskStatus.STOPPED.value,
                    time_spent_ms=_accrued(row, now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while stopping; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_log(
                session=session,
                task_id=task_id,
                event_type=LogEventKind.STATUS,
                message=format_status_change(
                    TaskStatus.IN_PROGRESS,
                    TaskStatus.STOPPED,
                    "stopped by user",
                ),
            )
            self._close_open_sessions(session=session, task_id=task_id, exit_code=None, now=now)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def begin_restart(self, task_id: int, *, worktree_path: str) -> tuple[TaskView, TaskStatus]:
        """Move a ``stopped``/``failed`` task back to ``in_progress`` with a fresh ``started_at``.

        Returns the updated task and the status it had before, so a failed spawn
        can be rolled back with ``revert_restart``.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.STOPPED, TaskStatus.FAILED}:
                raise RuntimeError(
                    f"Only stopped/failed tasks can be restarted, got {row.status}.",
                )
            result = session.exec(
                sa_update(OrchestratorTask)
                .where(
                    col(OrchestratorTask.id) == task_id,
                    col(OrchestratorTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.IN_PROGRESS.value,
                    started_at=to_db_datetime(now),
                    completed_at=None,
                    worktree_path=worktree_path,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while restarting; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_log(
                session=session,
                task_id=task_id,
                event_type=LogEventKind.STATUS,
                message=format_status_change(previous, TaskStatus.IN_PROGRESS, "restart"),
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row), previous

    def revert_restart(self, task_id: int, *, previous: TaskStatus, note: str) -> bool:
        """Undo ``begin_restart`` after the agent failed to spawn."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(OrchestratorTask)
                .where(
                    col(OrchestratorTask.id) == task_id,
                    col(OrchestratorTask.status) == TaskStatus.IN_PROGRESS.value,
                )
                .values(status=previous.value, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_log(
                session=session,
                task_id=task_id,
                event_type=LogEventKind.STATUS,
                message=format_status_change(TaskStatus.IN_PROGRESS, previous, note),
            )
            self._close_open_sessions(session=session, task_id=task_id, exit_code=None, now=now)
            session.commit()
            return True

    def complete_task(self, task_id: int) -> TaskView:
        """Manually complete a task from any non-completed status."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous is TaskStatus.COMPLETED:
                raise RuntimeError(f"Task {task_id} is already completed.")
            time_spent_ms = row.time_spent_ms
            if previous is TaskStatus.IN_PROGRESS:
                time_spent_ms = _accrued(row, now)
            result = session.exec(
                sa_update(OrchestratorTask)
                .where(
                    col(OrchestratorTask.id) == task_id,
                    col(OrchestratorTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    completed_at=to_db_datetime(now),
                    time_spent_ms=time_spent_ms,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while completing; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_log(
                session=session,
                task_id=task_id,
                event_type=LogEventKind.STATUS,
                message=format_status_change(previous, TaskStatus.COMPLETED, "marked complete"),
            )
            self._close_open_sessions(session=session, task_id=task_id, exit_code=0, now=now)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def delete_task(self, task_id: int) -> TaskView:
        """Delete a task together with its sessions and audit log."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            view = _to_task_view(row)
            session.exec(sa_delete(ProcessSession).where(col(ProcessSession.task_id) == task_id))
            session.exec(
                sa_delete(OrchestratorTaskLog).where(col(OrchestratorTaskLog.task_id) == task_id),
            )
            session.delete(row)
            session.commit()
            return view

    def open_process_session(self, task_id: int, *, pid: int | None = None) -> ProcessSessionView:
        """Open a new process session, closing any stale open one first."""

        now = utc_now()
        with Session(self.engine) as session:
            self._get_task_row(session=session, task_id=task_id)
            self._close_open_sessions(session=session, task_id=task_id, exit_code=None, now=now)
            row = ProcessSession(
                task_id=task_id,
                pid=pid,
                started_at=to_db_datetime(now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session_view(row)

    def set_session_pid(self, session_id: int, pid: int) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(ProcessSession)
                .where(col(ProcessSession.id) == session_id)
                .values(pid=pid, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def open_session_pid(self, task_id: int) -> int | None:
        """Pid recorded on the task's open process session, if any."""

        with Session(self.engine) as session:
            row = session.exec(
                select(ProcessSession)
                .where(
                    ProcessSession.task_id == task_id,
                    col(ProcessSession.ended_at).is_(None),
                )
                .order_by(col(ProcessSession.id).desc())
                .limit(1),
            ).one_or_none()
            return row.pid if row is not None else None

    def list_sessions(self, task_id: int) -> list[ProcessSessionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ProcessSession)
                .where(ProcessSession.task_id == task_id)
                .order_by(col(ProcessSession.started_at).asc(), col(ProcessSession.id).asc()),
            ).all()
        return [_to_session_view(row) for row in rows]

    def add_task_log(
        self,
        task_id: int,
        event_type: LogEventKind,
        message: str,
        *,
        is_stderr: bool | None = None,
    ) -> bool:
        """Append an audit entry; False when the task no longer exists."""

        with Session(self.engine) as session:
            self._add_log(
                session=session,
                task_id=task_id,
                event_type=event_type,
                message=message,
                is_stderr=is_stderr,
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug("Dropping %s log entry for missing task %s", event_type.value, task_id)
                return False
            return True

    def list_task_logs(
        self,
        task_id: int,
        *,
        event_type: LogEventKind | None = None,
        limit: int | None = None,
    ) -> list[TaskLogEntryView]:
        """Return audit entries in insertion order."""

        with Session(self.engine) as session:
            statement = (
                select(OrchestratorTaskLog)
                .where(OrchestratorTaskLog.task_id == task_id)
                .order_by(col(OrchestratorTaskLog.id).asc())
            )
            if event_type is not None:
                statement = statement.where(OrchestratorTaskLog.event_type == event_type.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_log_view(row) for row in rows]

    def get_task_details(self, task_id: int) -> TaskDetails | None:
        """Return the task with its process sessions and audit trail."""

        task = self.get_task(task_id)
        if task is None:
            return None
        return TaskDetails(
            task=task,
            sessions=self.list_sessions(task_id),
            logs=self.list_task_logs(task_id),
        )

    def _get_task_row(self, *, session: Session, task_id: int) -> OrchestratorTask:
        row = session.get(OrchestratorTask, task_id)
        if row is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return row

    def _close_open_sessions(
        self,
        *,
        session: Session,
        task_id: int,
        exit_code: int | None,
        now: datetime,
    ) -> int:
        result = session.exec(
            sa_update(ProcessSession)
            .where(
                col(ProcessSession.task_id) == task_id,
                col(ProcessSession.ended_at).is_(None),
            )
            .values(
                ended_at=to_db_datetime(now),
                exit_code=exit_code,
                updated_at=to_db_datetime(now),
            ),
        )
        return result.rowcount

    def _add_log(
        self,
        *,
        session: Session,
        task_id: int,
        event_type: LogEventKind,
        message: str,
        is_stderr: bool | None = None,
    ) -> None:
        session.add(
            OrchestratorTaskLog(
                task_id=task_id,
                event_type=event_type.value,
                message=message,
                is_stderr=is_stderr,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _accrued(row: OrchestratorTask, now: datetime) -> int:
    started_at = to_utc_aware_datetime(row.started_at) if row.started_at is not None else None
    return accrue_time_ms(row.time_spent_ms, started_at, now)


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task_view(row: OrchestratorTask) -> TaskView:
    return TaskView(
        id=row.id or 0,
        external_task_id=row.external_task_id,
        external_list_id=row.external_list_id,
        name=row.name,
        description=row.description,
        priority=row.priority,
        status=TaskStatus(row.status),
        worktree_path=row.worktree_path,
        time_spent_ms=row.time_spent_ms,
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        output_log=row.output_log,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_session_view(row: ProcessSession) -> ProcessSessionView:
    return ProcessSessionView(
        id=row.id or 0,
        task_id=row.task_id,
        pid=row.pid,
        started_at=to_utc_aware_datetime(row.started_at),
        ended_at=_optional_aware(row.ended_at),
        exit_code=row.exit_code,
    )


def _to_log_view(row: OrchestratorTaskLog) -> TaskLogEntryView:
    return TaskLogEntryView(
        id=row.id or 0,
        task_id=row.task_id,
        event_type=LogEventKind(row.event_type),
        message=row.message,
        is_stderr=row.is_stderr,
        created_at=to_utc_aware_datetime(row.created_at),
    )
