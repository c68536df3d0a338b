"""Controllers for engine CLI commands."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_foreman.clickup.client import ClickUpClient, ClickUpError
from agent_foreman.config import Settings
from agent_foreman.engine.gateway import TerminalConnection, TerminalGateway
from agent_foreman.engine.lifecycle import LifecycleError, TaskLifecycleService
from agent_foreman.engine.models import TaskStats, TaskStatus, TaskView
from agent_foreman.engine.repository import TaskRepository
from agent_foreman.engine.runtime import Engine
from agent_foreman.engine.supervisor import AgentKind, ProcessSupervisor, SessionSupervisor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ServeCommand:
    """CLI input for running the engine."""

    db_path: Path | None
    once: bool
    wait_timeout_seconds: float | None = None


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class TaskCommand:
    """CLI input for single-task operations."""

    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class RestartCommand:
    db_path: Path | None
    task_id: int
    wait_timeout_seconds: float | None = None


@dataclass(slots=True)
class SessionRunCommand:
    """CLI input for an ad-hoc interactive agent session."""

    agent: str
    workdir: Path
    prompt: str
    timeout_seconds: float | None = None


@dataclass(slots=True)
class ListStatusesCommand:
    list_id: str


class EngineCliController:
    """Coordinates engine, task inspection and lifecycle CLI operations."""

    def serve(self, command: ServeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_scheduler()
        engine = _build_engine(settings)
        try:
            engine.repository.init_schema()
            if not command.once:
                engine.serve_forever()
                return ["Engine stopped."]
            summary = engine.run_once(wait_timeout=command.wait_timeout_seconds)
            stats = engine.lifecycle.stats()
        finally:
            engine.close()

        lines = [
            "Tick: "
            f"candidates={summary.candidates} spawned={summary.spawned} "
            f"failed={summary.failed} known={summary.known} "
            f"remote_errors={summary.remote_errors}",
        ]
        if summary.skipped_reason:
            lines.append(f"Skipped: {summary.skipped_reason}")
        lines.extend(_stats_lines(stats))
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_summary(task)}" for task in tasks)
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = repository.status_counts()
        return _stats_lines(stats)

    def inspect_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.id}",
            f"External id: {task.external_task_id} (list {task.external_list_id})",
            f"Name: {task.name}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority if task.priority is not None else '-'}",
            f"Worktree: {task.worktree_path or '-'}",
            f"Time spent: {task.time_spent_ms} ms",
            f"Started: {task.started_at.isoformat() if task.started_at else '-'}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
            f"Sessions: {len(details.sessions)}",
        ]
        for session in details.sessions:
            ended = session.ended_at.isoformat() if session.ended_at else "open"
            lines.append(
                f"  session={session.id} pid={session.pid or '-'} "
                f"started={session.started_at.isoformat()} ended={ended} "
                f"exit_code={session.exit_code if session.exit_code is not None else '-'}",
            )
        audit = [entry for entry in details.logs if entry.event_type.value != "output"]
        lines.append(f"Events: {len(audit)}")
        for entry in audit:
            lines.append(
                f"  {entry.created_at.isoformat()} {entry.event_type.value}: {entry.message}",
            )
        return lines

    def task_logs(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(command.task_id)
        if task is None:
            return [f"Task not found: {command.task_id}"]
        if not task.output_log:
            return [f"No output log for task {task.id} (status={task.status.value})"]
        return task.output_log.splitlines()

    def stop_task(self, command: TaskCommand) -> list[str]:
        with _lifecycle(Settings.from_env(db_path=command.db_path)) as lifecycle:
            task = _run_lifecycle(lambda: lifecycle.stop(command.task_id))
        return [f"Task stopped: {task.id} time_spent_ms={task.time_spent_ms}"]

    def complete_task(self, command: TaskCommand) -> list[str]:
        with _lifecycle(Settings.from_env(db_path=command.db_path)) as lifecycle:
            task = _run_lifecycle(lambda: lifecycle.mark_complete(command.task_id))
        return [f"Task completed: {task.id}"]

    def delete_task(self, command: TaskCommand) -> list[str]:
        with _lifecycle(Settings.from_env(db_path=command.db_path)) as lifecycle:
            task = _run_lifecycle(lambda: lifecycle.delete(command.task_id))
        return [f"Task {task.id} deleted"]

    def restart_task(self, command: RestartCommand) -> list[str]:
        """Restart the agent in the foreground and reconcile its exit before returning."""

        settings = Settings.from_env(db_path=command.db_path)
        engine = _build_engine(settings, with_task_source=False)
        try:
            engine.repository.init_schema()
            task = _run_lifecycle(lambda: engine.lifecycle.restart(command.task_id))
            lines = [f"Task restarted: {task.id} pid={engine.supervisor.pid(task.id) or '-'}"]
            if not engine.supervisor.wait(task.id, command.wait_timeout_seconds):
                lines.append(f"Agent still running after {command.wait_timeout_seconds}s")
            engine.drain()
            final = engine.repository.get_task(task.id)
        finally:
            engine.close()
        if final is not None:
            lines.append(f"Task {final.id} finished with status={final.status.value}")
        return lines

    def run_session(
        self,
        command: SessionRunCommand,
        *,
        emit: Callable[[str], None],
    ) -> list[str]:
        """Run an ad-hoc agent session, streaming its output through ``emit``."""

        supervisor = SessionSupervisor()
        session_id = uuid.uuid4().hex[:12]
        connection = TerminalGateway.for_sessions(supervisor).connect(session_id)
        try:
            pid = supervisor.spawn(
                session_id,
                command.prompt,
                command.workdir,
                AgentKind.parse(command.agent),
            )
            emit(f"Session {session_id} started ({command.agent}, pid={pid})")
            finished = _stream_until_exit(
                supervisor,
                connection,
                session_id,
                emit=emit,
                timeout_seconds=command.timeout_seconds,
            )
        finally:
            connection.close()
            supervisor.output_topic.close()
        if not finished:
            return [f"Session {session_id} killed after {command.timeout_seconds}s"]
        return [f"Session {session_id} finished"]

    def list_statuses(self, command: ListStatusesCommand) -> list[str]:
        settings = Settings.from_env()
        with ClickUpClient.from_settings(settings.clickup) as client:
            statuses = client.list_statuses(command.list_id)
        lines = [f"Statuses: {len(statuses)}"]
        lines.extend(
            f"  {status.status} type={status.status_type or '-'}" for status in statuses
        )
        return lines


def _build_engine(settings: Settings, *, with_task_source: bool = True) -> Engine:
    task_source = _task_source(settings) if with_task_source else None
    db_path = settings.db_path
    return Engine(
        settings,
        task_source=task_source,
        supervisor=ProcessSupervisor.from_settings(settings.supervisor),
        settings_provider=lambda: Settings.from_env(db_path=db_path).scheduler,
    )


def _task_source(settings: Settings) -> ClickUpClient | None:
    if not settings.clickup.api_key:
        logger.warning("ClickUp API key not configured; the scheduler will stay idle")
        return None
    try:
        return ClickUpClient.from_settings(settings.clickup)
    except ClickUpError as error:
        logger.warning("ClickUp client unavailable: %s", error)
        return None


def _run_lifecycle(operation: Callable[[], TaskView]) -> TaskView:
    try:
        return operation()
    except LifecycleError as error:
        raise ValueError(str(error)) from error


def _task_summary(task: TaskView) -> str:
    priority = task.priority if task.priority is not None else "-"
    return (
        f"{task.id} [{task.external_task_id}] status={task.status.value} "
        f"priority={priority} time_spent_ms={task.time_spent_ms} name={task.name}"
    )


def _stats_lines(stats: TaskStats) -> list[str]:
    return [
        "Task stats:",
        f"  queued={stats.queued}",
        f"  in_progress={stats.in_progress}",
        f"  stopped={stats.stopped}",
        f"  completed={stats.completed}",
        f"  failed={stats.failed}",
        f"  running_processes={stats.running_processes}",
    ]


def _parse_status(raw: str | None) -> TaskStatus | None:
    if raw is None:
        return None
    try:
        return TaskStatus(raw.strip().lower())
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {raw!r}") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _lifecycle(settings: Settings) -> Iterator[TaskLifecycleService]:
    with _repository(settings) as repository:
        yield TaskLifecycleService(
            repository=repository,
            supervisor=ProcessSupervisor.from_settings(settings.supervisor),
            settings_provider=lambda: settings.scheduler,
        )


def _stream_until_exit(
    supervisor: SessionSupervisor,
    connection: TerminalConnection[str],
    session_id: str,
    *,
    emit: Callable[[str], None],
    timeout_seconds: float | None,
) -> bool:
    deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
    finished = True
    while not supervisor.wait(session_id, 0.1):
        if deadline is not None and time.monotonic() >= deadline:
            supervisor.kill(session_id)
            supervisor.wait(session_id, 5.0)
            finished = False
            break
        _emit_messages(connection, emit, timeout=0.1)
    _emit_messages(connection, emit, timeout=0)
    return finished


def _emit_messages(
    connection: TerminalConnection[str],
    emit: Callable[[str], None],
    *,
    timeout: float,
) -> None:
    while (message := connection.next_message(timeout=timeout)) is not None:
        if message["type"] == "output":
            emit(message["line"])
        elif message["type"] == "lagged":
            emit(f"[{message['missed']} lines dropped]")
        timeout = 0
