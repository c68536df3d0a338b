from __future__ import annotations

from pathlib import Path

import allure
from conftest import FakeTaskSource, echo_template, seed_task

from agent_foreman.config import SchedulerSettings
from agent_foreman.engine.log_persister import LogPersister
from agent_foreman.engine.models import ExitEvent, LogEventKind, OutputEvent, TaskStatus
from agent_foreman.engine.reconciler import ExitReconciler
from agent_foreman.engine.repository import TaskRepository
from agent_foreman.engine.supervisor import ProcessSupervisor, exit_line

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Exit Reconciliation"),
]


def test_exit_zero_completes_task(repository: TaskRepository) -> None:
    task = seed_task(repository)
    repository.open_process_session(task.id)
    reconciler = ExitReconciler(repository=repository)

    result = reconciler.handle(ExitEvent(task_id=task.id, exit_code=0, output_log="ok"))

    assert result is not None
    assert result.status is TaskStatus.COMPLETED
    assert result.output_log == "ok"
    assert repository.list_sessions(task.id)[0].exit_code == 0


def test_non_zero_exit_fails_task(repository: TaskRepository) -> None:
    task = seed_task(repository)
    reconciler = ExitReconciler(repository=repository)

    result = reconciler.handle(ExitEvent(task_id=task.id, exit_code=2, output_log="trace"))

    assert result is not None
    assert result.status is TaskStatus.FAILED
    assert repository.list_task_logs(task.id)[-1].message == (
        "Status changed: in_progress -> failed (exit code 2)"
    )


def test_exit_for_deleted_task_is_dropped(repository: TaskRepository) -> None:
    reconciler = ExitReconciler(repository=repository)

    assert reconciler.handle(ExitEvent(task_id=777, exit_code=0, output_log="")) is None


def test_successful_run_is_logged_as_remote_time_entry(repository: TaskRepository) -> None:
    task = seed_task(repository, external_id="cu-42")
    source = FakeTaskSource()
    reconciler = ExitReconciler(
        repository=repository,
        task_source=source,
        settings_provider=lambda: SchedulerSettings(sync_time_entries=True),
    )

    result = reconciler.handle(ExitEvent(task_id=task.id, exit_code=0, output_log=""))

    assert result is not None
    assert len(source.time_entries) == 1
    external_id, start_ms, end_ms, duration_ms = source.time_entries[0]
    assert external_id == "cu-42"
    assert end_ms >= start_ms
    assert duration_ms == result.time_spent_ms
    remote = repository.list_task_logs(task.id, event_type=LogEventKind.REMOTE_SYNC)
    assert [entry.message for entry in remote] == [f"ClickUp time entry logged: {duration_ms} ms"]


def test_time_entry_failure_does_not_undo_completion(repository: TaskRepository) -> None:
    task = seed_task(repository)
    source = FakeTaskSource(fail_time_entry=True)
    reconciler = ExitReconciler(
        repository=repository,
        task_source=source,
        settings_provider=lambda: SchedulerSettings(sync_time_entries=True),
    )

    result = reconciler.handle(ExitEvent(task_id=task.id, exit_code=0, output_log=""))

    assert result is not None
    assert result.status is TaskStatus.COMPLETED
    remote = repository.list_task_logs(task.id, event_type=LogEventKind.REMOTE_SYNC)
    assert remote[0].message.startswith("ClickUp time entry failed: ClickUp API error: 403")


def test_time_entries_are_off_by_default(repository: TaskRepository) -> None:
    task = seed_task(repository)
    source = FakeTaskSource()
    reconciler = ExitReconciler(repository=repository, task_source=source)

    reconciler.handle(ExitEvent(task_id=task.id, exit_code=0, output_log=""))

    assert source.time_entries == []


def test_log_persister_stores_task_lines_and_ignores_sessions(
    repository: TaskRepository,
) -> None:
    task = seed_task(repository)
    persister = LogPersister(repository=repository)

    assert persister.handle(OutputEvent(key=task.id, line="hello", is_stderr=False))
    assert persister.handle(OutputEvent(key=task.id, line="warn", is_stderr=True))
    assert not persister.handle(OutputEvent(key="session-1", line="skip", is_stderr=False))
    assert not persister.handle(OutputEvent(key=9999, line="orphan", is_stderr=False))

    output = repository.list_task_logs(task.id, event_type=LogEventKind.OUTPUT)
    assert [(entry.message, entry.is_stderr) for entry in output] == [
        ("hello", False),
        ("warn", True),
    ]


def test_supervised_exit_flows_into_task_state(
    tmp_path: Path,
    repository: TaskRepository,
) -> None:
    supervisor = ProcessSupervisor(agent_command_template=echo_template("--exit-code", "1"))
    exits = supervisor.subscribe_exits()
    output = supervisor.subscribe_output()
    task = seed_task(repository, worktree_path=tmp_path)
    session = repository.open_process_session(task.id)
    repository.set_session_pid(session.id, supervisor.spawn(task.id, "line one", tmp_path))
    reconciler = ExitReconciler(repository=repository)
    persister = LogPersister(repository=repository)

    assert supervisor.wait(task.id, timeout=10)
    while (event := exits.receive(timeout=0)) is not None:
        reconciler.handle(event)  # type: ignore[arg-type]
    while (line := output.receive(timeout=0)) is not None:
        persister.handle(line)  # type: ignore[arg-type]

    final = repository.get_task(task.id)
    assert final is not None
    assert final.status is TaskStatus.FAILED
    assert final.output_log == "line one"
    persisted = repository.list_task_logs(task.id, event_type=LogEventKind.OUTPUT)
    assert [entry.message for entry in persisted] == ["line one", exit_line(1)]
    assert repository.open_session_pid(task.id) is None
