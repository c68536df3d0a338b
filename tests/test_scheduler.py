from __future__ import annotations

from pathlib import Path

import allure
import pytest
from conftest import FakeProvisioner, FakeTaskSource, echo_template, remote_task, seed_task

from agent_foreman.config import SchedulerSettings
from agent_foreman.engine.models import LogEventKind, TaskStatus
from agent_foreman.engine.repository import TaskRepository
from agent_foreman.engine.scheduler import TaskScheduler
from agent_foreman.engine.supervisor import ProcessSupervisor

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Remote Task Ingestion"),
]


def _settings(tmp_path: Path, **overrides: object) -> SchedulerSettings:
    values: dict[str, object] = {
        "list_id": "list-1",
        "target_repo_path": str(tmp_path / "repo"),
        "parallel_limit": 2,
    }
    values.update(overrides)
    return SchedulerSettings(**values)  # type: ignore[arg-type]


def _scheduler(
    repository: TaskRepository,
    supervisor: ProcessSupervisor,
    provisioner: FakeProvisioner,
    source: FakeTaskSource | None,
    settings: SchedulerSettings,
) -> TaskScheduler:
    return TaskScheduler(
        repository=repository,
        supervisor=supervisor,
        provisioner=provisioner,  # type: ignore[arg-type]
        task_source=source,
        settings_provider=lambda: settings,
    )


@pytest.fixture()
def supervisor():
    supervisor = ProcessSupervisor(agent_command_template=echo_template("--sleep", "0.2"))
    try:
        yield supervisor
    finally:
        supervisor.close()


def test_tick_spawns_highest_priority_candidates_up_to_limit(
    tmp_path: Path,
    repository: TaskRepository,
    supervisor: ProcessSupervisor,
    fake_source: FakeTaskSource,
    fake_provisioner: FakeProvisioner,
) -> None:
    fake_source.tasks = [
        remote_task("low", priority=4),
        remote_task("none", priority=None),
        remote_task("urgent", priority=1, name="Fix Login Bug!"),
        remote_task("high", priority=2),
    ]
    scheduler = _scheduler(
        repository,
        supervisor,
        fake_provisioner,
        fake_source,
        _settings(tmp_path),
    )

    summary = scheduler.tick()

    assert summary.spawned == 2
    assert summary.candidates == 2
    assert fake_source.list_calls == [("list-1", "Ready for Dev")]
    assert fake_source.status_updates == [("urgent", "In Development"), ("high", "In Development")]
    urgent = repository.find_by_external_id("urgent")
    assert urgent is not None
    assert urgent.status is TaskStatus.IN_PROGRESS
    assert urgent.started_at is not None
    assert urgent.worktree_path == str(tmp_path / "repo" / "worktrees" / "fix-login-bug-")
    assert fake_provisioner.provisioned[0].branch == "task/urgent-fix-login-bug-"
    assert repository.find_by_external_id("low") is None
    assert repository.find_by_external_id("none") is None

    messages = [entry.message for entry in repository.list_task_logs(urgent.id)]
    assert messages[:3] == [
        "Task created from ClickUp",
        "ClickUp status updated: Ready for Dev -> In Development",
        f"Worktree created at {urgent.worktree_path} (branch task/urgent-fix-login-bug-)",
    ]
    assert messages[3].startswith("Agent spawned (PID: ")
    assert repository.open_session_pid(urgent.id) is not None


def test_tick_respects_in_progress_count(
    tmp_path: Path,
    repository: TaskRepository,
    supervisor: ProcessSupervisor,
    fake_source: FakeTaskSource,
    fake_provisioner: FakeProvisioner,
) -> None:
    seed_task(repository, external_id="already-running")
    fake_source.tasks = [remote_task("a", priority=1), remote_task("b", priority=2)]
    scheduler = _scheduler(
        repository,
        supervisor,
        fake_provisioner,
        fake_source,
        _settings(tmp_path),
    )

    summary = scheduler.tick()

    assert summary.available_slots == 1
    assert summary.spawned == 1
    assert repository.count_by_status(TaskStatus.IN_PROGRESS) == 2

    second = scheduler.tick()
    assert second.skipped_reason == "no_slots"
    assert fake_source.list_calls == [("list-1", "Ready for Dev")]


def test_tick_does_not_ingest_known_task_twice(
    tmp_path: Path,
    repository: TaskRepository,
    supervisor: ProcessSupervisor,
    fake_source: FakeTaskSource,
    fake_provisioner: FakeProvisioner,
) -> None:
    seed_task(repository, external_id="dup", status=TaskStatus.COMPLETED)
    fake_source.tasks = [remote_task("dup")]
    scheduler = _scheduler(
        repository,
        supervisor,
        fake_provisioner,
        fake_source,
        _settings(tmp_path),
    )

    summary = scheduler.tick()

    assert summary.known == 1
    assert summary.spawned == 0
    assert fake_source.status_updates == []
    assert fake_provisioner.provisioned == []


@pytest.mark.parametrize(
    ("overrides", "with_source", "reason"),
    [
        ({"list_id": ""}, True, "no_list"),
        ({"target_repo_path": ""}, True, "no_repo"),
        ({}, False, "no_source"),
        ({"parallel_limit": 0}, True, "no_slots"),
    ],
)
def test_tick_skips_silently_when_not_configured(
    tmp_path: Path,
    repository: TaskRepository,
    supervisor: ProcessSupervisor,
    fake_source: FakeTaskSource,
    fake_provisioner: FakeProvisioner,
    overrides: dict[str, object],
    with_source: bool,
    reason: str,
) -> None:
    fake_source.tasks = [remote_task("a")]
    scheduler = _scheduler(
        repository,
        supervisor,
        fake_provisioner,
        fake_source if with_source else None,
        _settings(tmp_path, **overrides),
    )

    summary = scheduler.tick()

    assert summary.skipped_reason == reason
    assert fake_source.list_calls == []
    assert repository.list_tasks() == []


def test_source_failure_skips_tick(
    tmp_path: Path,
    repository: TaskRepository,
    supervisor: ProcessSupervisor,
    fake_source: FakeTaskSource,
    fake_provisioner: FakeProvisioner,
) -> None:
    fake_source.fail_list = True
    scheduler = _scheduler(
        repository,
        supervisor,
        fake_provisioner,
        fake_source,
        _settings(tmp_path),
    )

    assert scheduler.tick().skipped_reason == "source_error"
    assert repository.list_tasks() == []


def test_remote_status_update_failure_skips_candidate(
    tmp_path: Path,
    repository: TaskRepository,
    supervisor: ProcessSupervisor,
    fake_source: FakeTaskSource,
    fake_provisioner: FakeProvisioner,
) -> None:
    fake_source.tasks = [remote_task("a", priority=1), remote_task("b", priority=2)]
    fake_source.fail_update_for = {"a"}
    scheduler = _scheduler(
        repository,
        supervisor,
        fake_provisioner,
        fake_source,
        _settings(tmp_path),
    )

    summary = scheduler.tick()

    assert summary.remote_errors == 1
    assert summary.spawned == 1
    assert repository.find_by_external_id("a") is None
    assert repository.find_by_external_id("b") is not None


def test_provisioning_failure_marks_task_failed(
    tmp_path: Path,
    repository: TaskRepository,
    supervisor: ProcessSupervisor,
    fake_source: FakeTaskSource,
) -> None:
    fake_source.tasks = [remote_task("a")]
    provisioner = FakeProvisioner(fail_with="git worktree failed: fatal: invalid reference: dev")
    scheduler = _scheduler(repository, supervisor, provisioner, fake_source, _settings(tmp_path))

    summary = scheduler.tick()

    assert summary.failed == 1
    task = repository.find_by_external_id("a")
    assert task is not None
    assert task.status is TaskStatus.FAILED
    assert supervisor.running_tasks() == set()
    status_logs = repository.list_task_logs(task.id, event_type=LogEventKind.STATUS)
    assert status_logs[-1].message == (
        "Status changed: in_progress -> failed "
        "(git worktree failed: fatal: invalid reference: dev)"
    )


def test_spawn_failure_marks_task_failed(
    tmp_path: Path,
    repository: TaskRepository,
    fake_source: FakeTaskSource,
    fake_provisioner: FakeProvisioner,
) -> None:
    fake_source.tasks = [remote_task("a")]
    supervisor = ProcessSupervisor(agent_command_template="no-such-agent-cli-xyz {prompt}")
    scheduler = _scheduler(
        repository,
        supervisor,
        fake_provisioner,
        fake_source,
        _settings(tmp_path),
    )

    summary = scheduler.tick()

    assert summary.failed == 1
    task = repository.find_by_external_id("a")
    assert task is not None
    assert task.status is TaskStatus.FAILED
    assert all(not session.is_open for session in repository.list_sessions(task.id))
    last = repository.list_task_logs(task.id, event_type=LogEventKind.STATUS)[-1]
    assert "agent spawn failed: The 'no-such-agent-cli-xyz' command is not found" in last.message


def test_settings_are_read_on_every_tick(
    tmp_path: Path,
    repository: TaskRepository,
    supervisor: ProcessSupervisor,
    fake_source: FakeTaskSource,
    fake_provisioner: FakeProvisioner,
) -> None:
    fake_source.tasks = [remote_task("a")]
    current = {"settings": _settings(tmp_path, list_id="")}
    scheduler = TaskScheduler(
        repository=repository,
        supervisor=supervisor,
        provisioner=fake_provisioner,  # type: ignore[arg-type]
        task_source=fake_source,
        settings_provider=lambda: current["settings"],
    )

    assert scheduler.tick().skipped_reason == "no_list"
    current["settings"] = _settings(tmp_path)
    assert scheduler.tick().spawned == 1


def test_limit_reached_spawns_nothing(
    tmp_path: Path,
    repository: TaskRepository,
    supervisor: ProcessSupervisor,
    fake_source: FakeTaskSource,
    fake_provisioner: FakeProvisioner,
) -> None:
    seed_task(repository, external_id="running")
    fake_source.tasks = [remote_task("a", priority=1), remote_task("b", priority=2)]
    scheduler = _scheduler(
        repository,
        supervisor,
        fake_provisioner,
        fake_source,
        _settings(tmp_path, parallel_limit=1),
    )

    summary = scheduler.tick()

    assert summary.skipped_reason == "no_slots"
    assert summary.spawned == 0
    assert supervisor.running_tasks() == set()
    assert repository.find_by_external_id("a") is None
