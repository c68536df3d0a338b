"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from agent_foreman.clickup.client import ClickUpError, RemoteTask
from agent_foreman.engine.models import TaskCreate, TaskStatus, TaskView
from agent_foreman.engine.repository import TaskRepository
from agent_foreman.storage.common import utc_now
from agent_foreman.workspace.provisioner import WorkspaceError, WorktreeSpec

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m agent_foreman.engine.echo_agent {{prompt}}"
)


def echo_template(*flags: str) -> str:
    """Echo agent template with extra CLI flags placed after the prompt."""

    return " ".join([ECHO_AGENT_COMMAND_TEMPLATE, *flags])


@dataclass
class FakeTaskSource:
    """In-memory stand-in for the ClickUp task source."""

    tasks: list[RemoteTask] = field(default_factory=list)
    fail_list: bool = False
    fail_update_for: set[str] = field(default_factory=set)
    fail_time_entry: bool = False
    list_calls: list[tuple[str, str | None]] = field(default_factory=list)
    status_updates: list[tuple[str, str]] = field(default_factory=list)
    time_entries: list[tuple[str, int, int, int]] = field(default_factory=list)

    def list_tasks(self, list_id: str, status: str | None = None) -> list[RemoteTask]:
        self.list_calls.append((list_id, status))
        if self.fail_list:
            raise ClickUpError("ClickUp API error: 500: boom", status_code=500)
        return [task for task in self.tasks if status is None or task.status == status]

    def update_task_status(self, task_id: str, status: str) -> None:
        if task_id in self.fail_update_for:
            raise ClickUpError("ClickUp API error: 401: unauthorized", status_code=401)
        self.status_updates.append((task_id, status))
        for task in self.tasks:
            if task.id == task_id:
                task.status = status

    def add_time_entry(
        self,
        task_id: str,
        *,
        start_ms: int,
        end_ms: int,
        duration_ms: int,
    ) -> None:
        if self.fail_time_entry:
            raise ClickUpError("ClickUp API error: 403: forbidden", status_code=403)
        self.time_entries.append((task_id, start_ms, end_ms, duration_ms))


@dataclass
class FakeProvisioner:
    """Creates worktree directories without running git."""

    fail_with: str | None = None
    provisioned: list[WorktreeSpec] = field(default_factory=list)
    removed: list[tuple[str, str | None]] = field(default_factory=list)

    def provision(self, repo_path: str | Path, spec: WorktreeSpec, *, base_branch: str) -> Path:
        if self.fail_with is not None:
            raise WorkspaceError(self.fail_with)
        spec.path.mkdir(parents=True, exist_ok=True)
        self.provisioned.append(spec)
        return spec.path

    def remove_worktree(
        self,
        worktree_path: str | Path,
        *,
        repo_path: str | Path | None = None,
    ) -> bool:
        self.removed.append((str(worktree_path), str(repo_path) if repo_path else None))
        return True


def remote_task(
    task_id: str,
    *,
    name: str | None = None,
    priority: int | None = None,
    status: str = "Ready for Dev",
    description: str | None = None,
) -> RemoteTask:
    return RemoteTask(
        id=task_id,
        name=name or f"Task {task_id}",
        description=description,
        status=status,
        priority=priority,
        list_id="list-1",
    )


def seed_task(
    repository: TaskRepository,
    *,
    external_id: str = "cu-1",
    name: str = "Fix login",
    status: TaskStatus = TaskStatus.IN_PROGRESS,
    worktree_path: Path | None = None,
    description: str | None = None,
) -> TaskView:
    return repository.create_task(
        TaskCreate(
            external_task_id=external_id,
            external_list_id="list-1",
            name=name,
            description=description,
            priority=2,
            status=status,
            worktree_path=str(worktree_path) if worktree_path is not None else None,
            started_at=utc_now() if status is TaskStatus.IN_PROGRESS else None,
        ),
    )


@pytest.fixture()
def repository(tmp_path: Path):
    repo = TaskRepository(tmp_path / "foreman.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def fake_source() -> FakeTaskSource:
    return FakeTaskSource()


@pytest.fixture()
def fake_provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep developer environment variables out of settings-driven tests."""

    for name in list(os.environ):
        if name.startswith("AGENT_FOREMAN_") or name == "CLICKUP_API_KEY":
            monkeypatch.delenv(name, raising=False)
