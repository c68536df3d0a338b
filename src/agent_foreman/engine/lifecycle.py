"""Operator-driven task lifecycle: stop, restart, manual completion and deletion."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path

from agent_foreman.config import SchedulerSettings
from agent_foreman.engine.models import (
    LogEventKind,
    TaskStats,
    TaskStatus,
    TaskView,
    build_agent_prompt,
)
from agent_foreman.engine.registry import NotRunningError, SupervisorError, force_kill
from agent_foreman.engine.repository import TaskRepository
from agent_foreman.engine.supervisor import ProcessSupervisor
from agent_foreman.workspace.provisioner import WorktreeProvisioner, plan_worktree

logger = logging.getLogger(__name__)


class LifecycleError(RuntimeError):
    """Lifecycle operation rejected or failed."""

    def __init__(self, message: str, *, not_found: bool = False) -> None:
        super().__init__(message)
        self.not_found = not_found


class TaskLifecycleService:
    """Applies operator commands to a task and its agent process.

    The durable transition is written before the process is killed, so the
    exit reconciler sees the operator's status and leaves it in place. An agent
    owned by another process (e.g. a running `serve`) is killed by the pid
    recorded on its open process session.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        supervisor: ProcessSupervisor,
        provisioner: WorktreeProvisioner | None = None,
        settings_provider: Callable[[], SchedulerSettings] | None = None,
    ) -> None:
        self.repository = repository
        self.supervisor = supervisor
        self.provisioner = provisioner or WorktreeProvisioner()
        self.settings_provider = settings_provider or SchedulerSettings

    def stop(self, task_id: int) -> TaskView:
        """``in_progress`` -> ``stopped``: accrue run time, close the session, kill."""

        task = self._require_task(task_id)
        if task.status is not TaskStatus.IN_PROGRESS:
            raise LifecycleError(
                f"Task {task_id} is not in progress (status={task.status.value})",
            )
        agent_pid = self.repository.open_session_pid(task_id)
        try:
            stopped = self.repository.stop_task(task_id)
        except RuntimeError as error:
            raise LifecycleError(str(error)) from error
        self._kill_agent(task_id, agent_pid)
        logger.info("Stopped task %s", task_id)
        return stopped

    def restart(self, task_id: int) -> TaskView:
        """``stopped``/``failed`` -> ``in_progress`` with a new agent process."""

        task = self._require_task(task_id)
        if task.status not in {TaskStatus.STOPPED, TaskStatus.FAILED}:
            raise LifecycleError("Task must be stopped or failed to restart")
        if self.supervisor.is_running(task_id):
            raise LifecycleError(f"Task {task_id} still has a running process")

        settings = self.settings_provider()
        workspace = self._resolve_workspace(task, settings)
        prompt = build_agent_prompt(
            name=task.name,
            description=task.description,
            agent_prompt=settings.agent_prompt,
        )

        try:
            _, previous = self.repository.begin_restart(task_id, worktree_path=str(workspace))
        except RuntimeError as error:
            raise LifecycleError(str(error)) from error

        session = self.repository.open_process_session(task_id)
        try:
            pid = self.supervisor.spawn(task_id, prompt, workspace, session_id=session.id)
        except SupervisorError as error:
            logger.error("Failed to restart task %s: %s", task_id, error)
            self.repository.revert_restart(
                task_id,
                previous=previous,
                note=f"restart failed: {error}",
            )
            raise LifecycleError(f"Failed to restart: {error}") from error

        self.repository.set_session_pid(session.id, pid)
        self.repository.add_task_log(task_id, LogEventKind.SYSTEM, f"Agent spawned (PID: {pid})")
        logger.info("Restarted task %s with PID %s", task_id, pid)
        return self._require_task(task_id)

    def mark_complete(self, task_id: int) -> TaskView:
        """Force any non-completed task to ``completed``, killing a live agent."""

        self._require_task(task_id)
        agent_pid = self.repository.open_session_pid(task_id)
        try:
            completed = self.repository.complete_task(task_id)
        except RuntimeError as error:
            raise LifecycleError(str(error)) from error
        self._kill_agent(task_id, agent_pid)
        logger.info("Task %s marked complete", task_id)
        return completed

    def delete(self, task_id: int) -> TaskView:
        """Kill a live agent, delete the task rows and remove its worktree if possible."""

        self._require_task(task_id)
        self._kill_agent(task_id, self.repository.open_session_pid(task_id))
        deleted = self.repository.delete_task(task_id)
        if deleted.worktree_path:
            repo_path = self.settings_provider().target_repo_path or None
            self.provisioner.remove_worktree(deleted.worktree_path, repo_path=repo_path)
        logger.info("Deleted task %s (%s)", task_id, deleted.name)
        return deleted

    def stats(self) -> TaskStats:
        stats = self.repository.status_counts()
        stats.running_processes = len(self.supervisor.running_tasks())
        return stats

    def _require_task(self, task_id: int) -> TaskView:
        task = self.repository.get_task(task_id)
        if task is None:
            raise LifecycleError(f"Task not found: {task_id}", not_found=True)
        return task

    def _resolve_workspace(self, task: TaskView, settings: SchedulerSettings) -> Path:
        if task.worktree_path:
            workspace = Path(task.worktree_path)
        elif settings.target_repo_path:
            workspace = plan_worktree(
                settings.target_repo_path,
                external_task_id=task.external_task_id,
                task_name=task.name,
            ).path
        else:
            raise LifecycleError("Task has no worktree path")

        if not workspace.is_dir():
            logger.warning("Worktree path does not exist: %s", workspace)
            raise LifecycleError(
                f"Worktree path does not exist: {workspace}. The task needs to be recreated.",
            )
        return workspace

    def _kill_agent(self, task_id: int, recorded_pid: int | None) -> None:
        try:
            self.supervisor.kill(task_id)
            return
        except NotRunningError:
            logger.debug("Task %s has no process in this supervisor", task_id)
        if recorded_pid is not None and recorded_pid > 1 and recorded_pid != os.getpid():
            logger.info("Killing agent of task %s by recorded pid %s", task_id, recorded_pid)
            force_kill(recorded_pid)
