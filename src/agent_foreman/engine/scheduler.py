"""Periodic ingestion of remote tasks into bounded-concurrency agent runs."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from agent_foreman.clickup.client import ClickUpError, RemoteTask, TaskSource
from agent_foreman.config import SchedulerSettings
from agent_foreman.engine.models import (
    UNKNOWN_PRIORITY,
    LogEventKind,
    TaskCreate,
    TaskStatus,
    build_agent_prompt,
)
from agent_foreman.engine.registry import SupervisorError
from agent_foreman.engine.repository import TaskRepository
from agent_foreman.engine.supervisor import ProcessSupervisor
from agent_foreman.storage.common import utc_now
from agent_foreman.workspace.provisioner import (
    WorkspaceError,
    WorktreeProvisioner,
    plan_worktree,
)

logger = logging.getLogger(__name__)


class CandidateOutcome(str, Enum):
    KNOWN = "known"
    REMOTE_ERROR = "remote_error"
    FAILED = "failed"
    SPAWNED = "spawned"


@dataclass(slots=True)
class TickSummary:
    """Counters of one scheduler tick for CLI reporting and tests."""

    skipped_reason: str | None = None
    available_slots: int = 0
    candidates: int = 0
    known: int = 0
    remote_errors: int = 0
    failed: int = 0
    spawned: int = 0

    def record(self, outcome: CandidateOutcome) -> None:
        if outcome is CandidateOutcome.KNOWN:
            self.known += 1
        elif outcome is CandidateOutcome.REMOTE_ERROR:
            self.remote_errors += 1
        elif outcome is CandidateOutcome.FAILED:
            self.failed += 1
        else:
            self.spawned += 1


class TaskScheduler:
    """Pulls trigger-status tasks from the remote source and starts agents for them.

    Settings come from ``settings_provider`` and are re-read on every tick, so
    operators can change the list, limits or prompt without a restart.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        supervisor: ProcessSupervisor,
        provisioner: WorktreeProvisioner,
        task_source: TaskSource | None,
        settings_provider: Callable[[], SchedulerSettings],
    ) -> None:
        self.repository = repository
        self.supervisor = supervisor
        self.provisioner = provisioner
        self.task_source = task_source
        self.settings_provider = settings_provider

    def tick(self) -> TickSummary:
        """Run one poll: compute free slots, fetch candidates and start agents."""

        summary = TickSummary()
        settings = self.settings_provider()
        if not settings.list_id:
            logger.debug("No ClickUp list configured, skipping poll")
            summary.skipped_reason = "no_list"
            return summary
        if not settings.target_repo_path:
            logger.debug("No target repository configured, skipping poll")
            summary.skipped_reason = "no_repo"
            return summary
        if self.task_source is None:
            logger.debug("No task source configured, skipping poll")
            summary.skipped_reason = "no_source"
            return summary

        in_progress = self.repository.count_by_status(TaskStatus.IN_PROGRESS)
        available = max(0, settings.parallel_limit - in_progress)
        summary.available_slots = available
        if available == 0:
            logger.debug(
                "Parallel limit reached (%s/%s), skipping poll",
                in_progress,
                settings.parallel_limit,
            )
            summary.skipped_reason = "no_slots"
            return summary

        try:
            remote_tasks = self.task_source.list_tasks(settings.list_id, settings.trigger_status)
        except ClickUpError as error:
            logger.error("Failed to fetch tasks from ClickUp: %s", error)
            summary.skipped_reason = "source_error"
            return summary
        if not remote_tasks:
            logger.debug("No tasks found with status '%s'", settings.trigger_status)
            return summary

        candidates = sorted(
            remote_tasks,
            key=lambda item: item.priority if item.priority is not None else UNKNOWN_PRIORITY,
        )[:available]
        summary.candidates = len(candidates)
        for remote in candidates:
            try:
                summary.record(self._ingest(self.task_source, remote, settings))
            except Exception:
                logger.exception("Failed to ingest remote task %s", remote.id)
                summary.record(CandidateOutcome.FAILED)
        return summary

    def run_loop(self, stop_event: threading.Event) -> None:
        """Tick until ``stop_event`` is set; a failing tick is logged and retried."""

        logger.info("Scheduler started")
        while not stop_event.is_set():
            interval = SchedulerSettings().poll_interval_seconds
            try:
                interval = self.settings_provider().poll_interval_seconds
                summary = self.tick()
                if summary.spawned or summary.failed:
                    logger.info(
                        "Scheduler tick: spawned=%s failed=%s known=%s",
                        summary.spawned,
                        summary.failed,
                        summary.known,
                    )
            except Exception:
                logger.exception("Scheduler tick failed")
            stop_event.wait(timeout=interval)
        logger.info("Scheduler stopped")

    def _ingest(
        self,
        source: TaskSource,
        remote: RemoteTask,
        settings: SchedulerSettings,
    ) -> CandidateOutcome:
        if self.repository.find_by_external_id(remote.id) is not None:
            logger.debug("Task %s already exists, skipping", remote.id)
            return CandidateOutcome.KNOWN

        logger.info("Processing new task: %s (%s)", remote.name, remote.id)
        spec = plan_worktree(
            settings.target_repo_path,
            external_task_id=remote.id,
            task_name=remote.name,
        )

        try:
            source.update_task_status(remote.id, settings.target_status)
        except ClickUpError as error:
            logger.error("Failed to update task status in ClickUp: %s", error)
            return CandidateOutcome.REMOTE_ERROR

        try:
            task = self.repository.create_task(
                TaskCreate(
                    external_task_id=remote.id,
                    external_list_id=remote.list_id or settings.list_id,
                    name=remote.name,
                    description=remote.description,
                    priority=remote.priority,
                    status=TaskStatus.IN_PROGRESS,
                    worktree_path=str(spec.path),
                    started_at=utc_now(),
                ),
            )
        except RuntimeError as error:
            logger.warning("Failed to insert task %s: %s", remote.id, error)
            return CandidateOutcome.KNOWN

        self.repository.add_task_log(task.id, LogEventKind.SYSTEM, "Task created from ClickUp")
        self.repository.add_task_log(
            task.id,
            LogEventKind.REMOTE_SYNC,
            f"ClickUp status updated: {settings.trigger_status} -> {settings.target_status}",
        )

        try:
            workspace = self.provisioner.provision(
                settings.target_repo_path,
                spec,
                base_branch=settings.dev_branch,
            )
        except WorkspaceError as error:
            logger.error("Failed to provision worktree for task %s: %s", task.id, error)
            self.repository.mark_failed(task.id, note=str(error))
            return CandidateOutcome.FAILED
        self.repository.add_task_log(
            task.id,
            LogEventKind.SYSTEM,
            f"Worktree created at {workspace} (branch {spec.branch})",
        )

        prompt = build_agent_prompt(
            name=task.name,
            description=task.description,
            agent_prompt=settings.agent_prompt,
        )
        session = self.repository.open_process_session(task.id)
        try:
            pid = self.supervisor.spawn(task.id, prompt, workspace, session_id=session.id)
        except SupervisorError as error:
            logger.error("Failed to spawn agent for task %s: %s", task.id, error)
            self.repository.mark_failed(task.id, note=f"agent spawn failed: {error}")
            return CandidateOutcome.FAILED

        self.repository.set_session_pid(session.id, pid)
        self.repository.add_task_log(task.id, LogEventKind.SYSTEM, f"Agent spawned (PID: {pid})")
        logger.info("Spawned CLI agent for task %s (PID: %s)", task.id, pid)
        return CandidateOutcome.SPAWNED
