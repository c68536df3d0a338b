"""Maps agent process exits back onto durable task state."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from agent_foreman.clickup.client import ClickUpError, TaskSource
from agent_foreman.config import SchedulerSettings
from agent_foreman.engine.fanout import Subscription, consume
from agent_foreman.engine.models import ExitEvent, LogEventKind, TaskStatus, TaskView
from agent_foreman.engine.repository import TaskRepository

logger = logging.getLogger(__name__)


class ExitReconciler:
    """Consumes ``ExitEvent`` items and finalizes the task and its process session.

    With ``sync_time_entries`` enabled, a successful run is also reported to the
    remote source as a time entry. Remote failures are recorded in the audit log
    and never undo the local transition.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        task_source: TaskSource | None = None,
        settings_provider: Callable[[], SchedulerSettings] | None = None,
    ) -> None:
        self.repository = repository
        self.task_source = task_source
        self.settings_provider = settings_provider or SchedulerSettings

    def handle(self, event: ExitEvent) -> TaskView | None:
        logger.info(
            "Process exit event received: task_id=%s, exit_code=%s",
            event.task_id,
            event.exit_code,
        )
        before = self.repository.get_task(event.task_id)
        if before is None:
            logger.warning("Could not find task %s to update on exit", event.task_id)
            return None

        after = self.repository.record_exit(
            task_id=event.task_id,
            exit_code=event.exit_code,
            output_log=event.output_log,
            session_id=event.session_id,
        )
        if after is None:
            logger.warning("Task %s disappeared while reconciling exit", event.task_id)
            return None

        logger.info(
            "Task %s marked as %s (exit code: %s, time: %sms)",
            after.id,
            after.status.value,
            event.exit_code,
            after.time_spent_ms,
        )
        if (
            before.status is TaskStatus.IN_PROGRESS
            and after.status is TaskStatus.COMPLETED
        ):
            self._sync_time_entry(before, after)
        return after

    def run(self, subscription: Subscription[ExitEvent], stop_event: threading.Event) -> None:
        consume(subscription, self.handle, stop_event, name="Exit reconciler")

    def _sync_time_entry(self, before: TaskView, after: TaskView) -> None:
        if self.task_source is None or not self.settings_provider().sync_time_entries:
            return
        if before.started_at is None or after.completed_at is None:
            return

        duration_ms = after.time_spent_ms - before.time_spent_ms
        start_ms = int(before.started_at.timestamp() * 1000)
        end_ms = int(after.completed_at.timestamp() * 1000)
        try:
            self.task_source.add_time_entry(
                after.external_task_id,
                start_ms=start_ms,
                end_ms=end_ms,
                duration_ms=duration_ms,
            )
        except ClickUpError as error:
            logger.warning("Failed to log time entry for task %s: %s", after.id, error)
            self.repository.add_task_log(
                after.id,
                LogEventKind.REMOTE_SYNC,
                f"ClickUp time entry failed: {error}",
            )
            return
        self.repository.add_task_log(
            after.id,
            LogEventKind.REMOTE_SYNC,
            f"ClickUp time entry logged: {duration_ms} ms",
        )
