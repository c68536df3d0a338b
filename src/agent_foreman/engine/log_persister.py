"""Persists live task output lines as ``output`` audit entries."""

from __future__ import annotations

import logging
import threading

from agent_foreman.engine.fanout import Subscription, consume
from agent_foreman.engine.models import LogEventKind, OutputEvent
from agent_foreman.engine.repository import TaskRepository

logger = logging.getLogger(__name__)


class LogPersister:
    def __init__(self, *, repository: TaskRepository) -> None:
        self.repository = repository

    def handle(self, event: OutputEvent) -> bool:
        if not isinstance(event.key, int):
            return False
        stored = self.repository.add_task_log(
            event.key,
            LogEventKind.OUTPUT,
            event.line,
            is_stderr=event.is_stderr,
        )
        if not stored:
            logger.warning("Failed to persist output log for task %s", event.key)
        return stored

    def run(self, subscription: Subscription[OutputEvent], stop_event: threading.Event) -> None:
        consume(subscription, self.handle, stop_event, name="Task log persister")
