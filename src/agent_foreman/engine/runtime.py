"""Wires the engine components together and runs their background loops."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from agent_foreman.clickup.client import TaskSource
from agent_foreman.config import SchedulerSettings, Settings
from agent_foreman.engine.fanout import drain_pending
from agent_foreman.engine.gateway import TerminalGateway
from agent_foreman.engine.lifecycle import TaskLifecycleService
from agent_foreman.engine.log_persister import LogPersister
from agent_foreman.engine.reconciler import ExitReconciler
from agent_foreman.engine.repository import TaskRepository
from agent_foreman.engine.scheduler import TaskScheduler, TickSummary
from agent_foreman.engine.supervisor import ProcessSupervisor, SessionSupervisor
from agent_foreman.workspace.provisioner import WorktreeProvisioner

logger = logging.getLogger(__name__)


class Engine:
    """One deployment of the orchestration engine.

    Owns the supervisors, the task store and three daemon loops: the scheduler
    tick, the exit reconciler and the output log persister. Topic subscriptions
    are taken at construction so no event is missed before ``start``.
    """

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        task_source: TaskSource | None = None,
        repository: TaskRepository | None = None,
        supervisor: ProcessSupervisor | None = None,
        provisioner: WorktreeProvisioner | None = None,
        settings_provider: Callable[[], SchedulerSettings] | None = None,
    ) -> None:
        self.settings = settings
        self.task_source = task_source
        self.repository = repository or TaskRepository(settings.db_path)
        self.supervisor = supervisor or ProcessSupervisor.from_settings(settings.supervisor)
        self.session_supervisor = SessionSupervisor(
            output_backlog=settings.supervisor.output_backlog,
            reader_drain_seconds=settings.supervisor.reader_drain_seconds,
        )
        self.provisioner = provisioner or WorktreeProvisioner()
        self.settings_provider = settings_provider or (lambda: settings.scheduler)

        self._exit_subscription = self.supervisor.subscribe_exits()
        self._output_subscription = self.supervisor.subscribe_output()

        self.scheduler = TaskScheduler(
            repository=self.repository,
            supervisor=self.supervisor,
            provisioner=self.provisioner,
            task_source=task_source,
            settings_provider=self.settings_provider,
        )
        self.reconciler = ExitReconciler(
            repository=self.repository,
            task_source=task_source,
            settings_provider=self.settings_provider,
        )
        self.log_persister = LogPersister(repository=self.repository)
        self.lifecycle = TaskLifecycleService(
            repository=self.repository,
            supervisor=self.supervisor,
            provisioner=self.provisioner,
            settings_provider=self.settings_provider,
        )
        self.terminals = TerminalGateway.for_tasks(self.supervisor)
        self.session_terminals = TerminalGateway.for_sessions(self.session_supervisor)

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Start the scheduler, reconciler and log persister loops."""

        if self.running:
            raise RuntimeError("Engine is already running")
        self._stop_event.clear()
        self._threads = [
            self._start_loop(
                "exit-reconciler",
                lambda: self.reconciler.run(self._exit_subscription, self._stop_event),
            ),
            self._start_loop(
                "task-log-persister",
                lambda: self.log_persister.run(self._output_subscription, self._stop_event),
            ),
            self._start_loop("scheduler", lambda: self.scheduler.run_loop(self._stop_event)),
        ]
        logger.info("Engine started")

    def stop(self, *, kill_running: bool = False, timeout: float = 15.0) -> None:
        """Stop the loops; optionally kill live agents first and reconcile their exits."""

        if kill_running:
            for task_id in self.supervisor.running_tasks():
                try:
                    self.supervisor.kill(task_id)
                except Exception:
                    logger.exception("Failed to kill task %s during shutdown", task_id)
            self.supervisor.wait_all(timeout)
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self.drain()
        logger.info("Engine stopped")

    def run_once(self, *, wait_timeout: float | None = None) -> TickSummary:
        """Run one scheduler tick in the caller's thread and reconcile every resulting exit.

        Must not be combined with ``start``: the background loops would compete
        for the same subscriptions.
        """

        if self.running:
            raise RuntimeError("run_once cannot be used while the engine loops are running")
        summary = self.scheduler.tick()
        if not self.supervisor.wait_all(wait_timeout):
            logger.warning("Some agents are still running after %ss", wait_timeout)
        self.drain()
        return summary

    def drain(self) -> int:
        """Persist queued output and reconcile queued exits without waiting."""

        handled = drain_pending(
            self._output_subscription,
            self.log_persister.handle,
            name="Task log persister",
        )
        handled += drain_pending(
            self._exit_subscription,
            self.reconciler.handle,
            name="Exit reconciler",
        )
        return handled

    def serve_forever(self) -> None:
        """Start the loops and block until SIGINT/SIGTERM."""

        self.start()
        with _stop_on_signals(self._stop_event):
            try:
                while not self._stop_event.wait(timeout=1.0):
                    pass
            except KeyboardInterrupt:
                logger.info("Interrupted")
        self.stop(kill_running=True)

    def close(self) -> None:
        """Stop everything and release DB and HTTP resources."""

        self.stop(kill_running=True)
        self.supervisor.close()
        close_source = getattr(self.task_source, "close", None)
        if callable(close_source):
            close_source()
        self.repository.close()

    def _start_loop(self, name: str, target: Callable[[], None]) -> threading.Thread:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        return thread


@contextmanager
def _stop_on_signals(stop_event: threading.Event) -> Iterator[None]:
    if not hasattr(signal, "SIGTERM"):
        yield
        return

    def _handler(signum: int, _: object | None) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        stop_event.set()

    try:
        original_sigterm = signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, original_sigterm)
