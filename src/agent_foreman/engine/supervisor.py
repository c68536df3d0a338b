"""Task-bound and session-bound agent process supervisors."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from agent_foreman.config import DEFAULT_AGENT_COMMAND_TEMPLATE, SupervisorSettings
from agent_foreman.engine.fanout import BoundedTopic, Subscription
from agent_foreman.engine.models import ExitEvent, OutputEvent
from agent_foreman.engine.registry import ProcessRegistry, SpawnError, build_agent_argv

logger = logging.getLogger(__name__)


def exit_line(exit_code: int) -> str:
    return f"\n[Process exited with code {exit_code}]"


@dataclass(slots=True)
class _OutputBuffer:
    """Lines of one spawn; sealed once its ``ExitEvent`` is built."""

    lines: list[str] = field(default_factory=list)
    sealed: bool = False
    late_lines: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)

    def append(self, line: str) -> bool:
        with self.lock:
            if self.sealed:
                self.late_lines += 1
                return False
            self.lines.append(line)
            return True

    def seal(self) -> str:
        with self.lock:
            self.sealed = True
            output_log = "\n".join(self.lines)
            self.lines.clear()
            return output_log


class ProcessSupervisor:
    """Owns one agent process per task id.

    Every output line is appended to a per-spawn buffer and published to the
    output topic. On exit the buffer becomes the ``output_log`` of exactly one
    ``ExitEvent``; the trailing exit line is published live only.
    """

    def __init__(
        self,
        *,
        agent_command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE,
        output_backlog: int = 1_000,
        exit_backlog: int = 100,
        reader_drain_seconds: float = 5.0,
    ) -> None:
        self.agent_command_template = agent_command_template
        self.output_topic: BoundedTopic[OutputEvent] = BoundedTopic(
            "task-output",
            capacity=output_backlog,
        )
        self.exit_topic: BoundedTopic[ExitEvent] = BoundedTopic("task-exit", capacity=exit_backlog)
        self._registry: ProcessRegistry[int] = ProcessRegistry(
            label="task",
            reader_drain_seconds=reader_drain_seconds,
        )

    @classmethod
    def from_settings(cls, settings: SupervisorSettings) -> ProcessSupervisor:
        return cls(
            agent_command_template=settings.agent_command_template,
            output_backlog=settings.output_backlog,
            exit_backlog=settings.exit_backlog,
            reader_drain_seconds=settings.reader_drain_seconds,
        )

    def subscribe_output(self, *, capacity: int | None = None) -> Subscription[OutputEvent]:
        return self.output_topic.subscribe(capacity=capacity)

    def subscribe_exits(self, *, capacity: int | None = None) -> Subscription[ExitEvent]:
        return self.exit_topic.subscribe(capacity=capacity)

    def spawn(
        self,
        task_id: int,
        prompt: str,
        workspace_path: str | Path,
        *,
        session_id: int | None = None,
    ) -> int:
        """Launch the agent for ``task_id`` inside ``workspace_path``; return its pid.

        ``session_id`` is echoed back on the ``ExitEvent`` of this spawn.
        """

        argv = build_agent_argv(self.agent_command_template, prompt)
        buffer = _OutputBuffer()

        def on_line(line: str, is_stderr: bool) -> None:
            if not buffer.append(line):
                if buffer.late_lines == 1:
                    logger.warning(
                        "Task %s wrote output after its exit was recorded; "
                        "dropping it from the live stream and output_log",
                        task_id,
                    )
                else:
                    logger.debug("Dropped %s late lines of task %s", buffer.late_lines, task_id)
                return
            self.output_topic.publish(OutputEvent(key=task_id, line=line, is_stderr=is_stderr))

        def on_exit(exit_code: int) -> None:
            output_log = buffer.seal()
            self.output_topic.publish(
                OutputEvent(key=task_id, line=exit_line(exit_code), is_stderr=False),
            )
            self.exit_topic.publish(
                ExitEvent(
                    task_id=task_id,
                    exit_code=exit_code,
                    output_log=output_log,
                    session_id=session_id,
                ),
            )

        logger.info("Spawning agent for task %s in worktree: %s", task_id, workspace_path)
        return self._registry.spawn(
            task_id,
            argv,
            cwd=Path(workspace_path),
            on_line=on_line,
            on_exit=on_exit,
        )

    def send_input(self, task_id: int, text: str) -> None:
        self._registry.send_input(task_id, text)

    def kill(self, task_id: int) -> None:
        self._registry.kill(task_id)

    def is_running(self, task_id: int) -> bool:
        return self._registry.is_running(task_id)

    def running_tasks(self) -> set[int]:
        return self._registry.keys()

    def pid(self, task_id: int) -> int | None:
        return self._registry.pid(task_id)

    def wait(self, task_id: int, timeout: float | None = None) -> bool:
        return self._registry.wait(task_id, timeout)

    def wait_all(self, timeout: float | None = None) -> bool:
        """Wait for every currently running task process; False if any outlived ``timeout``."""

        return self._registry.wait_all(timeout)

    def close(self) -> None:
        for task_id in self.running_tasks():
            try:
                self.kill(task_id)
            except Exception:
                logger.exception("Failed to kill task %s during shutdown", task_id)
        self.output_topic.close()
        self.exit_topic.close()


class AgentKind(str, Enum):
    """Supported interactive agent CLIs."""

    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, value: AgentKind | str) -> AgentKind:
        if isinstance(value, AgentKind):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError as error:
            raise SpawnError(f"Unknown agent type: {value}") from error


AGENT_COMMAND_TEMPLATES: dict[AgentKind, str] = {
    AgentKind.CLAUDE: "claude -p {prompt} --dangerously-skip-permissions",
    AgentKind.CODEX: "codex exec {prompt} --full-auto",
    AgentKind.GEMINI: "gemini {prompt} -y",
}


class SessionSupervisor:
    """Ad-hoc agent sessions keyed by session id; output is live only."""

    def __init__(
        self,
        *,
        command_templates: Mapping[AgentKind, str] | None = None,
        output_backlog: int = 1_000,
        reader_drain_seconds: float = 5.0,
    ) -> None:
        self.command_templates = dict(AGENT_COMMAND_TEMPLATES)
        if command_templates:
            self.command_templates.update(command_templates)
        self.output_topic: BoundedTopic[OutputEvent] = BoundedTopic(
            "session-output",
            capacity=output_backlog,
        )
        self._registry: ProcessRegistry[str] = ProcessRegistry(
            label="session",
            reader_drain_seconds=reader_drain_seconds,
        )

    def subscribe_output(self, *, capacity: int | None = None) -> Subscription[OutputEvent]:
        return self.output_topic.subscribe(capacity=capacity)

    def spawn(
        self,
        session_id: str,
        prompt: str,
        workspace_path: str | Path,
        agent: AgentKind | str = AgentKind.CLAUDE,
    ) -> int:
        kind = AgentKind.parse(agent)
        argv = build_agent_argv(self.command_templates[kind], prompt)

        def on_line(line: str, is_stderr: bool) -> None:
            self.output_topic.publish(OutputEvent(key=session_id, line=line, is_stderr=is_stderr))

        def on_exit(exit_code: int) -> None:
            self.output_topic.publish(
                OutputEvent(key=session_id, line=exit_line(exit_code), is_stderr=False),
            )

        logger.info(
            "Spawning %s agent for session %s in worktree: %s",
            kind.value,
            session_id,
            workspace_path,
        )
        return self._registry.spawn(
            session_id,
            argv,
            cwd=Path(workspace_path),
            on_line=on_line,
            on_exit=on_exit,
        )

    def send_input(self, session_id: str, text: str) -> None:
        self._registry.send_input(session_id, text)

    def kill(self, session_id: str) -> None:
        self._registry.kill(session_id)

    def is_running(self, session_id: str) -> bool:
        return self._registry.is_running(session_id)

    def wait(self, session_id: str, timeout: float | None = None) -> bool:
        return self._registry.wait(session_id, timeout)
