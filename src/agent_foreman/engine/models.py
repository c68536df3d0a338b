"""Domain models for orchestrated tasks, process sessions and engine events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

MAX_TIME_SPENT_MS = 2_147_483_647
UNKNOWN_PRIORITY = 99


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"


class LogEventKind(str, Enum):
    """Closed set of audit log entry kinds."""

    OUTPUT = "output"
    STATUS = "status"
    REMOTE_SYNC = "remote-sync"
    SYSTEM = "system"


# Manual completion is allowed from every state and is checked separately.
_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.STOPPED},
    ),
    TaskStatus.STOPPED: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.FAILED: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.COMPLETED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Return whether ``current -> target`` is a legal lifecycle move."""

    if target is TaskStatus.COMPLETED and current is not TaskStatus.COMPLETED:
        return True
    return target in _ALLOWED_TRANSITIONS[current]


def accrue_time_ms(previous_ms: int, started_at: datetime | None, now: datetime) -> int:
    """Add the clamped elapsed run time since ``started_at`` to ``previous_ms``.

    Negative elapsed time (clock skew) counts as zero; overflow saturates at
    ``MAX_TIME_SPENT_MS``. The result is never below ``previous_ms``.
    """

    if started_at is None:
        return previous_ms
    elapsed_ms = int((now - started_at).total_seconds() * 1000)
    elapsed_ms = max(0, min(elapsed_ms, MAX_TIME_SPENT_MS))
    return max(previous_ms, min(previous_ms + elapsed_ms, MAX_TIME_SPENT_MS))


@dataclass(slots=True)
class TaskCreate:
    """Input payload for recording a task ingested from the external source."""

    external_task_id: str
    external_list_id: str
    name: str
    description: str | None = None
    priority: int | None = None
    status: TaskStatus = TaskStatus.IN_PROGRESS
    worktree_path: str | None = None
    started_at: datetime | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI, scheduler and reconciler logic."""

    id: int
    external_task_id: str
    external_list_id: str
    name: str
    description: str | None
    priority: int | None
    status: TaskStatus
    worktree_path: str | None
    time_spent_ms: int
    started_at: datetime | None
    completed_at: datetime | None
    output_log: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ProcessSessionView:
    """One agent process run recorded against a task."""

    id: int
    task_id: int
    pid: int | None
    started_at: datetime
    ended_at: datetime | None
    exit_code: int | None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


@dataclass(slots=True)
class TaskLogEntryView:
    """Audit log entry."""

    id: int
    task_id: int
    event_type: LogEventKind
    message: str
    is_stderr: bool | None
    created_at: datetime


@dataclass(slots=True)
class TaskDetails:
    """Task with its process sessions and audit trail."""

    task: TaskView
    sessions: list[ProcessSessionView]
    logs: list[TaskLogEntryView]


@dataclass(slots=True)
class TaskStats:
    """Per-status counters."""

    queued: int = 0
    in_progress: int = 0
    stopped: int = 0
    completed: int = 0
    failed: int = 0
    running_processes: int = 0


@dataclass(frozen=True, slots=True)
class OutputEvent:
    """One line of agent output, keyed by task id or session id."""

    key: int | str
    line: str
    is_stderr: bool


@dataclass(frozen=True, slots=True)
class ExitEvent:
    """Emitted exactly once when a task-bound agent process terminates.

    ``session_id`` names the process session the spawn was opened under, so an
    exit that arrives after a newer spawn of the same task can be told apart.
    """

    task_id: int
    exit_code: int
    output_log: str
    session_id: int | None = None


def build_agent_prompt(*, name: str, description: str | None, agent_prompt: str | None) -> str:
    """Combine a task description with the optional global agent instructions."""

    task_description = description if description else f"Complete task: {name}"
    if agent_prompt and agent_prompt.strip():
        return f"## Task\n{task_description}\n\n## Instructions\n{agent_prompt}"
    return task_description


def format_status_change(
    from_status: TaskStatus | str,
    to_status: TaskStatus | str,
    note: str | None = None,
) -> str:
    from_value = from_status.value if isinstance(from_status, TaskStatus) else from_status
    to_value = to_status.value if isinstance(to_status, TaskStatus) else to_status
    if note:
        return f"Status changed: {from_value} -> {to_value} ({note})"
    return f"Status changed: {from_value} -> {to_value}"
