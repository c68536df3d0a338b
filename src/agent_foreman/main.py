"""CLI entrypoint for agent-foreman."""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from agent_foreman import __version__
from agent_foreman.clickup.client import ClickUpError
from agent_foreman.engine.controllers import (
    EngineCliController,
    ListStatusesCommand,
    ListTasksCommand,
    RestartCommand,
    ServeCommand,
    SessionRunCommand,
    StatsCommand,
    TaskCommand,
)
from agent_foreman.engine.models import TaskStatus
from agent_foreman.engine.registry import SupervisorError
from agent_foreman.engine.supervisor import AgentKind
from agent_foreman.logging_setup import setup_logging
from agent_foreman.storage.alembic_runner import MigrationError

click.rich_click.USE_MARKDOWN = True
ENGINE_CONTROLLER = EngineCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-foreman")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Console log level.",
)
def agent_foreman(log_level: str) -> None:
    """Agent foreman: run coding agents for **ClickUp** tasks in git worktrees."""

    setup_logging(log_level)


@agent_foreman.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one scheduler tick and wait for spawned agents, or serve until interrupted.",
)
@click.option(
    "--wait-timeout",
    type=click.FloatRange(min=0),
    default=None,
    help="With --once: max seconds to wait for spawned agents.",
)
def serve(db_path: Path | None, once: bool, wait_timeout: float | None) -> None:
    """Run the scheduler, exit reconciler and output log persister."""

    _emit_lines(
        _guarded(
            lambda: ENGINE_CONTROLLER.serve(
                ServeCommand(
                    db_path=db_path,
                    once=once,
                    wait_timeout_seconds=wait_timeout,
                ),
            ),
        ),
    )


@agent_foreman.group()
def tasks() -> None:
    """Inspect and operate on orchestrated tasks."""


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _emit_lines(
        _guarded(
            lambda: ENGINE_CONTROLLER.list_tasks(
                ListTasksCommand(db_path=db_path, status=status, limit=limit),
            ),
        ),
    )


@tasks.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tasks_stats(db_path: Path | None) -> None:
    """Show task counts per status."""

    _emit_lines(ENGINE_CONTROLLER.stats(StatsCommand(db_path=db_path)))


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: int) -> None:
    """Show one task with its sessions and audit log."""

    _emit_lines(ENGINE_CONTROLLER.inspect_task(TaskCommand(db_path=db_path, task_id=task_id)))


@tasks.command("logs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_logs(db_path: Path | None, task_id: int) -> None:
    """Print the persisted agent output of a finished run."""

    _emit_lines(ENGINE_CONTROLLER.task_logs(TaskCommand(db_path=db_path, task_id=task_id)))


@tasks.command("stop")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_stop(db_path: Path | None, task_id: int) -> None:
    """Stop an in-progress task and kill its agent."""

    _emit_lines(
        _guarded(
            lambda: ENGINE_CONTROLLER.stop_task(TaskCommand(db_path=db_path, task_id=task_id)),
        ),
    )


@tasks.command("restart")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
@click.option(
    "--wait-timeout",
    type=click.FloatRange(min=0),
    default=None,
    help="Max seconds to wait for the restarted agent.",
)
def tasks_restart(db_path: Path | None, task_id: int, wait_timeout: float | None) -> None:
    """Restart a stopped or failed task and run its agent in the foreground."""

    _emit_lines(
        _guarded(
            lambda: ENGINE_CONTROLLER.restart_task(
                RestartCommand(
                    db_path=db_path,
                    task_id=task_id,
                    wait_timeout_seconds=wait_timeout,
                ),
            ),
        ),
    )


@tasks.command("complete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_complete(db_path: Path | None, task_id: int) -> None:
    """Mark a task completed, killing a live agent."""

    _emit_lines(
        _guarded(
            lambda: ENGINE_CONTROLLER.complete_task(TaskCommand(db_path=db_path, task_id=task_id)),
        ),
    )


@tasks.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_delete(db_path: Path | None, task_id: int) -> None:
    """Delete a task with its sessions, logs and worktree."""

    _emit_lines(
        _guarded(
            lambda: ENGINE_CONTROLLER.delete_task(TaskCommand(db_path=db_path, task_id=task_id)),
        ),
    )


@agent_foreman.group()
def session() -> None:
    """Ad-hoc agent sessions outside the task store."""


@session.command("run")
@click.option(
    "--agent",
    type=click.Choice([kind.value for kind in AgentKind], case_sensitive=False),
    default=AgentKind.CLAUDE.value,
    show_default=True,
    help="Agent CLI to launch.",
)
@click.option(
    "--workdir",
    type=click.Path(path_type=Path, file_okay=False),
    required=True,
    help="Working directory for the agent.",
)
@click.option("--prompt", required=True, help="Prompt passed to the agent.")
@click.option(
    "--timeout",
    type=click.FloatRange(min=1),
    default=None,
    help="Kill the agent after this many seconds.",
)
def session_run(agent: str, workdir: Path, prompt: str, timeout: float | None) -> None:
    """Run one agent session and stream its output."""

    _emit_lines(
        _guarded(
            lambda: ENGINE_CONTROLLER.run_session(
                SessionRunCommand(
                    agent=agent,
                    workdir=workdir,
                    prompt=prompt,
                    timeout_seconds=timeout,
                ),
                emit=click.echo,
            ),
        ),
    )


@agent_foreman.group()
def clickup() -> None:
    """ClickUp helpers."""


@clickup.command("statuses")
@click.option("--list-id", required=True, help="ClickUp list id.")
def clickup_statuses(list_id: str) -> None:
    """List the statuses configured on a ClickUp list."""

    _emit_lines(
        _guarded(lambda: ENGINE_CONTROLLER.list_statuses(ListStatusesCommand(list_id=list_id))),
    )


def _guarded(operation: Callable[[], list[str]]) -> list[str]:
    with _cli_errors():
        return operation()


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (ValueError, ClickUpError, SupervisorError, MigrationError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_foreman()
