"""Runtime configuration for the orchestration engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND_TEMPLATE = "claude -p {prompt} --dangerously-skip-permissions"


@dataclass(slots=True)
class SchedulerSettings:
    """Poller settings, re-read on every tick."""

    poll_interval_seconds: float = 30.0
    parallel_limit: int = 1
    trigger_status: str = "Ready for Dev"
    target_status: str = "In Development"
    list_id: str = ""
    target_repo_path: str = ""
    dev_branch: str = "dev"
    agent_prompt: str = ""
    sync_time_entries: bool = False


@dataclass(slots=True)
class ClickUpSettings:
    """External task source (ClickUp) client settings."""

    api_key: str = ""
    base_url: str = "https://api.clickup.com/api/v2"
    timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class SupervisorSettings:
    """Agent process launch and output fan-out settings."""

    agent_command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    output_backlog: int = 1_000
    exit_backlog: int = 100
    reader_drain_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_foreman.db")
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    clickup: ClickUpSettings = field(default_factory=ClickUpSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_FOREMAN_DB_PATH", ".agent_foreman.db")),
            scheduler=SchedulerSettings(
                poll_interval_seconds=float(
                    os.getenv("AGENT_FOREMAN_POLL_INTERVAL_SECONDS", "30"),
                ),
                parallel_limit=_env_int("AGENT_FOREMAN_PARALLEL_LIMIT", default=1),
                trigger_status=_env_str("AGENT_FOREMAN_TRIGGER_STATUS", "Ready for Dev"),
                target_status=_env_str("AGENT_FOREMAN_TARGET_STATUS", "In Development"),
                list_id=os.getenv("AGENT_FOREMAN_CLICKUP_LIST_ID", "").strip(),
                target_repo_path=os.getenv("AGENT_FOREMAN_TARGET_REPO_PATH", "").strip(),
                dev_branch=_env_str("AGENT_FOREMAN_DEV_BRANCH", "dev"),
                agent_prompt=os.getenv("AGENT_FOREMAN_AGENT_PROMPT", ""),
                sync_time_entries=_env_bool("AGENT_FOREMAN_SYNC_TIME_ENTRIES", default=False),
            ),
            clickup=ClickUpSettings(
                api_key=os.getenv(
                    "AGENT_FOREMAN_CLICKUP_API_KEY",
                    os.getenv("CLICKUP_API_KEY", ""),
                ).strip(),
                base_url=os.getenv(
                    "AGENT_FOREMAN_CLICKUP_BASE_URL",
                    "https://api.clickup.com/api/v2",
                ).rstrip("/"),
                timeout_seconds=float(os.getenv("AGENT_FOREMAN_CLICKUP_TIMEOUT_SECONDS", "30")),
                max_retries=_env_int("AGENT_FOREMAN_CLICKUP_MAX_RETRIES", default=3),
            ),
            supervisor=SupervisorSettings(
                agent_command_template=_env_str(
                    "AGENT_FOREMAN_AGENT_COMMAND",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                output_backlog=_env_int("AGENT_FOREMAN_OUTPUT_BACKLOG", default=1_000),
                exit_backlog=_env_int("AGENT_FOREMAN_EXIT_BACKLOG", default=100),
                reader_drain_seconds=float(
                    os.getenv("AGENT_FOREMAN_READER_DRAIN_SECONDS", "5"),
                ),
            ),
        )

    def validate_for_scheduler(self) -> None:
        """Raise configuration error for values the engine cannot run with.

        A missing repo path, missing list id or a zero parallel limit are valid
        idle states and are not rejected here.
        """

        if self.scheduler.parallel_limit < 0:
            raise ValueError("AGENT_FOREMAN_PARALLEL_LIMIT must be >= 0.")
        if self.scheduler.poll_interval_seconds <= 0:
            raise ValueError("AGENT_FOREMAN_POLL_INTERVAL_SECONDS must be > 0.")
        if "{prompt}" not in self.supervisor.agent_command_template:
            raise ValueError("AGENT_FOREMAN_AGENT_COMMAND must include {prompt}.")
        if self.supervisor.output_backlog <= 0 or self.supervisor.exit_backlog <= 0:
            raise ValueError("Output and exit backlogs must be positive integers.")


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name, "").strip()
    return value or default


def _env_int(name: str, *, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
