from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_foreman.config import (
    DEFAULT_AGENT_COMMAND_TEMPLATE,
    SchedulerSettings,
    Settings,
    SupervisorSettings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_foreman.db")
    assert settings.scheduler.parallel_limit == 1
    assert settings.scheduler.trigger_status == "Ready for Dev"
    assert settings.scheduler.target_status == "In Development"
    assert settings.scheduler.dev_branch == "dev"
    assert settings.scheduler.sync_time_entries is False
    assert settings.clickup.api_key == ""
    assert settings.supervisor.agent_command_template == DEFAULT_AGENT_COMMAND_TEMPLATE
    settings.validate_for_scheduler()


def test_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_FOREMAN_PARALLEL_LIMIT", "3")
    monkeypatch.setenv("AGENT_FOREMAN_CLICKUP_LIST_ID", " 901 ")
    monkeypatch.setenv("AGENT_FOREMAN_TARGET_REPO_PATH", str(tmp_path))
    monkeypatch.setenv("AGENT_FOREMAN_SYNC_TIME_ENTRIES", "yes")
    monkeypatch.setenv("CLICKUP_API_KEY", "pk_env")
    monkeypatch.setenv("AGENT_FOREMAN_CLICKUP_BASE_URL", "https://clickup.test/api/v2/")

    settings = Settings.from_env(db_path=tmp_path / "custom.db")

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.scheduler.parallel_limit == 3
    assert settings.scheduler.list_id == "901"
    assert settings.scheduler.sync_time_entries is True
    assert settings.clickup.api_key == "pk_env"
    assert settings.clickup.base_url == "https://clickup.test/api/v2"


def test_prefixed_api_key_wins(monkeypatch) -> None:
    monkeypatch.setenv("CLICKUP_API_KEY", "pk_generic")
    monkeypatch.setenv("AGENT_FOREMAN_CLICKUP_API_KEY", "pk_prefixed")

    assert Settings.from_env().clickup.api_key == "pk_prefixed"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("AGENT_FOREMAN_PARALLEL_LIMIT", "two", "Invalid integer value"),
        ("AGENT_FOREMAN_SYNC_TIME_ENTRIES", "maybe", "Invalid boolean value"),
    ],
)
def test_invalid_environment_values_are_rejected(
    monkeypatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_validate_for_scheduler_rejects_bad_values() -> None:
    with pytest.raises(ValueError, match="PARALLEL_LIMIT must be >= 0"):
        Settings(scheduler=SchedulerSettings(parallel_limit=-1)).validate_for_scheduler()
    with pytest.raises(ValueError, match="POLL_INTERVAL_SECONDS must be > 0"):
        Settings(scheduler=SchedulerSettings(poll_interval_seconds=0)).validate_for_scheduler()
    with pytest.raises(ValueError, match="must include"):
        Settings(
            supervisor=SupervisorSettings(agent_command_template="claude -p"),
        ).validate_for_scheduler()


def test_idle_configuration_is_valid() -> None:
    Settings(scheduler=SchedulerSettings(parallel_limit=0, list_id="")).validate_for_scheduler()
