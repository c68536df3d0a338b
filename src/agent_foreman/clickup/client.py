"""HTTP client for the ClickUp task source."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from agent_foreman.config import ClickUpSettings

logger = logging.getLogger(__name__)

CLICKUP_API_BASE = "https://api.clickup.com/api/v2"
_PRIORITY_NAMES = {"urgent": 1, "high": 2, "normal": 3, "low": 4}


class ClickUpError(RuntimeError):
    """Remote task source request failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class RemoteTask:
    """Task as returned by the remote source, reduced to the fields the engine uses."""

    id: str
    name: str
    description: str | None
    status: str
    priority: int | None
    list_id: str


@dataclass(slots=True)
class RemoteStatus:
    status: str
    status_type: str | None = None
    color: str | None = None


class TaskSource(Protocol):
    """Operations the scheduler and reconciler need from the remote tracker."""

    def list_tasks(self, list_id: str, status: str | None = None) -> list[RemoteTask]: ...

    def update_task_status(self, task_id: str, status: str) -> None: ...

    def add_time_entry(
        self,
        task_id: str,
        *,
        start_ms: int,
        end_ms: int,
        duration_ms: int,
    ) -> None: ...


def priority_to_int(priority: Any) -> int | None:
    """Map a ClickUp priority object (``{"priority": "high"}``) to 1..4."""

    if not isinstance(priority, dict):
        return None
    name = priority.get("priority")
    if not isinstance(name, str):
        return None
    return _PRIORITY_NAMES.get(name.strip().lower())


class ClickUpClient:
    """Synchronous ClickUp API v2 client with retries and timeout."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = CLICKUP_API_BASE,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not api_key.strip():
            raise ClickUpError("API key not configured")
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Authorization": api_key.strip()},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    @classmethod
    def from_settings(
        cls,
        settings: ClickUpSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> ClickUpClient:
        return cls(
            settings.api_key,
            base_url=settings.base_url,
            timeout_seconds=settings.timeout_seconds,
            max_retries=settings.max_retries,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ClickUpClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def list_tasks(self, list_id: str, status: str | None = None) -> list[RemoteTask]:
        """Return tasks of a list, optionally only those in ``status``."""

        params = {"statuses[]": status} if status else None
        payload = self._request("GET", f"/list/{list_id}/task", params=params)
        tasks = payload.get("tasks", [])
        if not isinstance(tasks, list):
            raise ClickUpError(f"Unexpected task list payload for list {list_id}")
        return [_to_remote_task(item, list_id=list_id) for item in tasks if isinstance(item, dict)]

    def list_statuses(self, list_id: str) -> list[RemoteStatus]:
        payload = self._request("GET", f"/list/{list_id}")
        return [
            RemoteStatus(
                status=str(item.get("status", "")),
                status_type=item.get("type"),
                color=item.get("color"),
            )
            for item in payload.get("statuses", [])
            if isinstance(item, dict)
        ]

    def update_task_status(self, task_id: str, status: str) -> None:
        self._request("PUT", f"/task/{task_id}", json={"status": status})

    def add_time_entry(
        self,
        task_id: str,
        *,
        start_ms: int,
        end_ms: int,
        duration_ms: int,
    ) -> None:
        self._request(
            "POST",
            f"/task/{task_id}/time",
            json={"start": start_ms, "end": end_ms, "time": duration_ms},
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, object] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as error:
            raise ClickUpError(f"ClickUp request timed out: {method} {path}") from error
        except httpx.HTTPError as error:
            raise ClickUpError(f"HTTP request failed: {method} {path}: {error}") from error

        if not response.is_success:
            raise ClickUpError(
                f"ClickUp API error: {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as error:
            raise ClickUpError(f"ClickUp returned invalid JSON for {method} {path}") from error
        if not isinstance(payload, dict):
            return {}
        return payload


def _to_remote_task(item: dict[str, Any], *, list_id: str) -> RemoteTask:
    status = item.get("status")
    list_info = item.get("list")
    description = item.get("description")
    return RemoteTask(
        id=str(item.get("id", "")),
        name=str(item.get("name", "")),
        description=description if isinstance(description, str) and description else None,
        status=str(status.get("status", "")) if isinstance(status, dict) else str(status or ""),
        priority=priority_to_int(item.get("priority")),
        list_id=str(list_info.get("id", list_id)) if isinstance(list_info, dict) else list_id,
    )
