"""Transport-agnostic terminal relay between a client and one agent process.

A transport (WebSocket, stdin/stdout, a test) owns the socket; this module owns
the message shapes. Outbound messages are plain dicts ready for ``json.dumps``:

* ``{"type": "connected", "task_id": ..., "is_running": ...}``; sessions use ``session_id``
* ``{"type": "output", "line": ..., "is_stderr": ...}``
* ``{"type": "lagged", "missed": ...}``
* ``{"type": "error", "message": ...}``

Inbound messages are ``{"type": "input", "data": ...}`` and ``{"type": "kill"}``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Hashable, Iterator
from typing import Any, Generic, TypeVar

from agent_foreman.engine.fanout import BoundedTopic, Lagged, Subscription, TopicClosedError
from agent_foreman.engine.models import OutputEvent
from agent_foreman.engine.registry import ProcessControl, SupervisorError
from agent_foreman.engine.supervisor import ProcessSupervisor, SessionSupervisor

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
Message = dict[str, Any]


class TerminalConnection(Generic[K]):
    """One client attached to the output of a single task or session."""

    def __init__(
        self,
        key: K,
        *,
        control: ProcessControl[K],
        subscription: Subscription[OutputEvent],
        key_field: str = "task_id",
    ) -> None:
        self.key = key
        self.key_field = key_field
        self._control = control
        self._subscription = subscription
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def connected_message(self) -> Message:
        return {
            "type": "connected",
            self.key_field: self.key,
            "is_running": self._control.is_running(self.key),
        }

    def next_message(self, timeout: float | None = None) -> Message | None:
        """Return the next outbound message for this key, or None on timeout/closure."""

        while not self._closed:
            try:
                item = self._subscription.receive(timeout=timeout)
            except TopicClosedError:
                self.close()
                return None
            if item is None:
                return None
            if isinstance(item, Lagged):
                return {"type": "lagged", "missed": item.missed}
            if item.key == self.key:
                return {"type": "output", "line": item.line, "is_stderr": item.is_stderr}
        return None

    def iter_messages(self, *, poll_seconds: float = 0.5) -> Iterator[Message]:
        """Yield outbound messages until the connection or topic closes."""

        yield self.connected_message()
        while not self._closed:
            message = self.next_message(timeout=poll_seconds)
            if message is not None:
                yield message

    def handle_inbound(self, raw: str | Message) -> Message | None:
        """Apply one inbound message; return an ``error`` message when it fails."""

        try:
            message = json.loads(raw) if isinstance(raw, str) else raw
        except json.JSONDecodeError:
            return _error("Invalid message: not JSON")
        if not isinstance(message, dict):
            return _error("Invalid message: expected an object")

        message_type = message.get("type")
        try:
            if message_type == "input":
                data = message.get("data")
                if not isinstance(data, str):
                    return _error("Invalid input message: 'data' must be a string")
                self._control.send_input(self.key, data)
            elif message_type == "kill":
                self._control.kill(self.key)
            else:
                logger.debug("Ignoring inbound message type %r for %s", message_type, self.key)
        except SupervisorError as error:
            logger.error("Failed to handle %s for %s: %s", message_type, self.key, error)
            return _error(str(error))
        return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._subscription.close()


class TerminalGateway(Generic[K]):
    """Creates ``TerminalConnection`` objects over one supervisor and its output topic."""

    def __init__(
        self,
        *,
        control: ProcessControl[K],
        output_topic: BoundedTopic[OutputEvent],
        backlog: int | None = None,
        key_field: str = "task_id",
    ) -> None:
        self._control = control
        self._output_topic = output_topic
        self._backlog = backlog
        self._key_field = key_field

    @classmethod
    def for_tasks(cls, supervisor: ProcessSupervisor) -> TerminalGateway[int]:
        return TerminalGateway(control=supervisor, output_topic=supervisor.output_topic)

    @classmethod
    def for_sessions(cls, supervisor: SessionSupervisor) -> TerminalGateway[str]:
        return TerminalGateway(
            control=supervisor,
            output_topic=supervisor.output_topic,
            key_field="session_id",
        )

    def connect(self, key: K) -> TerminalConnection[K]:
        subscription = self._output_topic.subscribe(capacity=self._backlog)
        return TerminalConnection(
            key,
            control=self._control,
            subscription=subscription,
            key_field=self._key_field,
        )


def _error(message: str) -> Message:
    return {"type": "error", "message": message}
