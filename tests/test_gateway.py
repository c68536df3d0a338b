from __future__ import annotations

from pathlib import Path

import allure
from conftest import echo_template

from agent_foreman.engine.gateway import TerminalGateway
from agent_foreman.engine.models import OutputEvent
from agent_foreman.engine.supervisor import (
    AgentKind,
    ProcessSupervisor,
    SessionSupervisor,
    exit_line,
)

pytestmark = [
    allure.epic("Agent Processes"),
    allure.feature("Terminal Gateway"),
]


def _collect(connection, *, until: str) -> list[dict]:
    messages = []
    while (message := connection.next_message(timeout=10)) is not None:
        messages.append(message)
        if message.get("line") == until:
            break
    return messages


def test_connection_relays_input_and_output_for_its_task(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(agent_command_template=echo_template("--echo-stdin"))
    gateway = TerminalGateway.for_tasks(supervisor)
    connection = gateway.connect(1)
    other = gateway.connect(2)
    supervisor.spawn(1, "ready", tmp_path)

    assert connection.connected_message() == {
        "type": "connected",
        "task_id": 1,
        "is_running": True,
    }
    assert connection.handle_inbound('{"type": "input", "data": "ping\\n"}') is None
    assert connection.handle_inbound({"type": "input", "data": "exit\n"}) is None

    messages = _collect(connection, until=exit_line(0))
    assert [message["line"] for message in messages] == ["ready", "echo: ping", exit_line(0)]
    assert all(message["type"] == "output" for message in messages)
    assert other.next_message(timeout=0.2) is None
    connection.close()
    other.close()


def test_kill_message_terminates_agent(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(agent_command_template=echo_template("--sleep", "30"))
    connection = TerminalGateway.for_tasks(supervisor).connect(3)
    supervisor.spawn(3, "busy", tmp_path)

    assert connection.handle_inbound({"type": "kill"}) is None

    assert supervisor.wait(3, timeout=10)
    lines = [message["line"] for message in _collect(connection, until=exit_line(-1))]
    assert lines[-1] == exit_line(-1)
    assert connection.connected_message()["is_running"] is False


def test_invalid_inbound_messages_return_errors() -> None:
    supervisor = ProcessSupervisor(agent_command_template=echo_template())
    connection = TerminalGateway.for_tasks(supervisor).connect(4)

    assert connection.handle_inbound("not json") == {
        "type": "error",
        "message": "Invalid message: not JSON",
    }
    assert connection.handle_inbound("[1, 2]") == {
        "type": "error",
        "message": "Invalid message: expected an object",
    }
    assert connection.handle_inbound({"type": "input", "data": 5})["type"] == "error"
    assert connection.handle_inbound({"type": "kill"}) == {
        "type": "error",
        "message": "No process for task 4",
    }
    assert connection.handle_inbound({"type": "resize"}) is None


def test_slow_client_receives_lag_notice() -> None:
    supervisor = ProcessSupervisor()
    gateway = TerminalGateway(control=supervisor, output_topic=supervisor.output_topic, backlog=2)
    connection = gateway.connect(5)
    for index in range(5):
        supervisor.output_topic.publish(OutputEvent(key=5, line=f"l{index}", is_stderr=False))

    assert connection.next_message(timeout=0) == {"type": "lagged", "missed": 3}
    assert connection.next_message(timeout=0)["line"] == "l3"
    assert connection.next_message(timeout=0)["line"] == "l4"


def test_iter_messages_stops_when_topic_closes() -> None:
    supervisor = ProcessSupervisor()
    connection = TerminalGateway.for_tasks(supervisor).connect(6)
    supervisor.output_topic.publish(OutputEvent(key=6, line="only", is_stderr=True))
    supervisor.close()

    messages = list(connection.iter_messages(poll_seconds=0.05))

    assert messages == [
        {"type": "connected", "task_id": 6, "is_running": False},
        {"type": "output", "line": "only", "is_stderr": True},
    ]
    assert connection.closed


def test_session_connection_announces_session_id(tmp_path: Path) -> None:
    supervisor = SessionSupervisor(command_templates={AgentKind.CODEX: echo_template()})
    connection = TerminalGateway.for_sessions(supervisor).connect("sess-1")
    supervisor.spawn("sess-1", "hello", tmp_path, AgentKind.CODEX)

    assert supervisor.wait("sess-1", timeout=10)
    assert connection.connected_message() == {
        "type": "connected",
        "session_id": "sess-1",
        "is_running": False,
    }
    lines = [message["line"] for message in _collect(connection, until=exit_line(0))]
    assert lines == ["hello", exit_line(0)]
    connection.close()
