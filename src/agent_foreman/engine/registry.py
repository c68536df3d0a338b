"""Generic registry of live agent processes keyed by task or session id."""

from __future__ import annotations

import logging
import os
import queue
import shlex
import shutil
import signal
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Generic, Hashable, Protocol, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)

UNKNOWN_EXIT_CODE = -1
_STOP_FORWARDING = object()


class SupervisorError(RuntimeError):
    """Base error for process supervision failures."""


class NotRunningError(SupervisorError):
    """No live process is registered under the requested key."""


class AlreadyRunningError(SupervisorError):
    """A live process is already registered under the requested key."""


class SpawnError(SupervisorError):
    """The agent process could not be launched."""


class ProcessControl(Protocol[K]):
    """Capability set shared by task-bound and session-bound supervisors."""

    def send_input(self, key: K, text: str) -> None: ...

    def kill(self, key: K) -> None: ...

    def is_running(self, key: K) -> bool: ...


@dataclass(slots=True)
class ProcessHandle:
    """In-memory record of one spawned process, alive only while it runs."""

    pid: int
    process: subprocess.Popen[str]
    input_queue: queue.Queue[object] = field(default_factory=queue.Queue)
    finished: threading.Event = field(default_factory=threading.Event)
    exit_code: int | None = None


def build_agent_argv(command_template: str, prompt: str) -> list[str]:
    """Render a ``{prompt}`` command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise SpawnError("Agent command template is empty.")
    if "{prompt}" not in stripped:
        raise SpawnError("Agent command template must include {prompt}.")
    try:
        rendered = stripped.format(prompt=shlex.quote(prompt))
    except (KeyError, IndexError) as error:
        raise SpawnError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise SpawnError("Agent command template rendered empty command.")
    return argv


def locate_executable(command: str) -> str:
    resolved = shutil.which(command)
    if resolved is None:
        raise SpawnError(
            f"The '{command}' command is not found in PATH. "
            "Install the agent CLI and ensure it is on your PATH.",
        )
    return resolved


class ProcessRegistry(Generic[K]):
    """Spawns processes and tracks their handles; one live process per key.

    Each spawn starts four daemon threads: a stdout reader, a stderr reader, a
    stdin/kill multiplexer and a completion waiter. The waiter removes the
    handle and invokes ``on_exit`` exactly once.
    """

    def __init__(self, *, label: str, reader_drain_seconds: float = 5.0) -> None:
        self.label = label
        self.reader_drain_seconds = reader_drain_seconds
        self._lock = threading.Lock()
        self._handles: dict[K, ProcessHandle] = {}
        self._reserved: set[K] = set()
        # Exited but still running their exit callback.
        self._finishing: dict[K, ProcessHandle] = {}

    def is_running(self, key: K) -> bool:
        with self._lock:
            return key in self._handles

    def keys(self) -> set[K]:
        with self._lock:
            return set(self._handles)

    def pid(self, key: K) -> int | None:
        with self._lock:
            handle = self._handles.get(key)
        return handle.pid if handle is not None else None

    def spawn(
        self,
        key: K,
        argv: list[str],
        *,
        cwd: Path,
        on_line: Callable[[str, bool], None],
        on_exit: Callable[[int], None],
    ) -> int:
        """Launch ``argv`` in ``cwd`` and register it under ``key``; return the pid."""

        with self._lock:
            if key in self._handles or key in self._reserved:
                raise AlreadyRunningError(f"{self.label} {key} already has a running process")
            self._reserved.add(key)

        try:
            if not cwd.is_dir():
                raise SpawnError(f"Working directory does not exist: {cwd}")
            executable = locate_executable(argv[0])
            try:
                process = subprocess.Popen(  # noqa: S603
                    [executable, *argv[1:]],
                    cwd=cwd,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                )
            except OSError as error:
                raise SpawnError(
                    f"Failed to spawn {argv[0]} process: {error} (working dir: {cwd})",
                ) from error
        except BaseException:
            with self._lock:
                self._reserved.discard(key)
            raise

        handle = ProcessHandle(pid=process.pid, process=process)
        with self._lock:
            self._reserved.discard(key)
            self._handles[key] = handle

        readers = [
            self._start_thread(
                f"{self.label}-{key}-stdout",
                self._read_stream,
                key,
                process.stdout,
                False,
                on_line,
            ),
            self._start_thread(
                f"{self.label}-{key}-stderr",
                self._read_stream,
                key,
                process.stderr,
                True,
                on_line,
            ),
        ]
        self._start_thread(f"{self.label}-{key}-stdin", self._forward_input, key, handle)
        self._start_thread(
            f"{self.label}-{key}-waiter",
            self._wait_for_exit,
            key,
            handle,
            readers,
            on_exit,
        )
        logger.info("Spawned %s process for %s (pid=%s)", argv[0], key, handle.pid)
        return handle.pid

    def send_input(self, key: K, text: str) -> None:
        handle = self._require(key)
        handle.input_queue.put(text)

    def kill(self, key: K) -> None:
        """Stop input forwarding and force-kill the OS process; exit is reported later."""

        handle = self._require(key)
        handle.input_queue.put(_STOP_FORWARDING)
        force_kill(handle.pid)

    def wait(self, key: K, timeout: float | None = None) -> bool:
        """Block until the process under ``key`` exited and its exit callback ran.

        Returns False if ``timeout`` expired first.
        """

        with self._lock:
            handle = self._handles.get(key) or self._finishing.get(key)
        if handle is None:
            return True
        return handle.finished.wait(timeout)

    def wait_all(self, timeout: float | None = None) -> bool:
        with self._lock:
            handles = [*self._handles.values(), *self._finishing.values()]
        return all(handle.finished.wait(timeout) for handle in handles)

    def _require(self, key: K) -> ProcessHandle:
        with self._lock:
            handle = self._handles.get(key)
        if handle is None:
            raise NotRunningError(f"No process for {self.label} {key}")
        return handle

    def _start_thread(
        self,
        name: str,
        target: Callable[..., None],
        *args: object,
    ) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        return thread

    def _read_stream(
        self,
        key: K,
        stream: IO[str] | None,
        is_stderr: bool,
        on_line: Callable[[str, bool], None],
    ) -> None:
        if stream is None:
            return
        try:
            for raw_line in stream:
                line = raw_line.rstrip("\n").removesuffix("\r")
                try:
                    on_line(line, is_stderr)
                except Exception:
                    logger.exception("Output handler failed for %s %s", self.label, key)
        except (OSError, ValueError) as error:
            logger.debug("Stream reader for %s %s stopped: %s", self.label, key, error)

    def _forward_input(self, key: K, handle: ProcessHandle) -> None:
        stdin = handle.process.stdin
        if stdin is None:
            return
        try:
            while True:
                item = handle.input_queue.get()
                if item is _STOP_FORWARDING:
                    break
                try:
                    stdin.write(str(item))
                    stdin.flush()
                except (OSError, ValueError) as error:
                    logger.error("Failed to write to stdin of %s %s: %s", self.label, key, error)
                    break
        finally:
            try:
                stdin.close()
            except (OSError, ValueError):
                logger.debug("stdin of %s %s already closed", self.label, key)

    def _wait_for_exit(
        self,
        key: K,
        handle: ProcessHandle,
        readers: list[threading.Thread],
        on_exit: Callable[[int], None],
    ) -> None:
        try:
            returncode = handle.process.wait()
        except Exception:
            logger.exception("Failed waiting for %s %s (pid=%s)", self.label, key, handle.pid)
            returncode = None
        # Signal deaths surface as negative return codes and have no exit status.
        exit_code = returncode if returncode is not None and returncode >= 0 else UNKNOWN_EXIT_CODE

        for reader in readers:
            reader.join(timeout=self.reader_drain_seconds)
            if reader.is_alive():
                logger.warning(
                    "%s still open %ss after %s %s exited (pid=%s); output may be truncated",
                    reader.name,
                    self.reader_drain_seconds,
                    self.label,
                    key,
                    handle.pid,
                )
        handle.input_queue.put(_STOP_FORWARDING)

        with self._lock:
            if self._handles.get(key) is handle:
                del self._handles[key]
            self._finishing[key] = handle
        handle.exit_code = exit_code
        logger.info(
            "%s %s process exited (pid=%s, exit_code=%s)",
            self.label,
            key,
            handle.pid,
            exit_code,
        )
        try:
            on_exit(exit_code)
        except Exception:
            logger.exception("Exit handler failed for %s %s", self.label, key)
        finally:
            with self._lock:
                if self._finishing.get(key) is handle:
                    del self._finishing[key]
            handle.finished.set()


def force_kill(pid: int) -> None:
    """Send SIGKILL (SIGTERM where unavailable); a vanished pid is not an error."""

    kill_signal = getattr(signal, "SIGKILL", signal.SIGTERM)
    try:
        os.kill(pid, kill_signal)
    except ProcessLookupError:
        logger.debug("Process %s already exited before kill", pid)
    except OSError as error:
        logger.warning("Failed to kill process %s: %s", pid, error)
