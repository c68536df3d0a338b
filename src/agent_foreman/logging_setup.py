"""Console logging for long-running CLI commands."""

from __future__ import annotations

import logging
import sys


class _ConsoleNoiseFilter(logging.Filter):
    """Keep agent_foreman records; let third-party libraries through at WARNING+ only."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("agent_foreman."):
            return True
        return record.levelno >= logging.WARNING


def parse_level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {value!r}")
    return level


def setup_logging(level: str | int = logging.INFO) -> None:
    """Route log records to stderr.

    Call once, before the engine starts its threads.
    """

    root = logging.getLogger()
    root.setLevel(parse_level(level))

    # Remove any pre-existing handlers to avoid duplicates.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(threadName)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    logging.captureWarnings(True)
