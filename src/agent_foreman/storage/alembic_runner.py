"""Brings the task store schema up to date before the engine touches it."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)


class MigrationError(RuntimeError):
    """The task store schema could not be migrated."""


def migrations_dir() -> Path:
    """``alembic/`` next to ``src/`` in the checkout this package runs from."""

    return Path(__file__).resolve().parents[3] / "alembic"


def upgrade_head(db_path: Path, *, script_dir: Path | None = None) -> None:
    """Apply every pending revision to the SQLite task store at ``db_path``.

    The migration scripts ship with the source tree rather than the wheel, so
    a missing ``env.py`` means agent-foreman was installed without them.
    """

    script_location = script_dir or migrations_dir()
    if not (script_location / "env.py").is_file():
        raise MigrationError(
            f"Task store migrations not found in {script_location}; "
            "install agent-foreman from a source checkout (pip install -e .).",
        )

    config = Config()
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    logger.debug("Upgrading task store %s with migrations from %s", db_path, script_location)
    command.upgrade(config, "head")
