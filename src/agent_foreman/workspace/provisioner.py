"""Git worktree provisioning for per-task agent workspaces."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

WORKTREES_DIR_NAME = "worktrees"


class WorkspaceError(RuntimeError):
    """Workspace could not be prepared for an agent run."""


@dataclass(frozen=True, slots=True)
class WorktreeSpec:
    """Where and on which branch a task's worktree lives."""

    name: str
    branch: str
    path: Path


def derive_worktree_name(task_name: str) -> str:
    """Keep alphanumerics, ``-`` and ``_``; map everything else to ``-``; lowercase."""

    return "".join(
        char if char.isalnum() or char in {"-", "_"} else "-" for char in task_name
    ).lower()


def plan_worktree(repo_path: str | Path, *, external_task_id: str, task_name: str) -> WorktreeSpec:
    name = derive_worktree_name(task_name)
    return WorktreeSpec(
        name=name,
        branch=f"task/{external_task_id}-{name}",
        path=Path(repo_path) / WORKTREES_DIR_NAME / name,
    )


class WorktreeProvisioner:
    """Runs ``git`` against the target repository to manage task worktrees."""

    def __init__(self, *, git_executable: str = "git", timeout_seconds: float = 300.0) -> None:
        self.git_executable = git_executable
        self.timeout_seconds = timeout_seconds

    def ensure_root(self, repo_path: str | Path) -> Path:
        root = Path(repo_path) / WORKTREES_DIR_NAME
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise WorkspaceError(f"worktrees dir create failed: {error}") from error
        return root

    def fetch(self, repo_path: str | Path) -> bool:
        """Fetch all remotes; failure is logged and reported as False."""

        try:
            result = self._git(repo_path, "fetch", "--all")
        except WorkspaceError as error:
            logger.warning("Failed to fetch from remote: %s", error)
            return False
        if result.returncode != 0:
            logger.warning("git fetch --all failed in %s: %s", repo_path, result.stderr.strip())
            return False
        return True

    def add_worktree(self, repo_path: str | Path, spec: WorktreeSpec, *, base_branch: str) -> None:
        result = self._git(
            repo_path,
            "worktree",
            "add",
            "-b",
            spec.branch,
            str(spec.path),
            base_branch,
        )
        if result.returncode != 0:
            raise WorkspaceError(f"git worktree failed: {result.stderr.strip()}")
        logger.info(
            "Created worktree at %s on branch %s: %s",
            spec.path,
            spec.branch,
            result.stdout.strip(),
        )

    def provision(
        self,
        repo_path: str | Path,
        spec: WorktreeSpec,
        *,
        base_branch: str,
    ) -> Path:
        """Create the worktree for ``spec`` and return its verified path."""

        self.ensure_root(repo_path)
        self.fetch(repo_path)
        self.add_worktree(repo_path, spec, base_branch=base_branch)
        if not spec.path.is_dir():
            raise WorkspaceError("worktree directory missing after creation")
        return spec.path

    def remove_worktree(
        self,
        worktree_path: str | Path,
        *,
        repo_path: str | Path | None = None,
    ) -> bool:
        """Best-effort ``git worktree remove --force``; True when git reported success."""

        path = Path(worktree_path)
        if not path.exists():
            return False
        try:
            result = self._git(repo_path or path.parent, "worktree", "remove", "--force", str(path))
        except WorkspaceError as error:
            logger.warning("Failed to remove worktree %s: %s", path, error)
            return False
        if result.returncode != 0:
            logger.warning("git worktree remove failed for %s: %s", path, result.stderr.strip())
            return False
        return True

    def _git(self, repo_path: str | Path, *args: str) -> subprocess.CompletedProcess[str]:
        command = [self.git_executable, "-C", str(repo_path), *args]
        try:
            return subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as error:
            raise WorkspaceError(f"git command not found: {self.git_executable}") from error
        except subprocess.TimeoutExpired as error:
            raise WorkspaceError(f"git {' '.join(args)} timed out in {repo_path}") from error
        except OSError as error:
            raise WorkspaceError(f"git worktree command failed: {error}") from error
