"""Tests for git worktree planning and provisioning."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import allure
import pytest

from agent_foreman.workspace.provisioner import (
    WorkspaceError,
    WorktreeProvisioner,
    derive_worktree_name,
    plan_worktree,
)

pytestmark = [
    allure.epic("Workspaces"),
    allure.feature("Git Worktrees"),
]

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(repo: Path, *args: str) -> None:
    subprocess.run(  # noqa: S603
        ["git", "-C", str(repo), *args],  # noqa: S607
        check=True,
        capture_output=True,
    )


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "target"
    repo.mkdir()
    _git(repo, "init")
    _git(
        repo,
        "-c",
        "user.email=dev@example.com",
        "-c",
        "user.name=Dev",
        "commit",
        "--allow-empty",
        "-m",
        "init",
    )
    _git(repo, "branch", "dev")
    return repo


class TestWorktreePlanning:
    @pytest.mark.parametrize(
        ("task_name", "expected"),
        [
            ("Fix Login Bug", "fix-login-bug"),
            ("API: add /v2 endpoint!", "api--add--v2-endpoint-"),
            ("keep_under-scores", "keep_under-scores"),
        ],
    )
    def test_name_derivation(self, task_name: str, expected: str) -> None:
        assert derive_worktree_name(task_name) == expected

    def test_plan_uses_branch_and_path_conventions(self, tmp_path: Path) -> None:
        spec = plan_worktree(tmp_path, external_task_id="86abc", task_name="Fix Login")

        assert spec.name == "fix-login"
        assert spec.branch == "task/86abc-fix-login"
        assert spec.path == tmp_path / "worktrees" / "fix-login"


@requires_git
class TestWorktreeProvisioner:
    def test_provision_creates_worktree_on_task_branch(self, git_repo: Path) -> None:
        provisioner = WorktreeProvisioner()
        spec = plan_worktree(git_repo, external_task_id="cu1", task_name="Add Feature")

        path = provisioner.provision(git_repo, spec, base_branch="dev")

        assert path == git_repo / "worktrees" / "add-feature"
        assert path.is_dir()
        branch = subprocess.run(  # noqa: S603
            ["git", "-C", str(path), "rev-parse", "--abbrev-ref", "HEAD"],  # noqa: S607
            check=True,
            capture_output=True,
            text=True,
        ).stdout.strip()
        assert branch == "task/cu1-add-feature"

    def test_unknown_base_branch_is_a_workspace_error(self, git_repo: Path) -> None:
        provisioner = WorktreeProvisioner()
        spec = plan_worktree(git_repo, external_task_id="cu2", task_name="Broken")

        with pytest.raises(WorkspaceError, match="git worktree failed"):
            provisioner.provision(git_repo, spec, base_branch="no-such-branch")
        assert not spec.path.exists()

    def test_remove_worktree(self, git_repo: Path) -> None:
        provisioner = WorktreeProvisioner()
        spec = plan_worktree(git_repo, external_task_id="cu3", task_name="Temp")
        path = provisioner.provision(git_repo, spec, base_branch="dev")

        assert provisioner.remove_worktree(path, repo_path=git_repo)
        assert not path.exists()
        assert not provisioner.remove_worktree(path, repo_path=git_repo)


def test_missing_git_executable_is_a_workspace_error(tmp_path: Path) -> None:
    provisioner = WorktreeProvisioner(git_executable="no-such-git-xyz")
    spec = plan_worktree(tmp_path, external_task_id="cu4", task_name="X")

    assert not provisioner.fetch(tmp_path)
    with pytest.raises(WorkspaceError, match="git command not found"):
        provisioner.add_worktree(tmp_path, spec, base_branch="dev")
