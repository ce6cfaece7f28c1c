"""Tests for per-issue git worktrees."""

import logging
import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from issue_orchestrator.core.workspaces import (
    WorkspaceError,
    WorktreeWorkspaces,
    branch_name_for,
    slugify,
)
from issue_orchestrator.integrations.git import GitError, branch_exists, current_branch, run_git


@pytest.fixture
def git_repo():
    """Create a temporary git repo with an initial commit."""
    with tempfile.TemporaryDirectory() as tmp:
        subprocess.run(["git", "init"], cwd=tmp, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", "main"], cwd=tmp, capture_output=True, check=True)
        readme = Path(tmp) / "README.md"
        readme.write_text("# Test")
        subprocess.run(["git", "add", "."], cwd=tmp, capture_output=True, check=True)
        subprocess.run(
            ["git", "commit", "-m", "init"],
            cwd=tmp,
            capture_output=True,
            check=True,
            env={**os.environ, "GIT_AUTHOR_NAME": "Test", "GIT_AUTHOR_EMAIL": "test@test.com",
                 "GIT_COMMITTER_NAME": "Test", "GIT_COMMITTER_EMAIL": "test@test.com"},
        )
        yield tmp


class TestBranchNames:
    def test_slugify(self):
        assert slugify("Fix: Login (OAuth) broken!") == "fix-login-oauth-broken"
        assert slugify("  spaces   and_underscores ") == "spaces-and-underscores"
        assert len(slugify("word " * 30)) <= 50
        assert not slugify("word " * 30).endswith("-")

    def test_branch_name(self):
        assert branch_name_for(42, "Add search") == "feature/issue-42-add-search"
        assert branch_name_for(7, "!!!") == "feature/issue-7"
        assert branch_name_for(7, "x", prefix="bot/") == "bot/7-x"


class TestWorktreeWorkspaces:
    def test_prepare_creates_worktree_on_new_branch(self, git_repo):
        workspaces = WorktreeWorkspaces(git_repo)
        path = workspaces.prepare(42, "feature/issue-42-add-search")

        assert Path(path) == Path(git_repo) / ".worktrees" / "issue-42"
        assert Path(path, "README.md").exists()
        assert branch_exists(git_repo, "feature/issue-42-add-search")
        assert current_branch(path) == "feature/issue-42-add-search"

    def test_prepare_is_idempotent(self, git_repo):
        workspaces = WorktreeWorkspaces(git_repo)
        first = workspaces.prepare(1, "feature/issue-1")
        second = workspaces.prepare(1, "feature/issue-1")
        assert first == second

    def test_existing_branch_is_reused(self, git_repo):
        subprocess.run(
            ["git", "branch", "feature/issue-3"], cwd=git_repo, capture_output=True, check=True
        )
        path = WorktreeWorkspaces(git_repo).prepare(3, "feature/issue-3")
        assert current_branch(path) == "feature/issue-3"

    def test_branch_mismatch_is_logged(self, git_repo, caplog):
        workspaces = WorktreeWorkspaces(git_repo)
        workspaces.prepare(4, "feature/issue-4")
        with caplog.at_level(logging.WARNING):
            workspaces.prepare(4, "feature/issue-4-renamed")
        assert "expected feature/issue-4-renamed" in caplog.text

    def test_bad_base_branch(self, git_repo):
        workspaces = WorktreeWorkspaces(git_repo, base_branch="does-not-exist")
        with pytest.raises(WorkspaceError):
            workspaces.prepare(5, "feature/issue-5")

    def test_remove(self, git_repo):
        workspaces = WorktreeWorkspaces(git_repo)
        path = workspaces.prepare(6, "feature/issue-6")
        assert workspaces.remove(6, force=True)
        assert not Path(path).exists()
        assert workspaces.remove(6) is False


class TestGitHelpers:
    def test_error_carries_command_and_stderr(self, git_repo):
        with pytest.raises(GitError) as exc:
            run_git(["checkout", "no-such-branch"], git_repo)
        assert exc.value.command == ["checkout", "no-such-branch"]
        assert "no-such-branch" in exc.value.stderr
        assert str(exc.value).startswith("git checkout no-such-branch:")

    def test_detached_head_has_no_branch(self, git_repo):
        subprocess.run(
            ["git", "checkout", "--detach"], cwd=git_repo, capture_output=True, check=True
        )
        assert current_branch(git_repo) is None
        assert not branch_exists(git_repo, "feature/missing")
