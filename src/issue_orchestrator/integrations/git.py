"""Git plumbing for per-issue worktrees."""

import subprocess
from pathlib import Path


class GitError(Exception):
    """A git command exited non-zero."""

    def __init__(self, command: list[str], stderr: str):
        self.command = command
        self.stderr = stderr
        super().__init__(f"git {' '.join(command)}: {stderr or 'failed'}")


def run_git(args: list[str], repo: str | Path) -> str:
    """Run git against ``repo`` (``git -C``) and return stripped stdout."""
    try:
        result = subprocess.run(
            ["git", "-C", str(repo), *args],
            capture_output=True,
            text=True,
            check=True,
        )
    except subprocess.CalledProcessError as e:
        raise GitError(args, e.stderr.strip()) from e
    except FileNotFoundError as e:
        raise GitError(args, "git not found on PATH") from e
    return result.stdout.strip()


def branch_exists(repo: str | Path, branch: str) -> bool:
    try:
        run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], repo)
    except GitError:
        return False
    return True


def add_worktree(repo: str | Path, path: str | Path, branch: str, base: str) -> bool:
    """Check ``branch`` out at ``path``, branching from ``base`` if it is new.

    Returns True when the branch was created. A branch left behind by an
    earlier worker is reused so its commits survive resurrection.
    """
    created = not branch_exists(repo, branch)
    if created:
        run_git(["worktree", "add", "-b", branch, str(path), base], repo)
    else:
        run_git(["worktree", "add", str(path), branch], repo)
    return created


def remove_worktree(repo: str | Path, path: str | Path, force: bool = False):
    args = ["worktree", "remove", str(path)]
    if force:
        args.append("--force")
    run_git(args, repo)
    run_git(["worktree", "prune"], repo)


def current_branch(path: str | Path) -> str | None:
    """Branch checked out at ``path``; None when HEAD is detached."""
    branch = run_git(["rev-parse", "--abbrev-ref", "HEAD"], path)
    return None if branch == "HEAD" else branch
