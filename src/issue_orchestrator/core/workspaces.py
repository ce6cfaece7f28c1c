"""Per-issue git worktrees that workers run in."""

import logging
import re
from pathlib import Path

from issue_orchestrator.integrations.git import (
    GitError,
    add_worktree,
    current_branch,
    remove_worktree,
)

logger = logging.getLogger(__name__)


class WorkspaceError(Exception):
    """Raised when a worktree for an issue cannot be prepared."""


def slugify(title: str, max_length: int = 50) -> str:
    """Convert a title to a branch-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:max_length].strip("-")


def branch_name_for(item_id: int, title: str, prefix: str = "feature/issue-") -> str:
    slug = slugify(title)
    return f"{prefix}{item_id}-{slug}" if slug else f"{prefix}{item_id}"


class WorktreeWorkspaces:
    """One worktree per issue under ``<repo>/<worktree_dir>/issue-<id>``."""

    def __init__(self, repo_path: str | Path, worktree_dir: str = ".worktrees",
                 base_branch: str = "main"):
        self.repo_path = Path(repo_path)
        self.worktree_dir = worktree_dir
        self.base_branch = base_branch

    def path_for(self, item_id: int) -> Path:
        return self.repo_path / self.worktree_dir / f"issue-{item_id}"

    def prepare(self, item_id: int, branch: str) -> str:
        """Return the worktree path for an issue, creating it if needed."""
        wt_path = self.path_for(item_id)
        if wt_path.exists():
            try:
                current = current_branch(wt_path)
            except GitError:
                current = None
            if current != branch:
                logger.warning(
                    "Worktree %s is on %s, expected %s", wt_path, current or "?", branch
                )
            return str(wt_path)

        try:
            created = add_worktree(self.repo_path, wt_path, branch, self.base_branch)
        except GitError as e:
            raise WorkspaceError(f"Could not create worktree for #{item_id}: {e}") from e
        logger.info(
            "Created worktree %s on %s branch %s",
            wt_path, "new" if created else "existing", branch,
        )
        return str(wt_path)

    def remove(self, item_id: int, force: bool = False) -> bool:
        wt_path = self.path_for(item_id)
        if not wt_path.exists():
            return False
        try:
            remove_worktree(self.repo_path, wt_path, force=force)
        except GitError as e:
            raise WorkspaceError(str(e)) from e
        return True
