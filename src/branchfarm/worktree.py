"""
Git worktree management.

A branch checkout is either absent or present under ``<worktrees_dir>/<slug>``.
Creating one picks exactly one of three strategies (remote-tracking branch,
existing local branch, new branch); refreshing an existing one is a series of
best-effort attempts that never abort the workflow.
"""

import logging
from pathlib import Path
from typing import List

from .models import WorktreeResult, WorktreeState
from .runner import CommandRunner

logger = logging.getLogger(__name__)


class WorktreeManager:
    """Brings a branch's checkout to a ready state."""

    def __init__(self, repo_dir: Path, worktrees_dir: Path, runner: CommandRunner):
        self.repo_dir = Path(repo_dir)
        self.worktrees_dir = Path(worktrees_dir)
        self.runner = runner

    def path_for(self, slug: str) -> Path:
        return self.worktrees_dir / slug

    def state(self, path: Path) -> WorktreeState:
        if (Path(path) / ".git").exists():
            return WorktreeState.EXISTS
        return WorktreeState.NOT_EXIST

    def setup(self, branch: str, slug: str) -> WorktreeResult:
        """
        Create the worktree for ``branch`` or refresh the existing one.

        Args:
            branch: Branch name to check out
            slug: Directory name under the worktrees dir

        Returns:
            WorktreeResult; refresh problems are reported as warnings

        Raises:
            ExternalCommandFailure: If creating a new worktree fails
        """
        path = self.path_for(slug)
        if not self.runner.dry_run:
            self.worktrees_dir.mkdir(parents=True, exist_ok=True)

        previous = self.state(path)
        result = WorktreeResult(path=path, branch=branch, previous_state=previous)
        if previous is WorktreeState.EXISTS:
            result.warnings.extend(self.refresh(path, branch))
        else:
            self.create(path, branch)

        logger.info(result.get_summary())
        return result

    def create(self, path: Path, branch: str) -> None:
        logger.info(f"Creating worktree at {path}...")
        self._git(self.repo_dir, "fetch", "-p")

        if self.remote_branch_exists(branch):
            logger.debug(f"Tracking remote branch origin/{branch}")
            self._git(self.repo_dir, "worktree", "add", str(path), "-B", branch, f"origin/{branch}")
        elif self.local_branch_exists(branch):
            logger.debug(f"Attaching existing local branch {branch}")
            self._git(self.repo_dir, "worktree", "add", str(path), branch)
        else:
            logger.debug(f"Creating new branch {branch}")
            self._git(self.repo_dir, "worktree", "add", str(path), "-b", branch)

    def refresh(self, path: Path, branch: str) -> List[str]:
        """
        Update an existing worktree as far as its local state allows.

        Each step may legitimately fail (uncommitted changes, branch already
        checked out, diverged history); failures are logged and returned as
        warnings.
        """
        logger.info(f"Worktree exists at {path}, updating...")
        attempts = [
            ("fetch", ["fetch", "-p"]),
            ("checkout", ["checkout", branch]),
            ("checkout tracking branch", ["checkout", "-b", branch, f"origin/{branch}"]),
            ("fast-forward pull", ["pull", "--ff-only"]),
        ]

        warnings = []
        for label, args in attempts:
            result = self.runner.run_unchecked(["git", "-C", str(path), *args])
            if not result.success:
                detail = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else f"exit {result.exit_code}"
                message = f"{label} skipped: {detail}"
                logger.warning(f"Worktree refresh: {message}")
                warnings.append(message)
        return warnings

    def remove(self, slug: str) -> bool:
        """Force-remove the worktree registration; returns False if there was none."""
        path = self.path_for(slug)
        if self.state(path) is WorktreeState.NOT_EXIST:
            logger.info(f"No worktree at {path}")
            return False

        self._git(self.repo_dir, "worktree", "remove", "--force", str(path))
        return True

    def remote_branch_exists(self, branch: str) -> bool:
        return self._ref_exists(f"refs/remotes/origin/{branch}")

    def local_branch_exists(self, branch: str) -> bool:
        return self._ref_exists(f"refs/heads/{branch}")

    def _ref_exists(self, ref: str) -> bool:
        return self.runner.probe(["git", "-C", str(self.repo_dir), "show-ref", "--verify", "--quiet", ref])

    def _git(self, cwd: Path, *args: str) -> None:
        self.runner.run(["git", "-C", str(cwd), *args])
