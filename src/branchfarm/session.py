"""
tmux sessions for branch environments.
"""

import logging
import os
from pathlib import Path
from typing import List, Mapping, Optional

from .runner import CommandRunner, is_toolchain_variable

logger = logging.getLogger(__name__)


class TmuxSessions:
    """Idempotent create/kill of one detached tmux session per environment."""

    def __init__(self, runner: CommandRunner, parent_env: Optional[Mapping[str, str]] = None):
        self.runner = runner
        self.parent_env = parent_env if parent_env is not None else os.environ

    def exists(self, name: str) -> bool:
        return self.runner.probe(["tmux", "has-session", "-t", name])

    def create(self, name: str, directory: Path) -> bool:
        """
        Start a detached session in ``directory`` unless one already exists.

        A new session inherits branchfarm's own environment, which may pin a
        different Ruby than the worktree needs. Those variables are removed
        from the session and the initial window, which already inherited
        them, is replaced with a fresh one.

        Returns:
            True if a session was created
        """
        if self.exists(name):
            logger.info(f"tmux session already running: {name}")
            return False

        logger.info(f"Creating tmux session: {name}")
        self.runner.run(["tmux", "new-session", "-d", "-s", name, "-c", str(directory)])
        for variable in self.toolchain_variables():
            self.runner.run(["tmux", "set-environment", "-t", name, "-r", variable])
        self._replace_initial_window(name, directory)
        return True

    def kill(self, name: str) -> bool:
        if not self.exists(name):
            logger.info(f"No tmux session named {name}")
            return False

        logger.info(f"Killing tmux session: {name}")
        self.runner.run(["tmux", "kill-session", "-t", name])
        return True

    def toolchain_variables(self) -> List[str]:
        return sorted(k for k in self.parent_env if is_toolchain_variable(k))

    def _replace_initial_window(self, name: str, directory: Path) -> None:
        # set-environment -r only affects windows opened afterwards
        self.runner.run(["tmux", "new-window", "-t", name, "-c", str(directory)])
        self.runner.run(["tmux", "kill-window", "-t", f"{name}:0"])
        self.runner.run(["tmux", "move-window", "-t", name, "-r"])
