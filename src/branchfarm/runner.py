"""
External command execution for branchfarm.

Every side effect on git, Ruby, Node, Caddy, tmux and friends goes through a
CommandRunner so that dry-run mode can log intended actions instead of
performing them.
"""

import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Union

from .logging_config import CommandLogHandler, mask_sensitive_data
from .models import CommandResult, ExternalCommandFailure

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]

# Variables set by the Ruby toolchain running the caller; they must not leak
# into commands that run under the worktree's own Ruby.
TOOLCHAIN_ENV_PREFIXES = ("BUNDLE", "GEM_")
TOOLCHAIN_ENV_NAMES = ("RUBYOPT", "RUBYLIB", "RBENV_VERSION", "RBENV_DIR")


def is_toolchain_variable(name: str) -> bool:
    return name.startswith(TOOLCHAIN_ENV_PREFIXES) or name in TOOLCHAIN_ENV_NAMES


def format_command(command: Command) -> str:
    if isinstance(command, str):
        return command
    return " ".join(shlex.quote(str(part)) for part in command)


class CommandRunner:
    """
    Runs external commands, or only logs them in dry-run mode.

    ``run`` raises ExternalCommandFailure on a non-zero exit; ``run_unchecked``
    returns the CommandResult instead. String commands run through the shell,
    sequences are executed directly.
    """

    def __init__(
        self,
        dry_run: bool = False,
        quiet: bool = False,
        log_handler: Optional[CommandLogHandler] = None,
    ):
        self.dry_run = dry_run
        self.quiet = quiet
        self.log_handler = log_handler

    def quiet_copy(self) -> "CommandRunner":
        """Runner for background tasks: same mode, commands logged at debug level."""
        return CommandRunner(dry_run=self.dry_run, quiet=True, log_handler=self.log_handler)

    def run(
        self,
        command: Command,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        clean_toolchain: bool = False,
    ) -> CommandResult:
        """
        Run a command and raise if it fails.

        Args:
            command: Argument list, or a shell string
            cwd: Working directory
            env: Variables merged over the current environment
            clean_toolchain: Strip the caller's Ruby toolchain variables first

        Returns:
            CommandResult of the successful command

        Raises:
            ExternalCommandFailure: If the command exits non-zero or cannot start
        """
        result = self.run_unchecked(command, cwd=cwd, env=env, clean_toolchain=clean_toolchain)
        if not result.success:
            raise ExternalCommandFailure(result.command, result.exit_code, result.stdout, result.stderr)
        return result

    def run_unchecked(
        self,
        command: Command,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        clean_toolchain: bool = False,
    ) -> CommandResult:
        """Run a command and return its result whatever the exit status."""
        display = format_command(command)
        if self.dry_run:
            location = f" (in {cwd})" if cwd else ""
            logger.info(f"[dry-run] {mask_sensitive_data(display)}{location}")
            return CommandResult(command=display, dry_run=True)
        return self._execute(command, display, cwd, env, clean_toolchain)

    def probe(self, command: Sequence[str], cwd: Optional[Path] = None) -> bool:
        """
        Run a read-only check, even in dry-run mode.

        Returns:
            True if the command exited zero
        """
        return self._execute(command, format_command(command), cwd, None, False).success

    def build_env(self, env: Optional[Mapping[str, str]] = None, clean_toolchain: bool = False) -> Dict[str, str]:
        base = dict(os.environ)
        if clean_toolchain:
            base = {k: v for k, v in base.items() if not is_toolchain_variable(k)}
        base.update({k: str(v) for k, v in (env or {}).items()})
        return base

    def _execute(
        self,
        command: Command,
        display: str,
        cwd: Optional[Path],
        env: Optional[Mapping[str, str]],
        clean_toolchain: bool,
    ) -> CommandResult:
        level = logging.DEBUG if self.quiet else logging.INFO
        logger.log(level, f"Running: {mask_sensitive_data(display)}")
        sequence = self.log_handler.log_command([display]) if self.log_handler else None

        shell = isinstance(command, str)
        args = command if shell else [str(part) for part in command]
        start_time = time.time()
        try:
            completed = subprocess.run(
                args,
                shell=shell,
                cwd=str(cwd) if cwd else None,
                env=self.build_env(env, clean_toolchain),
                capture_output=True,
                text=True,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
            logger.debug(f"Could not start {display}: {e}")
            return CommandResult(command=display, exit_code=127, stderr=str(e))

        elapsed = time.time() - start_time
        result = CommandResult(
            command=display,
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

        if result.stdout.strip():
            logger.debug(mask_sensitive_data(result.stdout.strip()))
        if self.log_handler:
            self.log_handler.log_output(result.stdout, sequence=sequence)
            self.log_handler.log_output(result.stderr, logging.WARNING, sequence=sequence)
            self.log_handler.log_completion(display, result.exit_code, elapsed, sequence=sequence)
        if not result.success:
            logger.debug(f"{display} exited with {result.exit_code}: {mask_sensitive_data(result.stderr.strip())}")
        return result
