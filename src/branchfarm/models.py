"""
Data models for branchfarm

Defines the error taxonomy and the result classes returned by commands,
provisioners and the environment orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence


class BranchfarmError(Exception):
    """Base exception for branchfarm errors."""

    pass


class ConfigError(BranchfarmError):
    """Missing or invalid project or global configuration."""

    pass


class ResourceExhausted(BranchfarmError):
    """No free port left in the configured range."""

    pass


class ExternalCommandFailure(BranchfarmError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stdout: str = "", stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = stderr.strip() or stdout.strip()
        message = f"Command failed with exit code {exit_code}: {command}"
        if detail:
            message += f"\n{detail}"
        super().__init__(message)


class AggregatedFailure(BranchfarmError):
    """One or more background provisioning tasks failed."""

    def __init__(self, failures: Sequence["TaskOutcome"]):
        self.failures = list(failures)
        summary = "; ".join(f"{f.name}: {f.error}" for f in self.failures)
        super().__init__(f"Background tasks failed: {summary}")

    @property
    def subsystems(self) -> List[str]:
        return [f.name for f in self.failures]


class StepFailed(BranchfarmError):
    """A sequential workflow step failed; the remaining steps were skipped."""

    def __init__(self, step: str, cause: Exception):
        self.step = step
        self.cause = cause
        super().__init__(f"{step} failed: {cause}")


@dataclass
class CommandResult:
    """Result of running (or simulating) an external command."""

    command: str
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass
class TaskOutcome:
    """Outcome of one background task in a parallel group."""

    name: str
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class WorktreeState(Enum):
    """Existence state of a branch checkout."""

    NOT_EXIST = "not_exist"
    EXISTS = "exists"


@dataclass
class WorktreeResult:
    """Result of bringing a worktree to a ready state."""

    path: Path
    branch: str
    previous_state: WorktreeState
    warnings: List[str] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.previous_state is WorktreeState.NOT_EXIST

    def get_summary(self) -> str:
        """Get a summary string for the worktree result."""
        action = "created" if self.created else "refreshed"
        summary = f"Worktree {action}: {self.path}"
        if self.warnings:
            summary += f" ({len(self.warnings)} warning(s))"
        return summary


@dataclass
class CreateResult:
    """Complete result of an environment create run."""

    project_key: str
    slug: str
    branch: str
    port: int
    app_host: str
    dev_db: str
    test_db: str
    session_name: str
    worktree: Optional[WorktreeResult] = None
    env_file: Optional[Path] = None
    completed_steps: List[str] = field(default_factory=list)
    background: List[TaskOutcome] = field(default_factory=list)


@dataclass
class RemoveResult:
    """Result of an environment remove run."""

    project_key: str
    slug: str
    released_port: Optional[int] = None
    completed_steps: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
