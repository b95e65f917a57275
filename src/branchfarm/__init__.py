"""
branchfarm: isolated per-branch development environments

Provisions a git worktree, a reserved port, a Caddy route, PostgreSQL
databases, installed dependencies and a tmux session for each branch.
"""

__version__ = "0.1.0"
__author__ = "branchfarm Contributors"

from .config import BranchfarmSettings, ProjectConfig, load_project_config, load_settings
from .logging_config import setup_logging
from .orchestrator import CreateOptions, EnvironmentOrchestrator, RemoveOptions

__all__ = [
    "BranchfarmSettings",
    "CreateOptions",
    "EnvironmentOrchestrator",
    "ProjectConfig",
    "RemoveOptions",
    "load_project_config",
    "load_settings",
    "setup_logging",
]
