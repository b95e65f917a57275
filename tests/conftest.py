"""
Pytest configuration and fixtures for branchfarm tests.

Provides an isolated branchfarm root, a workspace containing one configured
project and the matching settings and project configuration.
"""

import logging
import os
import shutil
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest
import yaml

from branchfarm.config import BranchfarmSettings, ProjectConfig, load_project_config, load_settings

PROJECT_NAME = "myapp"


@pytest.fixture
def temp_workspace() -> Generator[Path, None, None]:
    """
    Create temporary workspace directory for test files.

    Yields:
        Path to temporary workspace
    """
    temp_dir = tempfile.mkdtemp(prefix="branchfarm_workspace_")
    workspace = Path(temp_dir)

    yield workspace

    # Cleanup
    shutil.rmtree(temp_dir)


@pytest.fixture
def isolated_test_env(temp_workspace: Path) -> Generator[dict[str, str], None, None]:
    """
    Point every branchfarm location at the temporary workspace.

    Yields:
        Dictionary of original environment variables
    """
    original_env = os.environ.copy()

    for key in list(os.environ.keys()):
        if key.startswith("BRANCHFARM_"):
            del os.environ[key]

    os.environ.update(
        {
            "BRANCHFARM_ROOT_DIR": str(temp_workspace / "root"),
            "BRANCHFARM_WORKSPACES_DIR": str(temp_workspace / "Code"),
            "BRANCHFARM_CADDY_SNIPPETS_DIR": str(temp_workspace / "snippets"),
            "BRANCHFARM_LOG_DIR": str(temp_workspace / "logs"),
        }
    )

    yield original_env

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture(autouse=True)
def restore_root_logging() -> Generator[None, None, None]:
    """The CLI reconfigures the root logger; put the original handlers back."""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level

    yield

    for handler in root_logger.handlers[:]:
        if handler not in handlers:
            root_logger.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root_logger.handlers:
            root_logger.addHandler(handler)
    root_logger.setLevel(level)


@pytest.fixture
def settings(isolated_test_env: dict[str, str]) -> BranchfarmSettings:
    return load_settings()


def write_project_config(workspace_root: Path, **overrides) -> Path:
    """Write a .branchfarm.yml for a project workspace and return its path."""
    data = {
        "project_key": PROJECT_NAME,
        "repo_dir": "$WORKSPACE_ROOT/repo",
        "worktrees_dir": "$WORKSPACE_ROOT/worktrees",
        "base_env_file": "$WORKSPACE_ROOT/.branchfarm/base.env",
        "base_domain_template": "%s.myapp.localhost",
        "port_range_start": 5000,
        "port_range_end": 5002,
        "db_prefix_template": "myapp_%s",
    }
    data.update(overrides)

    workspace_root.mkdir(parents=True, exist_ok=True)
    config_path = workspace_root / ".branchfarm.yml"
    config_path.write_text(yaml.safe_dump(data))
    return config_path


@pytest.fixture
def project_workspace(settings: BranchfarmSettings) -> Path:
    """
    Create a project workspace with a repo directory and base env file.

    Returns:
        Path to the workspace root
    """
    workspace_root = settings.workspaces_dir / PROJECT_NAME
    (workspace_root / "repo").mkdir(parents=True)
    (workspace_root / ".branchfarm").mkdir()
    (workspace_root / ".branchfarm" / "base.env").write_text("SECRET_KEY_BASE=abc123\nNPM_TOKEN=npm-token\n")
    write_project_config(workspace_root)
    return workspace_root


@pytest.fixture
def project_config(settings: BranchfarmSettings, project_workspace: Path) -> ProjectConfig:
    return load_project_config(PROJECT_NAME, settings)
