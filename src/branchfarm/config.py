"""
Configuration management for branchfarm

Global settings are loaded from environment variables, the optional
``config.yml`` under the branchfarm root and defaults, using Pydantic
settings. Per-project configuration lives in ``.branchfarm.yml`` files
inside each workspace and is validated into an immutable ProjectConfig.
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ConfigError

logger = logging.getLogger(__name__)

PROJECT_CONFIG_NAME = ".branchfarm.yml"
LOCAL_CONFIG_NAME = ".branchfarm.local.yml"

SUPPORTED_RUBY_MANAGERS = ("rbenv", "asdf", "mise", "system")

REQUIRED_PROJECT_KEYS = (
    "project_key",
    "repo_dir",
    "worktrees_dir",
    "base_env_file",
    "base_domain_template",
    "port_range_start",
    "port_range_end",
    "db_prefix_template",
)

PATH_KEYS = ("repo_dir", "worktrees_dir", "base_env_file", "copy_files_dir", "caddy_snippets_dir")


def _default_root_dir() -> Path:
    return Path.home() / ".branchfarm"


def _default_caddy_snippets_dir() -> Path:
    """Snippets live under the Homebrew prefix when Homebrew is installed."""
    prefix = "/usr/local"
    if shutil.which("brew"):
        try:
            result = subprocess.run(
                ["brew", "--prefix"], capture_output=True, text=True, check=True, timeout=10
            )
            prefix = result.stdout.strip() or prefix
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired):
            logger.debug("Could not determine Homebrew prefix, using /usr/local")
    return Path(prefix) / "var" / "branchfarm" / "caddy" / "snippets"


class BranchfarmSettings(BaseSettings):
    """
    Machine-wide settings for branchfarm.

    Configuration is loaded from:
    1. Environment variables (highest priority)
    2. ``<root_dir>/config.yml``
    3. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="BRANCHFARM_",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    root_dir: Path = Field(default_factory=_default_root_dir, description="Branchfarm root directory")
    state_dir: Optional[Path] = Field(
        default=None,
        description="Directory holding the port registry (defaults to <root_dir>/state)",
    )
    caddy: bool = Field(default=True, description="Manage Caddy reverse proxy routes")
    tmux: bool = Field(default=True, description="Manage tmux sessions")
    caddy_snippets_dir: Path = Field(
        default_factory=_default_caddy_snippets_dir,
        description="Directory Caddy imports per-environment snippets from",
    )
    workspaces_dir: Path = Field(
        default_factory=lambda: Path.home() / "Code",
        description="Directory containing one workspace per project",
    )
    ruby_manager: str = Field(default="rbenv", description="Default Ruby version manager")
    database_url: str = Field(
        default="postgresql:///postgres",
        description="Maintenance database used to create and drop branch databases",
    )

    # Logging configuration
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    log_dir: str = Field(default="logs", description="Directory for log files")
    verbose: bool = Field(default=False, description="Enable verbose console output")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("ruby_manager")
    @classmethod
    def validate_ruby_manager(cls, v: str) -> str:
        """Validate the Ruby manager is supported."""
        if v.lower() not in SUPPORTED_RUBY_MANAGERS:
            raise ValueError(f"ruby_manager must be one of: {', '.join(SUPPORTED_RUBY_MANAGERS)}")
        return v.lower()

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError("database_url must start with 'postgresql://' or 'postgres://'")
        return v

    @property
    def effective_state_dir(self) -> Path:
        return self.state_dir or self.root_dir / "state"

    @property
    def config_file(self) -> Path:
        return self.root_dir / "config.yml"

    def mask_sensitive_values(self) -> Dict[str, Any]:
        """Get settings dict with sensitive values masked."""
        from .logging_config import mask_sensitive_data

        data = self.model_dump()
        data["database_url"] = mask_sensitive_data(self.database_url)
        return data


def load_settings(root_dir: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None) -> BranchfarmSettings:
    """
    Load global settings.

    Args:
        root_dir: Branchfarm root directory override
        overrides: CLI argument overrides (highest priority)

    Returns:
        Frozen settings instance

    Raises:
        ConfigError: If config.yml or any value is invalid
    """
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
    if root_dir is not None:
        overrides["root_dir"] = root_dir

    try:
        base = BranchfarmSettings(**overrides)
        file_data = _read_yaml(base.config_file) if base.config_file.exists() else {}
        if not file_data:
            return base

        # Keys set from the environment or the CLI win over config.yml
        file_data = {k: v for k, v in file_data.items() if k not in base.model_fields_set}
        return BranchfarmSettings(**file_data, **overrides)
    except ValidationError as e:
        raise ConfigError(f"Invalid branchfarm settings: {e}") from e


class SymlinkSpec(BaseModel):
    """A symlink created inside every worktree."""

    model_config = ConfigDict(frozen=True)

    source: Path = Field(..., description="Absolute link target")
    dest: str = Field(..., description="Link path relative to the worktree")


class ProjectConfig(BaseModel):
    """Validated per-project configuration."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    project_key: str
    workspace_root: Path
    config_path: Path
    repo_dir: Path
    worktrees_dir: Path
    base_env_file: Path
    base_domain_template: str
    port_range_start: int = Field(..., ge=1, le=65535)
    port_range_end: int = Field(..., ge=1, le=65535)
    db_prefix_template: str
    caddy_snippets_dir: Optional[Path] = None

    use_env_file: bool = True
    use_envrc: bool = True
    require_npm_token: bool = False
    ruby_version_file: str = ".ruby-version"
    ruby_manager: Optional[str] = None
    bundle_without: Optional[str] = None
    js_install_cmd: Optional[str] = None
    js_build_cmd: Optional[str] = None
    rails_db_prepare_cmd: str = "bin/rails db:prepare"
    rails_db_seed_cmd: Optional[str] = None
    parallel_test_setup_cmd: Optional[str] = None
    post_create_commands: List[str] = Field(default_factory=list)
    copy_files_dir: Optional[Path] = None
    symlinks: Optional[List[SymlinkSpec]] = None

    @field_validator("base_domain_template", "db_prefix_template")
    @classmethod
    def validate_slug_template(cls, v: str) -> str:
        """Templates take exactly one %s placeholder for the slug."""
        try:
            v % "slug"
        except (TypeError, ValueError) as e:
            raise ValueError(f"template '{v}' must contain exactly one %s placeholder: {e}")
        return v

    @field_validator("ruby_manager")
    @classmethod
    def validate_ruby_manager(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in SUPPORTED_RUBY_MANAGERS:
            raise ValueError(f"ruby_manager must be one of: {', '.join(SUPPORTED_RUBY_MANAGERS)}")
        return v

    @model_validator(mode="after")
    def validate_port_range(self) -> "ProjectConfig":
        if self.port_range_end < self.port_range_start:
            raise ValueError(
                f"port_range_end ({self.port_range_end}) is below port_range_start ({self.port_range_start})"
            )
        return self

    @property
    def port_range(self) -> range:
        return range(self.port_range_start, self.port_range_end + 1)

    def effective_ruby_manager(self, settings: BranchfarmSettings) -> str:
        return self.ruby_manager or settings.ruby_manager

    def effective_snippets_dir(self, settings: BranchfarmSettings) -> Path:
        return self.caddy_snippets_dir or settings.caddy_snippets_dir


def find_project_config_path(project_name: str, settings: BranchfarmSettings) -> Path:
    """
    Locate the configuration file for a project.

    Looks for ``<workspaces_dir>/<project>/.branchfarm.yml`` first and falls
    back to ``<root_dir>/config/projects/<project>.yml``.
    """
    workspace_config = settings.workspaces_dir / project_name / PROJECT_CONFIG_NAME
    if workspace_config.exists():
        return workspace_config

    legacy = settings.root_dir / "config" / "projects" / f"{project_name}.yml"
    if legacy.exists():
        return legacy

    raise ConfigError(
        f"Unknown project '{project_name}' (no {PROJECT_CONFIG_NAME} in "
        f"{settings.workspaces_dir / project_name} or {legacy})"
    )


def load_project_config(
    project_name: str,
    settings: BranchfarmSettings,
    check_repo: bool = True,
) -> ProjectConfig:
    """
    Load, merge and validate a project's configuration.

    Args:
        project_name: Project name as given on the command line
        settings: Global settings
        check_repo: Verify repo_dir is a standalone clone

    Returns:
        Validated ProjectConfig

    Raises:
        ConfigError: If the configuration is missing, incomplete or invalid
    """
    config_path = find_project_config_path(project_name, settings)
    workspace_root = config_path.parent

    data = _read_yaml(config_path)
    local_path = config_path.with_name(config_path.name.replace(".yml", ".local.yml"))
    if local_path.exists():
        logger.debug(f"Merging local overrides from {local_path}")
        data.update(_read_yaml(local_path))

    missing = [key for key in REQUIRED_PROJECT_KEYS if data.get(key) in (None, "")]
    if missing:
        raise ConfigError(f"Missing required config keys in {config_path}: {', '.join(missing)}")

    def expand(value: str) -> str:
        return expand_path(value, workspace_root, settings.root_dir)

    for key in PATH_KEYS:
        if data.get(key):
            data[key] = expand(data[key])
    if data.get("symlinks"):
        data["symlinks"] = [
            {"source": expand(link.get("source", "")), "dest": link.get("dest")}
            for link in data["symlinks"]
        ]

    try:
        config = ProjectConfig(workspace_root=workspace_root, config_path=config_path, **data)
    except ValidationError as e:
        raise ConfigError(f"Invalid project configuration in {config_path}: {e}") from e

    if not config.repo_dir.is_dir():
        raise ConfigError(f"repo_dir is not a directory: {config.repo_dir}")
    if check_repo:
        _validate_repo_dir_is_not_workspace(config)
    if not config.base_env_file.exists():
        raise ConfigError(f"base_env_file not found: {config.base_env_file}")

    logger.debug(f"Loaded project config for {config.project_key} from {config_path}")
    return config


def expand_path(value: str, workspace_root: Path, root_dir: Path) -> str:
    """Expand $WORKSPACE_ROOT, $HOME and $BRANCHFARM_ROOT (plain or braced)."""
    replacements = {
        "WORKSPACE_ROOT": str(workspace_root),
        "HOME": os.environ.get("HOME", str(Path.home())),
        "BRANCHFARM_ROOT": str(root_dir),
    }
    value = str(value)
    for name, replacement in replacements.items():
        value = value.replace(f"${{{name}}}", replacement).replace(f"${name}", replacement)
    return value


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top level of {path}")
    return data


def _validate_repo_dir_is_not_workspace(config: ProjectConfig) -> None:
    """Ensure repo_dir is a standalone clone, not a worktree of the workspace repo."""
    workspace_git_dir = config.workspace_root / ".git"
    if not workspace_git_dir.exists():
        return

    try:
        result = subprocess.run(
            ["git", "-C", str(config.repo_dir), "rev-parse", "--git-common-dir"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Could not inspect repo_dir git metadata: {e}")
        return

    common_dir = result.stdout.strip()
    if result.returncode != 0 or not common_dir:
        return

    repo_common = (config.repo_dir / common_dir).resolve()
    if repo_common == workspace_git_dir.resolve():
        raise ConfigError(
            f"repo_dir ({config.repo_dir}) is a worktree of the workspace repo, not a standalone clone. "
            f"Remove it and clone the correct repo: git clone <app-repo-url> {config.repo_dir}"
        )
