"""
Names derived from a project and branch slug.

Nothing here is persisted: hosts, database names, session names and paths are
recomputed from the configuration on every invocation.
"""

import re
from dataclasses import dataclass
from pathlib import Path

from ..config import ProjectConfig


def slugify(branch: str) -> str:
    """Turn a branch name into a filesystem- and host-safe slug."""
    return re.sub(r"[^a-z0-9]+", "-", branch.lower()).strip("-")


def port_key(project_key: str, slug: str) -> str:
    return f"{project_key}:{slug}"


def session_name(project_key: str, slug: str) -> str:
    return f"{project_key}-{slug}"


@dataclass(frozen=True)
class EnvironmentNames:
    """Every identifier that belongs to one branch environment."""

    project_key: str
    slug: str
    app_host: str
    dev_db: str
    test_db: str
    session_name: str
    port_key: str
    worktree_path: Path

    @classmethod
    def derive(cls, config: ProjectConfig, slug: str) -> "EnvironmentNames":
        db_prefix = config.db_prefix_template % slug
        return cls(
            project_key=config.project_key,
            slug=slug,
            app_host=config.base_domain_template % slug,
            dev_db=f"{db_prefix}_dev",
            test_db=f"{db_prefix}_test",
            session_name=session_name(config.project_key, slug),
            port_key=port_key(config.project_key, slug),
            worktree_path=config.worktrees_dir / slug,
        )
