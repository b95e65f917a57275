"""
Environment file materialization using Jinja2.

Writes the per-branch ``.env`` and ``.envrc`` files, copies shared project
files into a worktree, creates configured symlinks and parses dotenv-style
files back into variable maps.
"""

import logging
import shutil
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence

from dotenv import dotenv_values
from jinja2 import Environment, StrictUndefined

from ..config import SymlinkSpec
from ..models import ConfigError
from ..runner import CommandRunner
from .naming import EnvironmentNames

logger = logging.getLogger(__name__)

ENV_TEMPLATE = """\
# Generated by branchfarm for {{ project_key }}/{{ slug }}; changes are overwritten.
APP_HOST={{ app_host }}
PORT={{ port }}
DATABASE_NAME={{ dev_db }}
TEST_DATABASE_NAME={{ test_db }}
"""

ENVRC_TEMPLATE = """\
# Generated by branchfarm for {{ project_key }}/{{ slug }}; changes are overwritten.
dotenv_if_exists {{ base_env_file }}
{% if use_env_file %}
dotenv_if_exists .env
{% else %}
export APP_HOST={{ app_host }}
export PORT={{ port }}
export DATABASE_NAME={{ dev_db }}
export TEST_DATABASE_NAME={{ test_db }}
{% endif %}
"""

_jinja_env = Environment(
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
)


class EnvFileWriter:
    """Materializes environment files and shared files inside a worktree."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def write_env_file(self, worktree_path: Path, names: EnvironmentNames, port: int) -> Path:
        """Render ``.env`` into the worktree and return its path."""
        content = _jinja_env.from_string(ENV_TEMPLATE).render(self._variables(names, port))
        return self._write(Path(worktree_path) / ".env", content)

    def write_envrc_file(
        self,
        worktree_path: Path,
        names: EnvironmentNames,
        port: int,
        base_env_file: Path,
        use_env_file: bool = True,
    ) -> Path:
        """Render ``.envrc`` sourcing the base env file and the branch values."""
        variables = self._variables(names, port)
        variables.update(base_env_file=str(base_env_file), use_env_file=use_env_file)
        content = _jinja_env.from_string(ENVRC_TEMPLATE).render(variables)
        return self._write(Path(worktree_path) / ".envrc", content)

    def allow_direnv(self, worktree_path: Path) -> None:
        self.runner.run(["direnv", "allow", str(worktree_path)])

    def copy_files(self, worktree_path: Path, copy_files_dir: Path) -> int:
        """
        Copy every file under ``copy_files_dir`` into the worktree.

        Returns:
            Number of files copied
        """
        source_dir = Path(copy_files_dir)
        if not source_dir.is_dir():
            logger.info(f"No files to copy: {source_dir} does not exist")
            return 0

        copied = 0
        for source in sorted(source_dir.rglob("*")):
            if not source.is_file():
                continue
            target = Path(worktree_path) / source.relative_to(source_dir)
            if self.runner.dry_run:
                logger.info(f"[dry-run] Would copy {source} -> {target}")
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
                logger.debug(f"Copied {source} -> {target}")
            copied += 1

        logger.info(f"Copied {copied} file(s) from {source_dir}")
        return copied

    def create_symlinks(self, worktree_path: Path, symlinks: Sequence[SymlinkSpec]) -> None:
        for link in symlinks:
            dest = Path(worktree_path) / link.dest
            if self.runner.dry_run:
                logger.info(f"[dry-run] Would link {dest} -> {link.source}")
                continue

            if not Path(link.source).exists():
                logger.warning(f"Symlink source does not exist yet: {link.source}")
            dest.parent.mkdir(parents=True, exist_ok=True)
            if dest.is_symlink():
                dest.unlink()
            elif dest.exists():
                logger.warning(f"Not replacing existing file with symlink: {dest}")
                continue
            dest.symlink_to(link.source)
            logger.info(f"Linked {dest} -> {link.source}")

    def _variables(self, names: EnvironmentNames, port: int) -> Dict[str, object]:
        return {
            "project_key": names.project_key,
            "slug": names.slug,
            "app_host": names.app_host,
            "port": port,
            "dev_db": names.dev_db,
            "test_db": names.test_db,
        }

    def _write(self, path: Path, content: str) -> Path:
        if self.runner.dry_run:
            indented = "".join(f"    {line}\n" for line in content.splitlines())
            logger.info(f"[dry-run] Would write {path}:\n{indented}")
            return path

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        logger.info(f"Wrote {path}")
        return path


def parse_env_file(path: Path) -> Dict[str, str]:
    """
    Read a dotenv file without interpolation.

    Keys declared without a value are left out.

    Raises:
        ConfigError: If the file cannot be decoded
    """
    try:
        values = dotenv_values(path, interpolate=False, encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ConfigError(f"Cannot read env file {path}: {e}") from e
    return {key: value for key, value in values.items() if value is not None}


def load_env_vars(paths: Iterable[Optional[Path]]) -> Dict[str, str]:
    """Merge env files in order; later files win and missing files are skipped."""
    variables: Dict[str, str] = {}
    for path in paths:
        if path and Path(path).exists():
            variables.update(parse_env_file(Path(path)))
    return variables
