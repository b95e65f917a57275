"""
Database provisioning for branch environments.

Creates and drops the per-branch PostgreSQL databases through psycopg2 against
a maintenance database, and runs the project's migration/seed commands inside
a worktree with the branch's environment variables.
"""

import logging
import shlex
from pathlib import Path
from typing import Callable, Dict, List, Optional

import psycopg2
from psycopg2 import sql

from .environment.env_files import load_env_vars
from .logging_config import mask_sensitive_data
from .models import ConfigError, ExternalCommandFailure
from .runner import CommandRunner
from .runtime_manager import RuntimeManager

logger = logging.getLogger(__name__)


class DatabaseProvisioner:
    """Idempotent create/drop of branch databases plus migration commands."""

    def __init__(
        self,
        database_url: str,
        runner: CommandRunner,
        connect: Callable = psycopg2.connect,
    ):
        """
        Initialize the provisioner.

        Args:
            database_url: Maintenance database URL (usually .../postgres)
            runner: Command runner, also supplies dry-run mode
            connect: psycopg2-compatible connect function
        """
        self.database_url = database_url
        self.runner = runner
        self._connect = connect

    def exists(self, db_name: str) -> bool:
        """Check whether a database exists; always False in dry-run mode."""
        if self.runner.dry_run:
            return False

        rows = self._execute(
            sql.SQL("SELECT 1 FROM pg_database WHERE datname = %s"),
            f"SELECT 1 FROM pg_database WHERE datname = '{db_name}'",
            params=(db_name,),
            fetch=True,
        )
        return bool(rows)

    def create_if_missing(self, db_name: str) -> bool:
        """Create a database unless it exists; returns True if it was created."""
        if self.exists(db_name):
            logger.info(f"Database exists: {db_name}")
            return False

        logger.info(f"Creating database: {db_name}")
        if self.runner.dry_run:
            logger.info(f"[dry-run] CREATE DATABASE {db_name}")
            return True

        self._execute(
            sql.SQL("CREATE DATABASE {}").format(sql.Identifier(db_name)),
            f"CREATE DATABASE {db_name}",
        )
        return True

    def drop(self, db_name: str) -> bool:
        """Drop a database if it exists; returns True if it was dropped."""
        if not self.exists(db_name):
            if self.runner.dry_run:
                logger.info(f"[dry-run] DROP DATABASE IF EXISTS {db_name}")
            else:
                logger.info(f"Database doesn't exist: {db_name}")
            return False

        logger.info(f"Dropping database: {db_name}")
        self._execute(
            sql.SQL("DROP DATABASE {}").format(sql.Identifier(db_name)),
            f"DROP DATABASE {db_name}",
        )
        return True

    def prepare(
        self,
        worktree_path: Path,
        command: Optional[str],
        runtime: RuntimeManager,
        base_env_file: Optional[Path] = None,
        env_file: Optional[Path] = None,
        ruby_version_file: str = ".ruby-version",
        rails_env: Optional[str] = None,
        runner: Optional[CommandRunner] = None,
    ) -> bool:
        """
        Run a migration or seed command inside the worktree.

        The command sees the base env file merged with the branch env file
        (branch values win), RAILS_ENV when ``rails_env`` is given, the
        worktree's Gemfile and the Ruby version pin. A missing version file
        leaves the command unpinned. ``runner`` overrides the provisioner's
        runner for this command.

        Returns:
            False if ``command`` is blank and nothing ran
        """
        if not command or not command.strip():
            logger.info("Skipping: no command specified")
            return False

        env_vars = self.build_env(worktree_path, runtime, base_env_file, env_file, ruby_version_file, rails_env)
        label = f" (RAILS_ENV={rails_env})" if rails_env else ""
        logger.info(f"Running: {command}{label}")
        (runner or self.runner).run(
            [*runtime.exec_prefix, *shlex.split(command)],
            cwd=worktree_path,
            env=env_vars,
            clean_toolchain=True,
        )
        return True

    def build_env(
        self,
        worktree_path: Path,
        runtime: RuntimeManager,
        base_env_file: Optional[Path],
        env_file: Optional[Path],
        ruby_version_file: str,
        rails_env: Optional[str] = None,
    ) -> Dict[str, str]:
        env_vars = load_env_vars([base_env_file, env_file])
        if rails_env:
            env_vars["RAILS_ENV"] = rails_env
        env_vars["BUNDLE_GEMFILE"] = str(Path(worktree_path) / "Gemfile")

        try:
            version = runtime.parse_version(worktree_path, ruby_version_file)
        except ConfigError as e:
            logger.debug(f"Running without a Ruby version pin: {e}")
        else:
            env_vars.update(runtime.version_env(version))
        return env_vars

    def _execute(self, query, description: str, params=None, fetch: bool = False) -> List[tuple]:
        try:
            conn = self._connect(self.database_url)
        except psycopg2.Error as e:
            raise ExternalCommandFailure(
                f"connect {mask_sensitive_data(self.database_url)}", 1, stderr=str(e)
            ) from e

        try:
            # CREATE/DROP DATABASE cannot run inside a transaction block
            conn.autocommit = True
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.fetchall() if fetch else []
        except psycopg2.Error as e:
            raise ExternalCommandFailure(description, 1, stderr=str(e)) from e
        finally:
            conn.close()
