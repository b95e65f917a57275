"""
Environment orchestration for branch environments.

Drives the complete create and remove workflows:
- Port allocation in the shared registry
- Caddy route and databases provisioned in the background
- Worktree, environment files, dependencies and migrations in sequence
- tmux session creation

Sequential steps fail fast. Background tasks report an outcome each and are
only judged at the join point, so both always run to completion. Nothing that
already succeeded is rolled back.
"""

import json
import logging
import os
import re
import shlex
import shutil
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar

from .config import BranchfarmSettings, ProjectConfig
from .database import DatabaseProvisioner
from .environment.env_files import EnvFileWriter, load_env_vars
from .environment.naming import EnvironmentNames, slugify
from .environment.port_registry import PortRegistry
from .models import (
    AggregatedFailure,
    BranchfarmError,
    ConfigError,
    CreateResult,
    RemoveResult,
    StepFailed,
    TaskOutcome,
)
from .proxy import CaddyProxy
from .runner import CommandRunner
from .runtime_manager import RuntimeManager, get_runtime_manager
from .session import TmuxSessions
from .worktree import WorktreeManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CreateOptions:
    """Per-invocation switches for ``create``."""

    port: Optional[int] = None
    slug: Optional[str] = None
    skip_deps: bool = False
    skip_db: bool = False
    skip_proxy: bool = False
    skip_session: bool = False


@dataclass(frozen=True)
class RemoveOptions:
    """Per-invocation switches for ``remove``."""

    slug: Optional[str] = None
    keep_db: bool = False
    skip_proxy: bool = False
    skip_session: bool = False


class EnvironmentOrchestrator:
    """Orchestrates create and remove workflows for one project."""

    def __init__(
        self,
        settings: BranchfarmSettings,
        config: ProjectConfig,
        runner: CommandRunner,
        registry: Optional[PortRegistry] = None,
        worktrees: Optional[WorktreeManager] = None,
        database: Optional[DatabaseProvisioner] = None,
        proxy: Optional[CaddyProxy] = None,
        sessions: Optional[TmuxSessions] = None,
        runtime: Optional[RuntimeManager] = None,
        env_files: Optional[EnvFileWriter] = None,
    ):
        """
        Initialize orchestrator with settings, project config and collaborators.

        Collaborators not passed in are built from the configuration; the
        background tasks get a quiet copy of the runner.
        """
        self.settings = settings
        self.config = config
        self.runner = runner
        background_runner = runner.quiet_copy()

        self.registry = registry or PortRegistry(settings.effective_state_dir, dry_run=runner.dry_run)
        self.worktrees = worktrees or WorktreeManager(config.repo_dir, config.worktrees_dir, runner)
        self.database = database or DatabaseProvisioner(settings.database_url, background_runner)
        self.proxy = proxy
        if self.proxy is None and settings.caddy:
            self.proxy = CaddyProxy(config.effective_snippets_dir(settings), background_runner)
        self.sessions = sessions or TmuxSessions(runner)
        self.runtime = runtime or get_runtime_manager(config.effective_ruby_manager(settings))
        self.env_files = env_files or EnvFileWriter(runner)

    def names_for(self, branch: str, slug: Optional[str] = None) -> EnvironmentNames:
        return EnvironmentNames.derive(self.config, slug or slugify(branch))

    def create(self, branch: str, options: Optional[CreateOptions] = None) -> CreateResult:
        """
        Create or refresh the environment for ``branch``.

        Args:
            branch: Branch to check out
            options: Overrides and skip switches

        Returns:
            CreateResult describing everything that was provisioned

        Raises:
            StepFailed: A sequential step failed; later steps did not run
            AggregatedFailure: The Caddy and/or database tasks failed
        """
        options = options or CreateOptions()
        names = self.names_for(branch, options.slug)
        skip_proxy = options.skip_proxy or not self.settings.caddy or self.proxy is None
        skip_session = options.skip_session or not self.settings.tmux

        logger.info(f"Creating environment {names.project_key}/{names.slug} for branch {branch}")

        port = self._step("Allocating port", lambda: self._allocate_port(names, options.port))
        result = CreateResult(
            project_key=names.project_key,
            slug=names.slug,
            branch=branch,
            port=port,
            app_host=names.app_host,
            dev_db=names.dev_db,
            test_db=names.test_db,
            session_name=names.session_name,
        )
        result.completed_steps.append("Allocating port")

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="branchfarm-bg") as executor:
            futures: Dict[str, Future] = {}
            if not skip_proxy:
                futures["proxy"] = executor.submit(
                    _capture_outcome, "proxy", lambda: self._provision_proxy(names, port)
                )
            if not options.skip_db:
                futures["database"] = executor.submit(
                    _capture_outcome, "database", lambda: self._provision_databases(names)
                )

            try:
                self._prepare_checkout(branch, names, port, result)
            except BranchfarmError:
                for outcome in self._join(futures):
                    if not outcome.success:
                        logger.warning(f"Background task {outcome.name} also failed: {outcome.error}")
                raise

            result.background = self._join(futures)

        failures = [outcome for outcome in result.background if not outcome.success]
        if failures:
            raise AggregatedFailure(failures)
        if futures:
            logger.info(f"Background provisioning finished: {', '.join(futures)}")

        worktree_path = names.worktree_path
        if not options.skip_deps:
            self._run_step(result, "Installing Ruby", lambda: self.install_ruby(worktree_path))
            self._run_step(result, "Installing gems", lambda: self.install_gems(worktree_path))
            if _present(self.config.js_install_cmd):
                self._run_step(
                    result, "Installing JS dependencies", lambda: self.install_js_deps(worktree_path, result.env_file)
                )
            if _present(self.config.js_build_cmd):
                self._run_step(
                    result, "Building JS assets", lambda: self.build_js_assets(worktree_path, result.env_file)
                )

        if not options.skip_db:
            self._run_step(result, "Preparing databases", lambda: self.prepare_databases(worktree_path, result.env_file))

        if self.config.post_create_commands:
            self._run_step(result, "Running post-create commands", lambda: self.run_post_create(worktree_path))

        if not skip_session:
            self._run_step(
                result, "Creating tmux session", lambda: self.sessions.create(names.session_name, worktree_path)
            )

        logger.info(f"Environment ready: {names.project_key}/{names.slug} on port {port}")
        return result

    def remove(self, branch: str, options: Optional[RemoveOptions] = None) -> RemoveResult:
        """
        Tear down the environment for ``branch``.

        Every step tolerates the resource being absent already. A failing
        Caddy reload is logged and ignored.
        """
        options = options or RemoveOptions()
        names = self.names_for(branch, options.slug)
        result = RemoveResult(project_key=names.project_key, slug=names.slug)

        logger.info(f"Removing environment {names.project_key}/{names.slug}")

        if not (options.skip_session or not self.settings.tmux):
            self._run_step(result, "Killing tmux session", lambda: self.sessions.kill(names.session_name))

        if not (options.skip_proxy or not self.settings.caddy or self.proxy is None):
            self._run_step(result, "Removing Caddy config", lambda: self._remove_proxy(names, result))

        self._run_step(result, "Removing worktree", lambda: self.worktrees.remove(names.slug))

        if not options.keep_db:
            self._run_step(result, "Dropping databases", lambda: self._drop_databases(names))

        result.released_port = self._run_step(
            result, "Removing port registration", lambda: self.registry.remove(names.port_key)
        )

        logger.info(f"Environment removed: {names.project_key}/{names.slug}")
        return result

    # Sequential create steps

    def _allocate_port(self, names: EnvironmentNames, port: Optional[int]) -> int:
        if port is not None:
            return self.registry.register(names.port_key, port)
        return self.registry.allocate(names.port_key, self.config.port_range)

    def _prepare_checkout(self, branch: str, names: EnvironmentNames, port: int, result: CreateResult) -> None:
        result.worktree = self._run_step(result, "Setting up worktree", lambda: self.worktrees.setup(branch, names.slug))
        result.env_file = self._run_step(result, "Writing environment files", lambda: self.write_env_files(names, port))

        if self.config.copy_files_dir:
            self._run_step(
                result,
                "Copying project files",
                lambda: self.env_files.copy_files(names.worktree_path, self.config.copy_files_dir),
            )
        if self.config.symlinks:
            self._run_step(
                result,
                "Creating symlinks",
                lambda: self.env_files.create_symlinks(names.worktree_path, self.config.symlinks),
            )

    def write_env_files(self, names: EnvironmentNames, port: int) -> Optional[Path]:
        env_file = None
        if self.config.use_env_file:
            env_file = self.env_files.write_env_file(names.worktree_path, names, port)
        else:
            logger.info("Skipping .env (use_env_file: false)")

        if self.config.use_envrc:
            self.env_files.write_envrc_file(
                names.worktree_path, names, port, self.config.base_env_file, use_env_file=self.config.use_env_file
            )
            self.env_files.allow_direnv(names.worktree_path)
        else:
            logger.info("Skipping .envrc (use_envrc: false)")
        return env_file

    def install_ruby(self, worktree_path: Path) -> str:
        if self.runner.dry_run and not (worktree_path / self.config.ruby_version_file).exists():
            logger.info(f"[dry-run] Would install the Ruby pinned by {self.config.ruby_version_file} after checkout")
            return ""

        version =self.runtime.parse_version(worktree_path, self.config.ruby_version_file)
        logger.info(f"Installing Ruby {version} (if needed)")
        self.runtime.install(version, self.runner)
        self.runtime.pin(version, worktree_path, self.runner)
        return version

    def install_gems(self, worktree_path: Path) -> None:
        env = self.worktree_env(worktree_path)
        bundle = self.runtime.bundle_prefix

        if _present(self.config.bundle_without):
            self.runner.run(
                [*bundle, "config", "set", "without", self.config.bundle_without],
                cwd=worktree_path,
                env=env,
                clean_toolchain=True,
            )

        check = self.runner.run_unchecked([*bundle, "check"], cwd=worktree_path, env=env, clean_toolchain=True)
        if check.success:
            logger.info("Bundle satisfied, skipping install")
            return
        self.runner.run([*bundle, "install"], cwd=worktree_path, env=env, clean_toolchain=True)

    def install_js_deps(self, worktree_path: Path, env_file: Optional[Path]) -> None:
        command = self.config.js_install_cmd
        if uses_corepack(worktree_path):
            logger.info("Detected packageManager field, using corepack...")
            corepack = find_corepack()
            if corepack:
                command = re.sub(r"\byarn\b", f"{shlex.quote(corepack)} yarn", command)
            else:
                logger.warning("corepack not found, falling back to regular yarn")
        self.runner.run(command, cwd=worktree_path, env=self.js_env(env_file))

    def build_js_assets(self, worktree_path: Path, env_file: Optional[Path]) -> None:
        self.runner.run(self.config.js_build_cmd, cwd=worktree_path, env=self.js_env(env_file))

    def js_env(self, env_file: Optional[Path]) -> Dict[str, str]:
        env_vars = load_env_vars([self.config.base_env_file, env_file])
        if self.config.require_npm_token and not env_vars.get("NPM_TOKEN"):
            raise ConfigError("NPM_TOKEN not set; add it to base env file")
        return env_vars

    def prepare_databases(self, worktree_path: Path, env_file: Optional[Path]) -> None:
        def prepare(command: Optional[str], rails_env: Optional[str] = None) -> None:
            self.database.prepare(
                worktree_path,
                command,
                self.runtime,
                base_env_file=self.config.base_env_file,
                env_file=env_file,
                ruby_version_file=self.config.ruby_version_file,
                rails_env=rails_env,
                runner=self.runner,
            )

        prepare(self.config.rails_db_prepare_cmd)
        prepare(self.config.rails_db_prepare_cmd, rails_env="test")
        prepare(self.config.rails_db_seed_cmd)
        prepare(self.config.parallel_test_setup_cmd, rails_env="test")

    def run_post_create(self, worktree_path: Path) -> None:
        env = self.worktree_env(worktree_path)
        for command in self.config.post_create_commands:
            logger.info(f"Running: {command}")
            self.runner.run(
                [*self.runtime.exec_prefix, *shlex.split(command)],
                cwd=worktree_path,
                env=env,
                clean_toolchain=True,
            )

    def worktree_env(self, worktree_path: Path) -> Dict[str, str]:
        env = {"BUNDLE_GEMFILE": str(worktree_path / "Gemfile")}
        if (worktree_path / self.config.ruby_version_file).exists():
            version = self.runtime.parse_version(worktree_path, self.config.ruby_version_file)
            env.update(self.runtime.version_env(version))
        return env

    # Background tasks

    def _provision_proxy(self, names: EnvironmentNames, port: int) -> None:
        self.proxy.write_snippet(names.project_key, names.slug, names.app_host, port)
        self.proxy.reload()

    def _provision_databases(self, names: EnvironmentNames) -> None:
        self.database.create_if_missing(names.dev_db)
        self.database.create_if_missing(names.test_db)

    def _join(self, futures: Dict[str, Future]) -> List[TaskOutcome]:
        return [future.result() for future in futures.values()]

    # Remove steps

    def _remove_proxy(self, names: EnvironmentNames, result: RemoveResult) -> None:
        self.proxy.remove_snippet(names.project_key, names.slug)
        try:
            self.proxy.reload()
        except BranchfarmError as e:
            logger.warning(f"Caddy reload failed, continuing: {e}")
            result.warnings.append(f"Caddy reload failed: {e}")

    def _drop_databases(self, names: EnvironmentNames) -> None:
        self.database.drop(names.dev_db)
        self.database.drop(names.test_db)

    # Step plumbing

    def _run_step(self, result, name: str, action: Callable[[], T]) -> T:
        value = self._step(name, action)
        result.completed_steps.append(name)
        return value

    def _step(self, name: str, action: Callable[[], T]) -> T:
        logger.info(f">>> {name}")
        try:
            value = action()
        except BranchfarmError as e:
            logger.error(f"{name} failed: {e}")
            raise StepFailed(name, e) from e
        except OSError as e:
            logger.error(f"{name} failed: {e}")
            raise StepFailed(name, e) from e
        logger.debug(f"{name}: done")
        return value


def _capture_outcome(name: str, action: Callable[[], object]) -> TaskOutcome:
    """Run a background task and turn any failure into its outcome."""
    try:
        action()
    except Exception as e:
        logger.error(f"Background task {name} failed: {e}")
        return TaskOutcome(name=name, error=str(e))
    logger.info(f"Background task {name} finished")
    return TaskOutcome(name=name)


def _present(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def uses_corepack(worktree_path: Path) -> bool:
    """True if package.json declares a packageManager."""
    package_json = Path(worktree_path) / "package.json"
    if not package_json.exists():
        return False
    try:
        return "packageManager" in json.loads(package_json.read_text())
    except (json.JSONDecodeError, TypeError):
        return False


def find_corepack() -> Optional[str]:
    """Locate corepack, preferring the newest nvm-managed Node."""
    nvm_dir = Path(os.environ.get("NVM_DIR", Path.home() / ".nvm"))
    versions_dir = nvm_dir / "versions" / "node"
    if versions_dir.is_dir():
        for version_dir in sorted(versions_dir.iterdir(), key=_node_version_key, reverse=True):
            corepack = version_dir / "bin" / "corepack"
            if os.access(corepack, os.X_OK):
                return str(corepack)

    for prefix in ("/opt/homebrew", "/usr/local"):
        corepack = Path(prefix) / "opt" / "node" / "bin" / "corepack"
        if os.access(corepack, os.X_OK):
            return str(corepack)

    return shutil.which("corepack")


def _node_version_key(path: Path) -> tuple:
    parts = re.findall(r"\d+", path.name)
    return tuple(int(p) for p in parts)
