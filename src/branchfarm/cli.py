"""
Command-line interface for branchfarm

Provides the create, remove, list, setup and status commands for per-branch
development environments.
"""

import shutil
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import click

from . import __version__
from .config import (
    PROJECT_CONFIG_NAME,
    BranchfarmSettings,
    load_project_config,
    load_settings,
)
from .database import DatabaseProvisioner
from .environment.naming import EnvironmentNames, session_name, slugify
from .environment.port_registry import PortRegistry, is_port_in_use
from .logging_config import CommandLogHandler, setup_logging
from .models import AggregatedFailure, BranchfarmError, ConfigError, StepFailed
from .orchestrator import CreateOptions, EnvironmentOrchestrator, RemoveOptions
from .runner import CommandRunner
from .session import TmuxSessions

RULE = "=" * 60


@click.group()
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be done without making changes",
)
@click.option(
    "--root",
    "root_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Branchfarm root directory (state and config.yml)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Set logging level",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=None,
    help="Enable verbose output",
)
@click.option(
    "--log-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for log files",
)
@click.version_option(version=__version__)
@click.pass_context
def cli(
    ctx: click.Context,
    dry_run: bool,
    root_dir: Optional[Path],
    log_level: Optional[str],
    verbose: Optional[bool],
    log_dir: Optional[Path],
) -> None:
    """
    branchfarm: isolated per-branch development environments

    Each environment gets a git worktree, a reserved port, a Caddy route,
    dedicated databases and a tmux session.
    """
    try:
        settings = load_settings(
            root_dir=root_dir,
            overrides={
                "log_level": log_level.upper() if log_level else None,
                "verbose": verbose,
                "log_dir": str(log_dir) if log_dir else None,
            },
        )
    except ConfigError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    setup_logging(
        log_dir=settings.log_dir,
        verbose=settings.verbose,
        log_level=settings.log_level,
    )

    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["dry_run"] = dry_run


@cli.command()
@click.argument("project_branch")
@click.argument("branch", required=False)
@click.option("--port", type=click.IntRange(1, 65535), default=None, help="Override port (default: auto-allocate)")
@click.option("--slug", default=None, help="Override slug (default: slugified branch name)")
@click.option("--no-deps", is_flag=True, help="Skip dependency installation")
@click.option("--no-db", is_flag=True, help="Skip database creation")
@click.option("--no-caddy", is_flag=True, help="Skip Caddy configuration")
@click.option("--no-tmux", is_flag=True, help="Skip tmux session creation")
@click.pass_context
def create(
    ctx: click.Context,
    project_branch: str,
    branch: Optional[str],
    port: Optional[int],
    slug: Optional[str],
    no_deps: bool,
    no_db: bool,
    no_caddy: bool,
    no_tmux: bool,
) -> None:
    """Set up the environment for PROJECT/BRANCH (or PROJECT BRANCH).

    Creates or refreshes the git worktree, allocates a port, writes
    .env/.envrc files, configures Caddy, creates databases, installs
    dependencies and opens a tmux session.
    """
    settings: BranchfarmSettings = ctx.obj["settings"]
    dry_run: bool = ctx.obj["dry_run"]
    project, branch = parse_project_branch(project_branch, branch)
    slug = slug or slugify(branch)

    try:
        with CommandLogHandler("create", settings.log_dir) as log_handler:
            config = load_project_config(project, settings)
            runner = CommandRunner(dry_run=dry_run, log_handler=log_handler)
            orchestrator = EnvironmentOrchestrator(settings, config, runner)

            click.echo(RULE)
            click.echo("Creating environment")
            click.echo(RULE)
            click.echo(f"  Project:  {config.project_key}")
            click.echo(f"  Branch:   {branch}")
            click.echo(f"  Slug:     {slug}")
            click.echo(f"  Dry run:  {dry_run}")
            click.echo(RULE)

            result = orchestrator.create(
                branch,
                CreateOptions(
                    port=port,
                    slug=slug,
                    skip_deps=no_deps,
                    skip_db=no_db,
                    skip_proxy=no_caddy,
                    skip_session=no_tmux,
                ),
            )
    except BranchfarmError as e:
        _report_failure(e)
        sys.exit(1)

    names = orchestrator.names_for(branch, slug)
    skip_tmux = no_tmux or not settings.tmux

    click.echo()
    click.echo(RULE)
    click.echo("✅ Ready for development!")
    click.echo(RULE)
    click.echo(f"  Branch:     {result.branch}")
    click.echo(f"  Worktree:   {names.worktree_path}")
    click.echo(f"  URL:        http://{result.app_host}")
    click.echo(f"  Port:       {result.port}")
    click.echo(f"  Dev DB:     {result.dev_db}")
    click.echo(f"  Test DB:    {result.test_db}")
    if result.worktree and result.worktree.warnings:
        click.echo("\n⚠️  Worktree refresh warnings:")
        for warning in result.worktree.warnings:
            click.echo(f"  - {warning}")
    click.echo("\nCommands:")
    click.echo(f"  cd {names.worktree_path}")
    if config.use_envrc:
        click.echo("  direnv allow")
    click.echo("  bin/dev                          # Start server")
    if not skip_tmux:
        click.echo(f"  tmux attach -t {result.session_name}")


@cli.command()
@click.argument("project_branch")
@click.argument("branch", required=False)
@click.option("--slug", default=None, help="Override slug (default: slugified branch name)")
@click.option("--keep-db", is_flag=True, help="Keep databases")
@click.option("--no-caddy", is_flag=True, help="Leave the Caddy configuration alone")
@click.option("--no-tmux", is_flag=True, help="Leave the tmux session alone")
@click.pass_context
def remove(
    ctx: click.Context,
    project_branch: str,
    branch: Optional[str],
    slug: Optional[str],
    keep_db: bool,
    no_caddy: bool,
    no_tmux: bool,
) -> None:
    """Remove the environment for PROJECT/BRANCH."""
    settings: BranchfarmSettings = ctx.obj["settings"]
    dry_run: bool = ctx.obj["dry_run"]
    project, branch = parse_project_branch(project_branch, branch)

    try:
        with CommandLogHandler("remove", settings.log_dir) as log_handler:
            config = load_project_config(project, settings, check_repo=False)
            runner = CommandRunner(dry_run=dry_run, log_handler=log_handler)
            orchestrator = EnvironmentOrchestrator(settings, config, runner)

            click.echo(f"Removing environment: {config.project_key}/{slug or slugify(branch)}")
            result = orchestrator.remove(
                branch,
                RemoveOptions(slug=slug, keep_db=keep_db, skip_proxy=no_caddy, skip_session=no_tmux),
            )
    except BranchfarmError as e:
        _report_failure(e)
        sys.exit(1)

    for warning in result.warnings:
        click.echo(f"⚠️  {warning}")
    if result.released_port is not None:
        click.echo(f"  Released port {result.released_port}")
    click.echo("✅ Environment removed.")


@cli.command("list")
@click.argument("project", required=False)
@click.pass_context
def list_environments(ctx: click.Context, project: Optional[str]) -> None:
    """List all environments, optionally only those of PROJECT."""
    settings: BranchfarmSettings = ctx.obj["settings"]
    registry = PortRegistry(settings.effective_state_dir)

    try:
        if project:
            config = load_project_config(project, settings, check_repo=False)
            entries = registry.all_for_project(config.project_key)
        else:
            entries = registry.entries()
    except BranchfarmError as e:
        _report_failure(e)
        sys.exit(1)

    if not entries:
        click.echo("No environments found.")
        return

    sessions = TmuxSessions(CommandRunner(quiet=True))
    rows = []
    for key, port in sorted(entries.items()):
        project_key, _, slug = key.partition(":")
        try:
            config = load_project_config(project_key, settings, check_repo=False)
        except ConfigError:
            config = None

        if config is None:
            status = "?"
        else:
            status = "ok" if (config.worktrees_dir / slug).exists() else "missing"
        tmux_name = session_name(project_key, slug)
        tmux_status = tmux_name if sessions.exists(tmux_name) else "-"
        rows.append((project_key, slug, str(port), status, tmux_status))

    for line in render_table(("Project", "Slug", "Port", "Status", "Tmux"), rows):
        click.echo(line)


@cli.command()
@click.argument("project")
@click.pass_context
def setup(ctx: click.Context, project: str) -> None:
    """Set up the workspace config for PROJECT.

    Checks that .branchfarm.yml exists in the project's workspace and prepares
    the .branchfarm/ directory with base.env (from base.env.example) and files/.
    """
    settings: BranchfarmSettings = ctx.obj["settings"]
    workspace = settings.workspaces_dir / project
    branchfarm_dir = workspace / ".branchfarm"
    example = branchfarm_dir / "base.env.example"
    base_env = branchfarm_dir / "base.env"
    files_dir = branchfarm_dir / "files"

    click.echo(f"Setting up {project} workspace at {workspace}\n")

    if not (workspace / PROJECT_CONFIG_NAME).exists():
        click.echo(f"❌ No {PROJECT_CONFIG_NAME} found in {workspace}", err=True)
        sys.exit(1)
    click.echo(f"  {PROJECT_CONFIG_NAME}: found")

    files_dir.mkdir(parents=True, exist_ok=True)
    click.echo("  .branchfarm/files/: ready")

    if base_env.exists():
        click.echo("  .branchfarm/base.env: already exists")
    elif example.exists():
        shutil.copyfile(example, base_env)
        click.echo("  .branchfarm/base.env: created from base.env.example")
        click.echo(f"\n  >>> Edit {base_env} with your secrets")
    else:
        click.echo("  .branchfarm/base.env.example: not found (skipping)")

    click.echo(f"\nDone. You can now run: branchfarm create {project}/BRANCH")


@cli.command()
@click.argument("project_branch")
@click.argument("branch", required=False)
@click.option("--slug", default=None, help="Override slug")
@click.pass_context
def status(ctx: click.Context, project_branch: str, branch: Optional[str], slug: Optional[str]) -> None:
    """Check the status of the environment for PROJECT/BRANCH."""
    settings: BranchfarmSettings = ctx.obj["settings"]
    project, branch = parse_project_branch(project_branch, branch)

    try:
        config = load_project_config(project, settings, check_repo=False)
    except BranchfarmError as e:
        _report_failure(e)
        sys.exit(1)

    names = EnvironmentNames.derive(config, slug or slugify(branch))
    port = PortRegistry(settings.effective_state_dir).get(names.port_key)
    if port is None:
        click.echo(f"Environment not found: {names.project_key}/{names.slug}")
        return

    runner = CommandRunner(quiet=True)
    database = DatabaseProvisioner(settings.database_url, runner)
    tmux_active = TmuxSessions(runner).exists(names.session_name)

    click.echo(f"Environment: {names.project_key}/{names.slug}\n")
    click.echo(f"  Port:       {port} {'(in use)' if is_port_in_use(port) else '(free)'}")
    click.echo(f"  Host:       {names.app_host}")
    click.echo(f"  Worktree:   {names.worktree_path} {'(exists)' if names.worktree_path.exists() else '(missing)'}")
    click.echo(f"  Dev DB:     {names.dev_db} {_database_state(database, names.dev_db)}")
    click.echo(f"  Test DB:    {names.test_db} {_database_state(database, names.test_db)}")
    click.echo(f"  Tmux:       {names.session_name} {'(active)' if tmux_active else '(not running)'}")


def parse_project_branch(project_branch: str, branch: Optional[str]) -> Tuple[str, str]:
    """Accept either ``PROJECT/BRANCH`` or ``PROJECT BRANCH``."""
    if branch is not None:
        return project_branch, branch

    project, sep, branch = project_branch.partition("/")
    if not sep or not project or not branch:
        raise click.UsageError("Invalid format. Use PROJECT/BRANCH or PROJECT BRANCH")
    return project, branch


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> List[str]:
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(cell)) for w, cell in zip(widths, row)]

    def line(cells: Sequence[str]) -> str:
        return "  ".join(cell.ljust(width) for cell, width in zip(cells, widths)).rstrip()

    return [line(headers), line(["-" * w for w in widths]), *(line(row) for row in rows)]


def _database_state(database: DatabaseProvisioner, name: str) -> str:
    try:
        return "(exists)" if database.exists(name) else "(missing)"
    except BranchfarmError:
        return "(unknown: database unreachable)"


def _report_failure(error: BranchfarmError) -> None:
    if isinstance(error, StepFailed):
        click.echo(f"❌ Step '{error.step}' failed: {error.cause}", err=True)
    elif isinstance(error, AggregatedFailure):
        click.echo("❌ Background tasks failed:", err=True)
        for failure in error.failures:
            click.echo(f"   {failure.name}: {failure.error}", err=True)
        click.echo("   Steps that already completed were left in place.", err=True)
    else:
        click.echo(f"❌ {error}", err=True)


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
