"""
Caddy reverse-proxy routes for branch environments.

Each environment gets one snippet file in the snippets directory that the
main Caddyfile imports; writing or removing a snippet is followed by a reload.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from jinja2 import Environment, StrictUndefined

from .models import ConfigError
from .runner import CommandRunner

logger = logging.getLogger(__name__)

SNIPPET_TEMPLATE = """\
@{{ matcher }} host {{ app_host }} *.{{ app_host }}
handle @{{ matcher }} {
  reverse_proxy 127.0.0.1:{{ port }}
}
"""

DEFAULT_CADDYFILE_LOCATIONS = (
    Path("/opt/homebrew/etc/caddy/Caddyfile"),
    Path("/etc/caddy/Caddyfile"),
    Path("/usr/local/etc/caddy/Caddyfile"),
)

_jinja_env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)


class CaddyProxy:
    """Writes, removes and reloads Caddy route snippets."""

    def __init__(
        self,
        snippets_dir: Path,
        runner: CommandRunner,
        caddyfile_candidates: Optional[Sequence[Path]] = None,
    ):
        self.snippets_dir = Path(snippets_dir)
        self.runner = runner
        self.caddyfile_candidates = list(caddyfile_candidates or DEFAULT_CADDYFILE_LOCATIONS)
        if not self.runner.dry_run:
            self.snippets_dir.mkdir(parents=True, exist_ok=True)

    def snippet_path(self, project: str, slug: str) -> Path:
        return self.snippets_dir / f"{project}-{slug}.caddy"

    def render_snippet(self, project: str, slug: str, app_host: str, port: int) -> str:
        matcher = f"{project}_{slug.replace('-', '_')}"
        return _jinja_env.from_string(SNIPPET_TEMPLATE).render(matcher=matcher, app_host=app_host, port=port)

    def write_snippet(self, project: str, slug: str, app_host: str, port: int) -> Path:
        path = self.snippet_path(project, slug)
        content = self.render_snippet(project, slug, app_host, port)

        logger.info(f"Writing Caddy snippet: {path}")
        if self.runner.dry_run:
            indented = "".join(f"    {line}\n" for line in content.splitlines())
            logger.info(f"[dry-run] Would write:\n{indented}")
        else:
            path.write_text(content)
        return path

    def remove_snippet(self, project: str, slug: str) -> bool:
        path = self.snippet_path(project, slug)
        if not path.exists():
            logger.debug(f"No Caddy snippet at {path}")
            return False

        logger.info(f"Removing Caddy snippet: {path}")
        if not self.runner.dry_run:
            path.unlink()
        return True

    def reload(self) -> None:
        """
        Reload Caddy with the main Caddyfile.

        Raises:
            ConfigError: If no Caddyfile can be found
            ExternalCommandFailure: If ``caddy reload`` fails
        """
        caddyfile = self.find_caddyfile()
        logger.info("Reloading Caddy...")
        self.runner.run(["caddy", "reload", "--config", str(caddyfile)])

    def find_caddyfile(self) -> Path:
        for candidate in self.caddyfile_candidates:
            if candidate.exists():
                return candidate
        tried: List[str] = [str(c) for c in self.caddyfile_candidates]
        raise ConfigError(f"Could not find Caddyfile. Tried: {', '.join(tried)}")
