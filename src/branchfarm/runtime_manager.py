"""
Ruby version manager abstraction.

Each supported manager (rbenv, asdf, mise, system) implements the same
capabilities: install a version, pin it for a directory, prefix commands so
they run under the managed Ruby, and export the variables that pin the
version for subprocesses. A manager is selected once with
``get_runtime_manager`` and used polymorphically afterwards.
"""

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List

from .config import SUPPORTED_RUBY_MANAGERS
from .models import ConfigError
from .runner import CommandRunner

logger = logging.getLogger(__name__)


class RuntimeManager(ABC):
    """Capability interface for a Ruby version manager."""

    name: str = ""

    @abstractmethod
    def install(self, version: str, runner: CommandRunner) -> None:
        """Install a Ruby version if it is not already present."""

    @abstractmethod
    def pin(self, version: str, directory: Path, runner: CommandRunner) -> None:
        """Pin the Ruby version for a worktree directory."""

    @property
    @abstractmethod
    def exec_prefix(self) -> List[str]:
        """Command prefix for running Ruby scripts under the managed Ruby."""

    @property
    @abstractmethod
    def bundle_prefix(self) -> List[str]:
        """Command prefix for running bundler under the managed Ruby."""

    @abstractmethod
    def version_env(self, version: str) -> Dict[str, str]:
        """Variables that pin the Ruby version for subprocesses."""

    def parse_version(self, worktree_path: Path, version_file: str) -> str:
        """
        Read the Ruby version a worktree asks for.

        Understands ``.tool-versions`` (``ruby 3.3.4``), ``.mise.toml``
        (``ruby = "3.3.4"``) and plain ``.ruby-version`` files.

        Raises:
            ConfigError: If the file is missing or has no Ruby entry
        """
        path = Path(worktree_path) / version_file
        if not path.exists():
            raise ConfigError(f"Missing {version_file} in worktree")

        content = path.read_text().strip()

        if version_file.endswith(".tool-versions"):
            for line in content.splitlines():
                if line.strip().startswith("ruby "):
                    return line.strip().split(None, 1)[1].strip()
            raise ConfigError(f"No ruby entry in {version_file}")

        if ".mise.toml" in version_file:
            for line in content.splitlines():
                if re.match(r"^\s*ruby\s*=", line):
                    return re.sub(r"[\"'\s]", "", line.split("=", 1)[1])
            raise ConfigError(f"No ruby entry in {version_file}")

        return content

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class RbenvManager(RuntimeManager):
    name = "rbenv"

    def install(self, version: str, runner: CommandRunner) -> None:
        runner.run(["rbenv", "install", "-s", version])

    def pin(self, version: str, directory: Path, runner: CommandRunner) -> None:
        runner.run(["rbenv", "local", version], cwd=directory)

    @property
    def exec_prefix(self) -> List[str]:
        return ["rbenv", "exec", "ruby"]

    @property
    def bundle_prefix(self) -> List[str]:
        return ["rbenv", "exec", "bundle"]

    def version_env(self, version: str) -> Dict[str, str]:
        return {"RBENV_VERSION": version}


class AsdfManager(RuntimeManager):
    name = "asdf"

    def install(self, version: str, runner: CommandRunner) -> None:
        runner.run(["asdf", "install", "ruby", version])

    def pin(self, version: str, directory: Path, runner: CommandRunner) -> None:
        runner.run(["asdf", "local", "ruby", version], cwd=directory)

    @property
    def exec_prefix(self) -> List[str]:
        return ["asdf", "exec", "ruby"]

    @property
    def bundle_prefix(self) -> List[str]:
        return ["asdf", "exec", "bundle"]

    def version_env(self, version: str) -> Dict[str, str]:
        return {"ASDF_RUBY_VERSION": version}


class MiseManager(RuntimeManager):
    name = "mise"

    def install(self, version: str, runner: CommandRunner) -> None:
        runner.run(["mise", "install", f"ruby@{version}"])

    def pin(self, version: str, directory: Path, runner: CommandRunner) -> None:
        runner.run(["mise", "use", "--path", str(directory), f"ruby@{version}"])

    @property
    def exec_prefix(self) -> List[str]:
        return ["mise", "exec", "--", "ruby"]

    @property
    def bundle_prefix(self) -> List[str]:
        return ["mise", "exec", "--", "bundle"]

    def version_env(self, version: str) -> Dict[str, str]:
        return {"MISE_RUBY_VERSION": version}


class SystemManager(RuntimeManager):
    """Use whatever Ruby is on PATH; installing and pinning are no-ops."""

    name = "system"

    def install(self, version: str, runner: CommandRunner) -> None:
        logger.debug(f"System Ruby in use, not installing {version}")

    def pin(self, version: str, directory: Path, runner: CommandRunner) -> None:
        logger.debug(f"System Ruby in use, not pinning {version}")

    @property
    def exec_prefix(self) -> List[str]:
        return ["ruby"]

    @property
    def bundle_prefix(self) -> List[str]:
        return ["bundle"]

    def version_env(self, version: str) -> Dict[str, str]:
        return {}


_MANAGERS = {
    RbenvManager.name: RbenvManager,
    AsdfManager.name: AsdfManager,
    MiseManager.name: MiseManager,
    SystemManager.name: SystemManager,
}


def get_runtime_manager(name: str) -> RuntimeManager:
    """
    Select the runtime manager implementation for a name.

    Raises:
        ConfigError: If the manager is not supported
    """
    manager_class = _MANAGERS.get(str(name))
    if manager_class is None:
        raise ConfigError(
            f"Unsupported ruby_manager '{name}'. Choose from: {', '.join(SUPPORTED_RUBY_MANAGERS)}"
        )
    return manager_class()
