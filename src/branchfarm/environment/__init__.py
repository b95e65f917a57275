"""
Per-branch environment building blocks for branchfarm.

This package provides the shared port registry, the names derived from a
project and branch slug, and materialization of environment files.
"""

from .env_files import EnvFileWriter, load_env_vars, parse_env_file
from .naming import EnvironmentNames, slugify
from .port_registry import PortRegistry

__all__ = [
    "EnvFileWriter",
    "EnvironmentNames",
    "PortRegistry",
    "load_env_vars",
    "parse_env_file",
    "slugify",
]
