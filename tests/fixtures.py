"""
Test doubles for branchfarm

Provides a command runner that records commands instead of executing them
and answers with scripted results.
"""

import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from branchfarm.models import CommandResult
from branchfarm.runner import CommandRunner


class RecordingRunner(CommandRunner):
    """
    CommandRunner that never spawns processes.

    ``responses`` maps a substring of the formatted command to
    ``(exit_code, stdout, stderr)``; the first matching entry wins and
    unmatched commands succeed with no output.
    """

    def __init__(
        self,
        dry_run: bool = False,
        responses: Optional[Mapping[str, Tuple[int, str, str]]] = None,
    ):
        super().__init__(dry_run=dry_run)
        self.responses = dict(responses or {})
        self.calls: List[Dict[str, object]] = []
        self._lock = threading.Lock()

    def quiet_copy(self) -> "RecordingRunner":
        return self

    @property
    def commands(self) -> List[str]:
        return [call["command"] for call in self.calls]

    def ran(self, fragment: str) -> bool:
        return any(fragment in command for command in self.commands)

    def call_for(self, fragment: str) -> Dict[str, object]:
        for call in self.calls:
            if fragment in call["command"]:
                return call
        raise AssertionError(f"No command containing {fragment!r} in {self.commands}")

    def _execute(self, command, display, cwd: Optional[Path], env, clean_toolchain: bool) -> CommandResult:
        with self._lock:
            self.calls.append(
                {"command": display, "cwd": cwd, "env": dict(env or {}), "clean_toolchain": clean_toolchain}
            )

        for fragment, (exit_code, stdout, stderr) in self.responses.items():
            if fragment in display:
                return CommandResult(command=display, exit_code=exit_code, stdout=stdout, stderr=stderr)
        return CommandResult(command=display)
