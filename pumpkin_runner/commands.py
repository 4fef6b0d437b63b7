# pumpkin_runner/commands.py
"""
External command execution for the build steps (git, cargo).

Everything that shells out goes through a CommandRunner so tests can swap in a
fake. The real implementation always captures output and never raises for a
nonzero exit; a missing executable comes back as exit code 127 with the error
in stderr, the same way a shell would report it.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence, Union

log = logging.getLogger(__name__)

MISSING_EXECUTABLE = 127


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    def execute(
        self,
        command: str,
        args: Sequence[str],
        cwd: Union[str, Path, None] = None,
    ) -> CommandResult:
        ...


class SubprocessRunner:
    """CommandRunner backed by subprocess.run."""

    def execute(
        self,
        command: str,
        args: Sequence[str],
        cwd: Union[str, Path, None] = None,
    ) -> CommandResult:
        resolved = shutil.which(command) or command
        argv = [resolved, *[str(a) for a in args]]
        log.debug("$ %s (cwd=%s)", " ".join([command, *map(str, args)]), cwd or os.getcwd())

        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except FileNotFoundError as e:
            return CommandResult(MISSING_EXECUTABLE, "", f"executable not found: {command} ({e})")
        except OSError as e:
            return CommandResult(MISSING_EXECUTABLE, "", f"failed to execute {command}: {e}")

        if proc.stdout:
            log.debug("%s stdout:\n%s", command, proc.stdout.rstrip())
        if proc.stderr:
            log.debug("%s stderr:\n%s", command, proc.stderr.rstrip())
        return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")
