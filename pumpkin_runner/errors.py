# pumpkin_runner/errors.py
"""
Failure taxonomy for the runner.

Every failure is terminal for the invocation. The CLI maps each class to a
stable exit code so scripts can tell "the server exited 3" apart from
"the plugin did not compile":

    64  ManifestNotFound
    65  RuntimeBuildFailed
    66  PluginBuildFailed
    67  PluginArtifactMissing
    68  ProcessSpawnFailed
    69  CleanFailed
    70  RunDirectoryLocked
    71  ConfigError
"""

from __future__ import annotations

from typing import Optional


class RunnerError(Exception):
    """Base class. `detail` carries captured diagnostics (usually stderr)."""

    exit_code = 1

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = (detail or "").strip()

    def __str__(self) -> str:
        return self.message


class ManifestNotFound(RunnerError):
    exit_code = 64


class RuntimeBuildFailed(RunnerError):
    exit_code = 65

    @property
    def stderr(self) -> str:
        return self.detail


class PluginBuildFailed(RunnerError):
    exit_code = 66

    @property
    def stderr(self) -> str:
        return self.detail


class PluginArtifactMissing(RunnerError):
    exit_code = 67


class ProcessSpawnFailed(RunnerError):
    exit_code = 68


class CleanFailed(RunnerError):
    exit_code = 69

    def __init__(self, message: str, io_error: Optional[OSError] = None):
        super().__init__(message, detail=str(io_error) if io_error else None)
        self.io_error = io_error


class RunDirectoryLocked(RunnerError):
    exit_code = 70


class ConfigError(RunnerError):
    exit_code = 71


EXIT_CODES = {
    cls.__name__: cls.exit_code
    for cls in (
        ManifestNotFound,
        RuntimeBuildFailed,
        PluginBuildFailed,
        PluginArtifactMissing,
        ProcessSpawnFailed,
        CleanFailed,
        RunDirectoryLocked,
        ConfigError,
    )
}
