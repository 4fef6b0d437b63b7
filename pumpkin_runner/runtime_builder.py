# pumpkin_runner/runtime_builder.py
from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

from .commands import CommandResult, CommandRunner
from .errors import RuntimeBuildFailed
from .project import RuntimeRequirement
from .rundir import RunDirectory, RuntimeMarker, runtime_binary_name

log = logging.getLogger(__name__)


def _failure(message: str, result: CommandResult) -> RuntimeBuildFailed:
    return RuntimeBuildFailed(
        f"{message} (exit code {result.exit_code})",
        detail=result.stderr or result.stdout,
    )


class RuntimeBuilder:
    """
    Produces the cached Pumpkin server binary.

    The source checkout lives in .run/src/Pumpkin and keeps its own cargo
    target directory, so rebuilds are incremental. Only a successful build is
    copied into staging and promoted; a failed clone, checkout or compile
    leaves the existing cache exactly as it was.
    """

    def __init__(
        self,
        runner: CommandRunner,
        run_dir: RunDirectory,
        prebuilt: Optional[Path] = None,
    ):
        self.runner = runner
        self.run_dir = run_dir
        self.prebuilt = prebuilt

    # ----------------------------
    # Source checkout
    # ----------------------------
    def _git(self, *args: str, cwd: Optional[Path] = None) -> CommandResult:
        return self.runner.execute("git", list(args), cwd=cwd or self.run_dir.source_dir)

    def _remove_checkout(self) -> None:
        src = self.run_dir.source_dir
        if not src.exists():
            return
        try:
            shutil.rmtree(src)
        except OSError as e:
            raise RuntimeBuildFailed(f"Failed to remove existing checkout {src}", detail=str(e)) from e

    def _clone(self, requirement: RuntimeRequirement) -> None:
        src = self.run_dir.source_dir
        src.parent.mkdir(parents=True, exist_ok=True)
        log.info("Cloning Pumpkin repository from %s...", requirement.source)
        res = self._git("clone", requirement.source, str(src), cwd=src.parent)
        if not res.ok:
            raise _failure("git clone failed", res)
        log.info("Pumpkin repository cloned.")

    def fetch_source(self, requirement: RuntimeRequirement, fresh: bool = False) -> Path:
        """Make .run/src/Pumpkin a checkout of requirement.ref. Returns its path."""
        src = self.run_dir.source_dir

        if fresh and src.exists():
            log.info("Removing existing Pumpkin checkout for a fresh clone...")
            self._remove_checkout()

        if (src / ".git").exists():
            origin = self._git("remote", "get-url", "origin")
            if origin.ok and origin.stdout.strip() != requirement.source:
                log.info(
                    "Checkout points at %s, need %s; re-cloning.",
                    origin.stdout.strip(),
                    requirement.source,
                )
                self._remove_checkout()

        if not (src / ".git").exists():
            # Leftover from an interrupted clone.
            self._remove_checkout()
            self._clone(requirement)
        else:
            log.info("Pumpkin repository already exists, fetching latest changes...")
            res = self._git("fetch", "--tags", "origin")
            if not res.ok:
                log.warning(
                    "git fetch failed, continuing with existing checkout: %s",
                    (res.stderr or "").strip(),
                )

        res = self._git("checkout", requirement.ref)
        if not res.ok:
            raise _failure(f"git checkout {requirement.ref} failed", res)

        head = self._git("symbolic-ref", "-q", "HEAD")
        if head.ok:
            # On a branch, bring it up to date with origin.
            res = self._git("pull", "--ff-only")
            if not res.ok:
                log.warning(
                    "git pull failed, continuing with existing version: %s",
                    (res.stderr or "").strip(),
                )
        return src

    def current_commit(self) -> str:
        res = self._git("rev-parse", "HEAD")
        return res.stdout.strip() if res.ok else ""

    # ----------------------------
    # Build
    # ----------------------------
    def _compile(self, requirement: RuntimeRequirement, src: Path) -> Path:
        args = ["build", "--target-dir", str(src / "target")]
        if requirement.profile == "release":
            args.append("--release")
        log.info("Building Pumpkin server (%s)...", requirement.profile)
        res = self.runner.execute("cargo", args, cwd=src)
        if not res.ok:
            raise _failure("Pumpkin server build failed", res)

        built = src / "target" / requirement.profile / runtime_binary_name(self.run_dir.platform)
        if not built.is_file():
            raise RuntimeBuildFailed(
                f"cargo build succeeded but {built} was not produced",
                detail=res.stderr,
            )
        return built

    def build(self, requirement: RuntimeRequirement, fresh: bool = False) -> RuntimeMarker:
        self.run_dir.ensure()
        with self.run_dir.staging() as staging:
            staged = staging / runtime_binary_name(self.run_dir.platform)
            if self.prebuilt is not None:
                if not self.prebuilt.is_file():
                    raise RuntimeBuildFailed(f"Prebuilt Pumpkin binary not found: {self.prebuilt}")
                log.info("Using prebuilt Pumpkin server %s", self.prebuilt)
                source_binary = self.prebuilt
                commit = f"prebuilt:{self.prebuilt}"
            else:
                src = self.fetch_source(requirement, fresh=fresh)
                source_binary = self._compile(requirement, src)
                commit = self.current_commit()

            try:
                shutil.copy2(source_binary, staged)
                marker = self.run_dir.promote_runtime(
                    staged,
                    source=requirement.source,
                    ref=requirement.ref,
                    profile=requirement.profile,
                    commit=commit,
                )
            except OSError as e:
                raise RuntimeBuildFailed("Could not install the built Pumpkin server", detail=str(e)) from e

        log.info("Pumpkin server built successfully (%s).", marker.commit[:12] or requirement.ref)
        return marker
