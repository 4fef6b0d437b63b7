# pumpkin_runner/plugin_builder.py
from __future__ import annotations

import json
import logging
from pathlib import Path

from .commands import CommandRunner
from .errors import PluginArtifactMissing, PluginBuildFailed
from .project import ProjectManifest
from .rundir import RunDirectory

log = logging.getLogger(__name__)


class PluginBuilder:
    def __init__(self, runner: CommandRunner, run_dir: RunDirectory):
        self.runner = runner
        self.run_dir = run_dir

    def target_dir(self, project: ProjectManifest) -> Path:
        """
        Where cargo actually puts build output for this crate.

        Workspace members build into the workspace's target/, and
        CARGO_TARGET_DIR or .cargo/config.toml can move it anywhere, so ask
        cargo. Falls back to the directory worked out from the manifest.
        """
        res = self.runner.execute(
            "cargo",
            ["metadata", "--format-version", "1", "--no-deps", "--manifest-path", str(project.manifest_path)],
            cwd=project.root,
        )
        if res.ok:
            try:
                return Path(json.loads(res.stdout)["target_directory"])
            except (ValueError, KeyError, TypeError) as e:
                log.debug("Unexpected cargo metadata output: %s", e)
        else:
            log.debug("cargo metadata failed: %s", (res.stderr or "").strip())
        return project.target_dir

    def build(self, project: ProjectManifest) -> Path:
        """Compile the plugin crate and copy the library into .run/plugins/."""
        log.info("Building current project (%s)...", project.name)
        args = ["build", "--manifest-path", str(project.manifest_path)]
        if project.runtime.profile == "release":
            args.append("--release")
            log.info("  Using a release build to match the server profile")

        res = self.runner.execute("cargo", args, cwd=project.root)
        if not res.ok:
            raise PluginBuildFailed(
                f"Plugin build failed (cargo exited {res.exit_code})",
                detail=res.stderr or res.stdout,
            )

        built = project.built_plugin_path(self.run_dir.platform, target_dir=self.target_dir(project))
        if not built.is_file():
            raise PluginArtifactMissing(
                f"cargo build succeeded but {built} was not produced. "
                "Is the crate declared with crate-type = [\"cdylib\"]?"
            )

        try:
            dest = self.run_dir.record_plugin(built)
        except OSError as e:
            raise PluginBuildFailed(f"Could not copy {built} into the run directory", detail=str(e)) from e
        log.info("Plugin built successfully; copied %s to plugins/", dest.name)
        return dest

    def reuse(self, project: ProjectManifest) -> Path:
        """--skip-self-build: hand back the plugin from the last successful build."""
        filename = project.plugin_filename(self.run_dir.platform)
        existing = self.run_dir.plugin_artifact(filename)
        if existing is None:
            raise PluginArtifactMissing(
                f"--skip-self-build was given but no previous build of {filename} exists in "
                f"{self.run_dir.plugins_dir}. Run without --skip-self-build first."
            )
        record = self.run_dir.read_plugin_record()
        if record is not None and record.filename == filename:
            log.info("Skipping plugin build; reusing %s (built %s)", existing, record.recorded_at)
        else:
            log.info("Skipping plugin build; reusing %s", existing)
        return existing
