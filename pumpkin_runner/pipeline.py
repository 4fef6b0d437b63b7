# pumpkin_runner/pipeline.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

from . import cache
from .commands import CommandRunner, SubprocessRunner
from .config import RunnerConfig, load_config, parse_log_level, write_default_config
from .errors import ManifestNotFound
from .plugin_builder import PluginBuilder
from .project import ProjectManifest, resolve_project
from .rundir import RunDirectory
from .runtime_builder import RuntimeBuilder
from .supervisor import ProcessSupervisor

log = logging.getLogger(__name__)


class PluginRunner:
    """
    Sequences one invocation: resolve the crate, prepare .run, rebuild the
    server if the cache says so, build (or reuse) the plugin, launch.

    Every stage finishes before the next starts and any RunnerError stops the
    pipeline where it is raised.
    """

    def __init__(
        self,
        start_dir: Path,
        runner: Optional[CommandRunner] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        log_level: Optional[str] = None,
    ):
        self.start_dir = Path(start_dir)
        # An explicit --log-level/-v beats the config file.
        self.log_level = log_level
        self.runner = runner or SubprocessRunner()
        self.supervisor = supervisor or ProcessSupervisor()

    def _resolve(self) -> Tuple[ProjectManifest, RunnerConfig, RunDirectory]:
        project, config = resolve_project(self.start_dir)
        if self.log_level is None:
            logging.getLogger().setLevel(parse_log_level(config.log_level))
        run_dir = RunDirectory(project.root, config.run_dir, lock_ttl_secs=config.lock_ttl_secs)
        log.debug("Project %s at %s; run directory %s", project.name, project.root, run_dir.root)
        return project, config, run_dir

    def init(self, force: bool = False) -> None:
        log.info("Initializing Pumpkin environment...")
        project, config, run_dir = self._resolve()
        run_dir.ensure()

        written = write_default_config(project.root)
        if written:
            log.info("Wrote default config to %s", written)
        else:
            log.info("Config already exists at %s", project.root / "pumpkin-runner.yaml")

        with run_dir.lock():
            if config.prebuilt is None:
                RuntimeBuilder(self.runner, run_dir).fetch_source(project.runtime, fresh=force)
            else:
                log.info("runtime.prebuilt is set; no source checkout needed.")
        log.info("Initialization complete!")

    def run(self, force: bool = False, skip_self_build: bool = False) -> int:
        log.info("Starting Pumpkin runner...")
        project, config, run_dir = self._resolve()
        run_dir.ensure()

        with run_dir.lock():
            plugins = PluginBuilder(self.runner, run_dir)
            plugin = plugins.reuse(project) if skip_self_build else None

            decision = cache.decide(project.runtime, force, run_dir)
            if decision.rebuild:
                log.info("Rebuilding Pumpkin server: %s", decision.reason)
                RuntimeBuilder(self.runner, run_dir, prebuilt=config.prebuilt).build(
                    project.runtime, fresh=force
                )
            else:
                log.info("Reusing Pumpkin server: %s", decision.reason)

            if plugin is None:
                plugin = plugins.build(project)
            log.debug("Plugin artifact: %s", plugin)

            log.info("Starting Pumpkin server...")
            return self.supervisor.launch(run_dir.runtime_binary, cwd=run_dir.root, args=config.server_args)

    def clean(self) -> bool:
        log.info("Cleaning run directory...")
        try:
            _project, _config, run_dir = self._resolve()
        except ManifestNotFound:
            # Clean still works outside a crate: fall back to ./.run
            config = load_config(self.start_dir)
            run_dir = RunDirectory(self.start_dir, config.run_dir, lock_ttl_secs=config.lock_ttl_secs)

        removed = run_dir.clean()
        if removed:
            log.info("Removed %s", run_dir.root)
        else:
            log.info("Nothing to clean at %s", run_dir.root)
        log.info("Clean complete!")
        return removed
