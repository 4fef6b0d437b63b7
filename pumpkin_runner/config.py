# pumpkin_runner/config.py
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError

CONFIG_FILENAME = "pumpkin-runner.yaml"

DEFAULT_SOURCE = "https://github.com/Pumpkin-MC/Pumpkin.git"
DEFAULT_REF = "master"
DEFAULT_RUN_DIR = ".run"
DEFAULT_LOCK_TTL_SECS = 86400

PROFILES = ("debug", "release")


def default_profile(platform: Optional[str] = None) -> str:
    # Plugins only load reliably into release builds on Windows.
    platform = platform or sys.platform
    return "release" if platform.startswith("win") else "debug"


# ----------------------------
# Default config
# ----------------------------
def _default_config() -> Dict[str, Any]:
    return {
        "runtime": {
            "source": DEFAULT_SOURCE,
            "ref": DEFAULT_REF,
            # debug everywhere except Windows; leave unset to pick per platform
            "profile": None,
            # path to an already-built pumpkin binary; skips clone + build
            "prebuilt": None,
            "args": [],
        },
        "run_dir": DEFAULT_RUN_DIR,
        "log_level": "INFO",
    }


@dataclass
class RunnerConfig:
    source: Optional[str] = None
    ref: Optional[str] = None
    profile: Optional[str] = None
    prebuilt: Optional[Path] = None
    server_args: List[str] = field(default_factory=list)
    run_dir: str = DEFAULT_RUN_DIR
    log_level: str = "INFO"
    lock_ttl_secs: int = DEFAULT_LOCK_TTL_SECS
    path: Optional[Path] = None


def write_default_config(project_root: Path) -> Optional[Path]:
    """Write pumpkin-runner.yaml if it does not exist. Returns the path when written."""
    config_path = project_root / CONFIG_FILENAME
    if config_path.exists():
        return None
    config_path.write_text(
        yaml.safe_dump(_default_config(), sort_keys=False), encoding="utf-8"
    )
    return config_path


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"{config_path} is not valid YAML", detail=str(e)) from e
    except OSError as e:
        raise ConfigError(f"Could not read {config_path}", detail=str(e)) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")
    return data


def load_config(project_root: Path, env: Optional[Dict[str, str]] = None) -> RunnerConfig:
    """
    Build the effective config for a project:
    1) built-in defaults
    2) pumpkin-runner.yaml in the project root (optional)
    3) PUMPKIN_RUNNER_LOG_LEVEL / PUMPKIN_RUNNER_LOCK_TTL_SECS

    The runtime pin (source, ref, profile) env overrides are applied in
    project.runtime_requirement since they must also beat Cargo.toml metadata.
    """
    env = os.environ if env is None else env
    cfg = RunnerConfig()

    config_path = project_root / CONFIG_FILENAME
    if config_path.exists():
        data = _read_yaml(config_path)
        cfg.path = config_path
        runtime = data.get("runtime") or {}
        if not isinstance(runtime, dict):
            raise ConfigError(f"'runtime' in {config_path} must be a mapping")
        cfg.source = runtime.get("source") or None
        cfg.ref = runtime.get("ref") or None
        cfg.profile = runtime.get("profile") or None
        prebuilt = runtime.get("prebuilt")
        if prebuilt:
            prebuilt_path = Path(str(prebuilt)).expanduser()
            if not prebuilt_path.is_absolute():
                prebuilt_path = project_root / prebuilt_path
            cfg.prebuilt = prebuilt_path
        args = runtime.get("args") or []
        if not isinstance(args, list):
            raise ConfigError(f"'runtime.args' in {config_path} must be a list")
        cfg.server_args = [str(a) for a in args]
        cfg.run_dir = str(data.get("run_dir") or DEFAULT_RUN_DIR)
        cfg.log_level = str(data.get("log_level") or "INFO")

    cfg.log_level = env.get("PUMPKIN_RUNNER_LOG_LEVEL") or cfg.log_level

    ttl = env.get("PUMPKIN_RUNNER_LOCK_TTL_SECS")
    if ttl:
        try:
            cfg.lock_ttl_secs = int(ttl)
        except ValueError as e:
            raise ConfigError(f"PUMPKIN_RUNNER_LOCK_TTL_SECS must be an integer, got {ttl!r}") from e

    if cfg.profile is not None and cfg.profile not in PROFILES:
        raise ConfigError(
            f"Unknown build profile {cfg.profile!r}; expected one of: {', '.join(PROFILES)}"
        )
    return cfg


def parse_log_level(name: str) -> int:
    level = logging.getLevelName(str(name).strip().upper())
    if not isinstance(level, int):
        raise ConfigError(f"Unknown log level {name!r}")
    return level
