# pumpkin_runner/project.py
from __future__ import annotations

import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .config import DEFAULT_REF, DEFAULT_SOURCE, PROFILES, RunnerConfig, default_profile, load_config
from .errors import ConfigError, ManifestNotFound

MANIFEST_NAME = "Cargo.toml"

# Crates from the Pumpkin repo a plugin may depend on; the first git dependency
# found pins the server source.
RUNTIME_CRATES = ("pumpkin", "pumpkin-api-macros", "pumpkin-util", "pumpkin-data", "pumpkin-protocol")


@dataclass(frozen=True)
class RuntimeRequirement:
    source: str
    ref: str
    profile: str

    def describe(self) -> str:
        return f"{self.source}@{self.ref} ({self.profile})"


@dataclass(frozen=True)
class ProjectManifest:
    name: str
    root: Path
    manifest_path: Path
    target_dir: Path
    runtime: RuntimeRequirement

    @property
    def lib_name(self) -> str:
        return self.name.replace("-", "_")

    def plugin_filename(self, platform: Optional[str] = None) -> str:
        platform = platform or sys.platform
        if platform.startswith("win"):
            return f"{self.lib_name}.dll"
        if platform == "darwin":
            return f"lib{self.lib_name}.dylib"
        return f"lib{self.lib_name}.so"

    def built_plugin_path(self, platform: Optional[str] = None, target_dir: Optional[Path] = None) -> Path:
        return (target_dir or self.target_dir) / self.runtime.profile / self.plugin_filename(platform)


def _read_manifest(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ManifestNotFound(f"{path} is not a valid Cargo manifest", detail=str(e)) from e
    except OSError as e:
        raise ManifestNotFound(f"Could not read {path}", detail=str(e)) from e


def find_manifest(start_dir: Path) -> Path:
    """
    Walk from start_dir up to the filesystem root and return the first
    Cargo.toml that declares a [package]. Workspace-only manifests are skipped
    so running from inside a member crate still finds the member.
    """
    start_dir = start_dir.resolve()
    for directory in (start_dir, *start_dir.parents):
        candidate = directory / MANIFEST_NAME
        if not candidate.is_file():
            continue
        if "package" in _read_manifest(candidate):
            return candidate
    raise ManifestNotFound(
        f"No {MANIFEST_NAME} with a [package] section found in {start_dir} or any parent directory"
    )


def _dependency_pin(deps: Mapping[str, Any]) -> Optional[Tuple[str, Optional[str]]]:
    for crate in RUNTIME_CRATES:
        spec = deps.get(crate)
        if isinstance(spec, dict) and spec.get("git"):
            ref = spec.get("rev") or spec.get("tag") or spec.get("branch")
            return str(spec["git"]), ref
    return None


def runtime_requirement(
    data: Mapping[str, Any],
    config: RunnerConfig,
    env: Optional[Mapping[str, str]] = None,
    platform: Optional[str] = None,
) -> RuntimeRequirement:
    """
    Work out which Pumpkin build this plugin wants.

    [package.metadata.pumpkin] wins, then the plugin's own git dependency on a
    Pumpkin crate, then pumpkin-runner.yaml and the built-in defaults.
    PUMPKIN_RUNNER_SOURCE / _REF / _PROFILE override all of it.
    """
    package = data.get("package") or {}
    meta = ((package.get("metadata") or {}).get("pumpkin")) or {}

    source: Optional[str] = meta.get("git")
    ref: Optional[str] = meta.get("rev") or meta.get("tag") or meta.get("branch")
    profile: Optional[str] = meta.get("profile")

    pin = _dependency_pin(data.get("dependencies") or {})
    if pin:
        dep_source, dep_ref = pin
        source = source or dep_source
        ref = ref or dep_ref

    env = os.environ if env is None else env
    env_source = env.get("PUMPKIN_RUNNER_SOURCE")
    env_ref = env.get("PUMPKIN_RUNNER_REF")
    env_profile = env.get("PUMPKIN_RUNNER_PROFILE")

    source = env_source or source or config.source or DEFAULT_SOURCE
    ref = env_ref or ref or config.ref or DEFAULT_REF
    profile = env_profile or profile or config.profile or default_profile(platform)
    if profile not in PROFILES:
        raise ConfigError(
            f"Runtime build profile must be one of {', '.join(PROFILES)}, got {profile!r}"
        )
    return RuntimeRequirement(source=str(source), ref=str(ref), profile=str(profile))


def load_project(
    manifest_path: Path,
    config: RunnerConfig,
    env: Optional[Mapping[str, str]] = None,
) -> ProjectManifest:
    env = os.environ if env is None else env
    data = _read_manifest(manifest_path)
    package = data.get("package") or {}
    name = package.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ManifestNotFound(f"{manifest_path} has no package.name")

    root = manifest_path.parent
    target_env = env.get("CARGO_TARGET_DIR")
    if target_env:
        target_dir = Path(target_env)
        if not target_dir.is_absolute():
            target_dir = root / target_dir
    else:
        target_dir = root / "target"

    return ProjectManifest(
        name=name.strip(),
        root=root,
        manifest_path=manifest_path,
        target_dir=target_dir,
        runtime=runtime_requirement(data, config, env=env),
    )


def resolve_project(start_dir: Path) -> Tuple[ProjectManifest, RunnerConfig]:
    """Locate the plugin crate from start_dir and load its runner config."""
    manifest_path = find_manifest(start_dir)
    config = load_config(manifest_path.parent)
    return load_project(manifest_path, config), config
