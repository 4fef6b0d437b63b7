# pumpkin_runner/cache.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .project import RuntimeRequirement
from .rundir import CacheState, RunDirectory


class CacheAction(str, Enum):
    REUSE = "reuse"
    REBUILD = "rebuild"


@dataclass(frozen=True)
class CacheDecision:
    action: CacheAction
    reason: str

    @property
    def rebuild(self) -> bool:
        return self.action is CacheAction.REBUILD


def decide(requirement: RuntimeRequirement, force: bool, run_dir: RunDirectory) -> CacheDecision:
    """
    Reuse the cached server binary or rebuild it. Only reads state.

    --force always rebuilds, even over a perfectly good cache.
    """
    if force:
        return CacheDecision(CacheAction.REBUILD, "rebuild forced with --force")

    state = run_dir.check_runtime(requirement)
    if state is CacheState.VALID:
        return CacheDecision(CacheAction.REUSE, f"cached runtime matches {requirement.describe()}")
    if state is CacheState.MISSING:
        return CacheDecision(CacheAction.REBUILD, "no cached runtime")
    if state is CacheState.CORRUPT:
        return CacheDecision(
            CacheAction.REBUILD, "cached runtime is incomplete or does not match its marker"
        )

    marker = run_dir.read_marker()
    built_for = marker.describe() if marker else "an unknown version"
    return CacheDecision(
        CacheAction.REBUILD,
        f"cached runtime was built for {built_for}, need {requirement.describe()}",
    )
