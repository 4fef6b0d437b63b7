# pumpkin_runner/rundir.py
"""
Owner of the .run working directory.

Layout (relative to the project root):

    .run/
      pumpkin[.exe]     cached server binary
      runtime.yaml      marker: which source/ref/profile built it, plus sha256
      plugins/          plugin artifacts; the server loads everything in here
      plugin.yaml       record of the last plugin copied into plugins/
      src/Pumpkin/      server source checkout
      .staging/         scratch space for builds in progress
      .lock             pid (and process start time) of the invocation using it

Nothing else in the package builds paths into .run; everyone goes through a
RunDirectory handle.

The cache is only valid when runtime.yaml parses AND the binary it describes
exists with the recorded size and sha256. The marker is deleted before a new
binary is swapped in and written last, so an interrupted promotion leaves an
invalid cache rather than a mismatched one.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import os
import shutil
import socket
import stat
import sys
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

import psutil
import yaml

from .config import DEFAULT_LOCK_TTL_SECS, DEFAULT_RUN_DIR
from .errors import CleanFailed, RunDirectoryLocked

log = logging.getLogger(__name__)

MARKER_NAME = "runtime.yaml"
PLUGIN_RECORD_NAME = "plugin.yaml"
LOCK_NAME = ".lock"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def runtime_binary_name(platform: Optional[str] = None) -> str:
    platform = platform or sys.platform
    return "pumpkin.exe" if platform.startswith("win") else "pumpkin"


def make_executable(path: Path) -> None:
    if os.name != "posix":
        return
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH | stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)


@dataclass
class RuntimeMarker:
    source: str
    ref: str
    profile: str
    commit: str
    sha256: str
    size: int
    built_at: str

    def matches(self, requirement) -> bool:
        return (
            self.source == requirement.source
            and self.ref == requirement.ref
            and self.profile == requirement.profile
        )

    def describe(self) -> str:
        return f"{self.source}@{self.ref} ({self.profile})"


@dataclass
class PluginRecord:
    filename: str
    built_from: str
    sha256: str
    recorded_at: str


class CacheState(str, Enum):
    MISSING = "missing"
    CORRUPT = "corrupt"
    MISMATCH = "mismatch"
    VALID = "valid"


class RunDirectory:
    def __init__(
        self,
        project_root: Path,
        name: str = DEFAULT_RUN_DIR,
        lock_ttl_secs: int = DEFAULT_LOCK_TTL_SECS,
        platform: Optional[str] = None,
    ):
        self.root = Path(project_root) / name
        self.lock_ttl_secs = lock_ttl_secs
        self.platform = platform or sys.platform

    # ----------------------------
    # Paths
    # ----------------------------
    @property
    def runtime_binary(self) -> Path:
        return self.root / runtime_binary_name(self.platform)

    @property
    def marker_path(self) -> Path:
        return self.root / MARKER_NAME

    @property
    def plugins_dir(self) -> Path:
        return self.root / "plugins"

    @property
    def plugin_record_path(self) -> Path:
        return self.root / PLUGIN_RECORD_NAME

    @property
    def source_dir(self) -> Path:
        return self.root / "src" / "Pumpkin"

    @property
    def staging_root(self) -> Path:
        return self.root / ".staging"

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_NAME

    # ----------------------------
    # Lifecycle
    # ----------------------------
    def ensure(self) -> "RunDirectory":
        self.root.mkdir(parents=True, exist_ok=True)
        self.plugins_dir.mkdir(exist_ok=True)
        (self.root / "src").mkdir(exist_ok=True)
        return self

    def clean(self) -> bool:
        """
        Remove the whole run directory. Returns False when there was nothing
        to remove. Refuses while another live invocation holds the lock.
        """
        if not self.root.exists():
            return False
        holder = self._live_lock_holder()
        if holder is not None:
            raise RunDirectoryLocked(
                f"{self.root} is in use by another cargo-pumpkin process (pid {holder})"
            )
        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            # Removed underneath us; the end state is what was asked for.
            return False
        except OSError as e:
            raise CleanFailed(f"Failed to remove {self.root}", io_error=e) from e
        return True

    # ----------------------------
    # Runtime cache
    # ----------------------------
    def read_marker(self) -> Optional[RuntimeMarker]:
        try:
            data = yaml.safe_load(self.marker_path.read_text(encoding="utf-8"))
            return RuntimeMarker(**data)
        except FileNotFoundError:
            return None
        except (OSError, yaml.YAMLError, TypeError) as e:
            log.debug("Unreadable runtime marker %s: %s", self.marker_path, e)
            return None

    def check_runtime(self, requirement=None) -> CacheState:
        """Read-only inspection of the cached runtime. Never raises."""
        marker_present = self.marker_path.exists()
        binary_present = self.runtime_binary.is_file()
        if not marker_present and not binary_present:
            return CacheState.MISSING

        marker = self.read_marker()
        if marker is None or not binary_present:
            return CacheState.CORRUPT
        try:
            if self.runtime_binary.stat().st_size != marker.size:
                return CacheState.CORRUPT
            if file_sha256(self.runtime_binary) != marker.sha256:
                return CacheState.CORRUPT
        except OSError as e:
            log.debug("Cached runtime %s unreadable: %s", self.runtime_binary, e)
            return CacheState.CORRUPT

        if requirement is not None and not marker.matches(requirement):
            return CacheState.MISMATCH
        return CacheState.VALID

    def validate(self, requirement=None) -> bool:
        return self.check_runtime(requirement) is CacheState.VALID

    @contextlib.contextmanager
    def staging(self) -> Iterator[Path]:
        """Fresh scratch directory, removed on exit whatever happened inside."""
        path = self.staging_root / uuid.uuid4().hex
        path.mkdir(parents=True)
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)

    def promote_runtime(
        self,
        staged_binary: Path,
        *,
        source: str,
        ref: str,
        profile: str,
        commit: str = "",
    ) -> RuntimeMarker:
        """Install a freshly built binary as the cached runtime."""
        self.ensure()
        tmp_binary = self.root / f".{self.runtime_binary.name}.{uuid.uuid4().hex[:8]}.tmp"
        tmp_marker = self.root / f".{MARKER_NAME}.tmp"
        try:
            shutil.copy2(staged_binary, tmp_binary)
            make_executable(tmp_binary)
            marker = RuntimeMarker(
                source=source,
                ref=ref,
                profile=profile,
                commit=commit,
                sha256=file_sha256(tmp_binary),
                size=tmp_binary.stat().st_size,
                built_at=_utc_now(),
            )
            tmp_marker.write_text(yaml.safe_dump(asdict(marker), sort_keys=False), encoding="utf-8")

            self.marker_path.unlink(missing_ok=True)
            os.replace(tmp_binary, self.runtime_binary)
            os.replace(tmp_marker, self.marker_path)
        finally:
            tmp_binary.unlink(missing_ok=True)
            tmp_marker.unlink(missing_ok=True)
        return marker

    # ----------------------------
    # Plugin artifact
    # ----------------------------
    def record_plugin(self, built_artifact: Path) -> Path:
        """Copy a built plugin into plugins/ and note where it came from."""
        self.ensure()
        dest = self.plugins_dir / built_artifact.name
        tmp = self.plugins_dir / f".{built_artifact.name}.tmp"
        try:
            shutil.copy2(built_artifact, tmp)
            os.replace(tmp, dest)
        finally:
            tmp.unlink(missing_ok=True)

        record = PluginRecord(
            filename=dest.name,
            built_from=str(built_artifact),
            sha256=file_sha256(dest),
            recorded_at=_utc_now(),
        )
        self.plugin_record_path.write_text(
            yaml.safe_dump(asdict(record), sort_keys=False), encoding="utf-8"
        )
        return dest

    def read_plugin_record(self) -> Optional[PluginRecord]:
        try:
            data = yaml.safe_load(self.plugin_record_path.read_text(encoding="utf-8"))
            return PluginRecord(**data)
        except FileNotFoundError:
            return None
        except (OSError, yaml.YAMLError, TypeError) as e:
            log.debug("Unreadable plugin record %s: %s", self.plugin_record_path, e)
            return None

    def plugin_artifact(self, filename: str) -> Optional[Path]:
        path = self.plugins_dir / filename
        return path if path.is_file() else None

    # ----------------------------
    # Single-invocation lock
    # ----------------------------
    def _read_lock(self) -> Optional[dict]:
        try:
            data = yaml.safe_load(self.lock_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, yaml.YAMLError):
            return {}
        return data if isinstance(data, dict) else {}

    def _lock_is_stale(self, info: dict, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        try:
            age = now - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age > self.lock_ttl_secs:
            return True
        pid = info.get("pid")
        if not isinstance(pid, int) or info.get("host") != socket.gethostname():
            return False
        created = info.get("created")
        if not isinstance(created, (int, float)):
            created = None
        return not _holder_alive(pid, created)

    def _live_lock_holder(self) -> Optional[int]:
        info = self._read_lock()
        if info is None:
            return None
        if self._lock_is_stale(info):
            return None
        if info.get("pid") == os.getpid():
            return None
        return info.get("pid") or -1

    @contextlib.contextmanager
    def lock(self) -> Iterator["RunDirectory"]:
        self.ensure()
        for attempt in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                break
            except FileExistsError:
                info = self._read_lock() or {}
                if attempt == 0 and self._lock_is_stale(info):
                    log.warning("Removing stale lock %s (pid %s)", self.lock_path, info.get("pid"))
                    self.lock_path.unlink(missing_ok=True)
                    continue
                raise RunDirectoryLocked(
                    f"{self.root} is in use by another cargo-pumpkin process "
                    f"(pid {info.get('pid', '?')}). Remove {self.lock_path} if that process is gone."
                )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(
                yaml.safe_dump(
                    {
                        "pid": os.getpid(),
                        "host": socket.gethostname(),
                        "created": _own_create_time(),
                        "started_at": _utc_now(),
                    },
                    sort_keys=False,
                )
            )
        try:
            yield self
        finally:
            self.lock_path.unlink(missing_ok=True)


def _holder_alive(pid: int, created: Optional[float] = None) -> bool:
    """True while `pid` runs and, when known, is the same process that took the lock."""
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        if created is not None and abs(proc.create_time() - float(created)) > 1.0:
            # pid was reused by an unrelated process
            return False
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
    return True


def _own_create_time() -> Optional[float]:
    try:
        return psutil.Process(os.getpid()).create_time()
    except psutil.Error:
        return None
