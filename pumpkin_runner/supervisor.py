# pumpkin_runner/supervisor.py
"""
Runs the Pumpkin server as a child process.

Two things can happen while the server is up: it exits, or we receive
SIGINT/SIGTERM. Signal handlers only put the signal number on a queue; a
single loop waits on that queue and on the child, relays whatever arrives to
the server, and returns once the server has actually exited. The server keeps
its own shutdown sequence (saving worlds etc.) and we never exit before it.

Exit status is passed through unchanged. A server killed by signal N is
reported as 128 + N, the way shells do.
"""

from __future__ import annotations

import contextlib
import logging
import os
import queue
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence

from .errors import ProcessSpawnFailed
from .rundir import make_executable

log = logging.getLogger(__name__)


def _forwarded_signals() -> List[int]:
    sigs = [signal.SIGINT, signal.SIGTERM]
    if hasattr(signal, "SIGBREAK"):
        sigs.append(signal.SIGBREAK)
    return sigs


def exit_status(returncode: int) -> int:
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


class ProcessSupervisor:
    def __init__(
        self,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        poll_interval: float = 0.2,
        signals: Optional[Sequence[int]] = None,
    ):
        self.popen = popen
        self.poll_interval = poll_interval
        self.signals = list(signals) if signals is not None else _forwarded_signals()

    def _check_binary(self, binary: Path) -> None:
        if not binary.is_file():
            raise ProcessSpawnFailed(f"Pumpkin binary not found: {binary}")
        if os.name == "posix" and not os.access(binary, os.X_OK):
            try:
                make_executable(binary)
            except OSError as e:
                log.debug("chmod on %s failed: %s", binary, e)
            if not os.access(binary, os.X_OK):
                raise ProcessSpawnFailed(f"Pumpkin binary is not executable: {binary}")

    @contextlib.contextmanager
    def _relay_signals(self, events: "queue.SimpleQueue[int]") -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            log.debug("Not on the main thread; signals will not be relayed.")
            yield
            return

        def handler(signum, _frame):
            events.put(signum)

        previous = {}
        for signum in self.signals:
            previous[signum] = signal.signal(signum, handler)
        try:
            yield
        finally:
            for signum, old in previous.items():
                signal.signal(signum, old)

    def _deliver(self, child: subprocess.Popen, signum: int) -> None:
        if sys.platform.startswith("win") and signum == signal.SIGINT:
            signum = signal.CTRL_C_EVENT
        log.info("Received %s, forwarding to server (pid %s)...", _signal_name(signum), child.pid)
        try:
            child.send_signal(signum)
        except ProcessLookupError:
            # Exited between poll() and send_signal(); the loop picks up the status.
            pass

    def _supervise(self, child: subprocess.Popen, events: "queue.SimpleQueue[int]") -> int:
        while True:
            returncode = child.poll()
            if returncode is not None:
                return returncode
            try:
                signum = events.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            self._deliver(child, signum)

    def launch(self, binary: Path, cwd: Path, args: Sequence[str] = ()) -> int:
        """Start the server, wait for it, and return the exit status to use."""
        self._check_binary(binary)
        events: "queue.SimpleQueue[int]" = queue.SimpleQueue()

        with self._relay_signals(events):
            try:
                child = self.popen([str(binary), *map(str, args)], cwd=str(cwd))
            except OSError as e:
                raise ProcessSpawnFailed(f"Failed to start Pumpkin server {binary}", detail=str(e)) from e

            log.info("Server is starting... (Press Ctrl+C to stop)")
            returncode = self._supervise(child, events)

        status = exit_status(returncode)
        if status == 0:
            log.info("Server stopped successfully")
        else:
            log.error("Server stopped with exit code %s", status)
        return status
