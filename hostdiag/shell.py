"""Cancellable subprocess runner shared by checks and query backends.

The process is killed as soon as the timeout passes or the caller's
cancellation event is set, so no OS call outlives the check that issued it.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    cancelled: bool = False
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not (self.timed_out or self.cancelled)


def run_command(
    cmd: list[str],
    timeout_sec: float,
    cancel: threading.Event | None = None,
) -> CommandResult:
    """Run a subprocess (no shell) and return a structured result.

    Never raises for timeouts, cancellation or a missing executable.
    """
    t0 = time.perf_counter()

    def _elapsed_ms() -> int:
        return int((time.perf_counter() - t0) * 1000)

    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError as e:
        return CommandResult(
            exit_code=-1, stdout="", stderr=f"Command not found: {e}",
            duration_ms=_elapsed_ms(), not_found=True,
        )
    except OSError as e:
        return CommandResult(
            exit_code=-1, stdout="", stderr=f"Could not start command: {e}",
            duration_ms=_elapsed_ms(),
        )

    deadline = t0 + timeout_sec
    while True:
        if cancel is not None and cancel.is_set():
            _kill(proc)
            return CommandResult(
                exit_code=-1, stdout="", stderr="Command cancelled",
                duration_ms=_elapsed_ms(), cancelled=True,
            )
        remaining = deadline - time.perf_counter()
        if remaining <= 0:
            _kill(proc)
            return CommandResult(
                exit_code=-1, stdout="", stderr=f"Command timed out after {timeout_sec}s",
                duration_ms=_elapsed_ms(), timed_out=True,
            )
        try:
            stdout, stderr = proc.communicate(timeout=min(_POLL_INTERVAL, remaining))
        except subprocess.TimeoutExpired:
            continue
        return CommandResult(
            exit_code=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration_ms=_elapsed_ms(),
        )


def _kill(proc: subprocess.Popen[str]) -> None:
    proc.kill()
    try:
        proc.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s did not exit after kill", proc.pid)
