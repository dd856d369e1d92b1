"""Tests for the cancellable subprocess runner."""

from __future__ import annotations

import sys
import threading
import time

from hostdiag.shell import run_command


class TestRunCommand:
    def test_success(self) -> None:
        result = run_command([sys.executable, "-c", "print('hello')"], timeout_sec=10)
        assert result.ok
        assert result.stdout.strip() == "hello"
        assert result.duration_ms >= 0

    def test_nonzero_exit(self) -> None:
        result = run_command(
            [sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"],
            timeout_sec=10,
        )
        assert not result.ok
        assert result.exit_code == 3
        assert "bad" in result.stderr

    def test_missing_executable(self) -> None:
        result = run_command(["definitely-not-a-real-binary-xyz"], timeout_sec=1)
        assert result.not_found
        assert result.exit_code == -1
        assert not result.ok

    def test_timeout_kills_process(self) -> None:
        t0 = time.perf_counter()
        result = run_command([sys.executable, "-c", "import time; time.sleep(10)"], timeout_sec=0.3)
        assert result.timed_out
        assert not result.ok
        assert time.perf_counter() - t0 < 5

    def test_cancel_event(self) -> None:
        cancel = threading.Event()
        threading.Timer(0.2, cancel.set).start()
        t0 = time.perf_counter()
        result = run_command(
            [sys.executable, "-c", "import time; time.sleep(10)"], timeout_sec=30, cancel=cancel,
        )
        assert result.cancelled
        assert time.perf_counter() - t0 < 5
