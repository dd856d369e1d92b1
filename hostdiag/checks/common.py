"""Helpers shared by the built-in checks."""

from __future__ import annotations

import json
from typing import Any

from hostdiag.scan.registry import CheckContext, CheckUnavailable
from hostdiag.shell import run_command

_POWERSHELL_TIMEOUT = 30.0


def powershell_json(ctx: CheckContext, script: str, timeout: float = _POWERSHELL_TIMEOUT) -> Any:
    """Run a PowerShell pipeline and decode its output as JSON.

    The pipeline is piped through ``ConvertTo-Json``; empty output gives
    ``None``. The check's cancel event and deadline bound the call.
    """
    remaining = ctx.remaining()
    if remaining is not None:
        timeout = min(timeout, max(remaining, 0.1))

    cmd = [
        ctx.settings.powershell_path,
        "-NoProfile", "-NonInteractive", "-Command",
        f"{script} | ConvertTo-Json -Compress -Depth 3",
    ]
    result = run_command(cmd, timeout, cancel=ctx.cancel)

    if result.not_found:
        raise CheckUnavailable(f"PowerShell not available: {result.stderr}")
    if result.cancelled:
        raise RuntimeError("PowerShell call cancelled")
    if result.timed_out:
        raise TimeoutError(result.stderr)
    if result.exit_code != 0:
        raise RuntimeError(f"PowerShell exited {result.exit_code}: {result.stderr.strip()[:200]}")

    output = result.stdout.strip()
    if not output:
        return None
    return json.loads(output)


def as_list(value: Any) -> list[Any]:
    """ConvertTo-Json emits a bare object for single-item pipelines."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]
