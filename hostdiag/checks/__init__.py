"""Built-in checks and the default registry."""

from __future__ import annotations

from pathlib import Path

from hostdiag.checks import eventlog, network, security, system
from hostdiag.config import settings
from hostdiag.scan.registry import CheckDef, CheckRegistry

BUILTIN_CHECKS: list[CheckDef] = sorted(
    [*system.CHECKS, *network.CHECKS, *eventlog.CHECKS, *security.CHECKS],
    key=lambda c: c.tier.rank,
)


def default_registry(profile_path: Path | str | None = None) -> CheckRegistry:
    """Registry of the built-in checks, with the configured profile applied."""
    registry = CheckRegistry(BUILTIN_CHECKS)
    path = profile_path or settings.profile_path
    if path:
        registry.apply_profile(path)
    return registry


__all__ = ["BUILTIN_CHECKS", "default_registry"]
