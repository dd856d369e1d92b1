"""Check registry: maps check ids to callables and tiers to check lists.

A check is declared at the lowest tier that includes it, so every Quick
check is part of Standard and every Standard check is part of Deep.
An optional YAML profile can re-tier or disable checks:

    checks:
      cpu_load: {tier: standard}
      defender_status: {enabled: false}
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from hostdiag.config import Settings, settings as default_settings
from hostdiag.scan.models import Finding, QueryReason, QueryResult, Tier

if TYPE_CHECKING:  # pragma: no cover
    from hostdiag.scan.query import QueryFilter, ResilientQuery

logger = logging.getLogger(__name__)


class CheckUnavailable(Exception):
    """Raised by a check whose data source does not exist on this host."""


# ── Check context ────────────────────────────────────────────────────────────


@dataclass
class CheckContext:
    """Everything a check may touch while it runs.

    ``cancel`` is set by the controller when the check overruns its
    timeout; long operations should poll it (``query`` forwards it).
    """

    check_id: str
    tier: Tier
    category: str = ""
    cancel: threading.Event = field(default_factory=threading.Event)
    deadline: float | None = None
    query_wrapper: ResilientQuery | None = None
    settings: Settings = field(default_factory=lambda: default_settings)

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def query(
        self,
        source: str,
        filters: QueryFilter | Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> QueryResult:
        if self.query_wrapper is None:
            return QueryResult.failed(QueryReason.OTHER_ERROR, "no query backend configured")
        remaining = self.remaining()
        if remaining is not None:
            if timeout is None:
                timeout = self.settings.query_default_timeout
            timeout = min(timeout, remaining)
        return self.query_wrapper.query(source, filters, timeout, cancel=self.cancel)

    def finding(self, message: str, **kwargs: Any) -> Finding:
        """Build a Finding stamped with this check's id, tier and category."""
        kwargs.setdefault("category", self.category)
        return Finding(id=self.check_id, tier=self.tier, message=message, **kwargs)


CheckFunc = Callable[[CheckContext], "Finding | None"]


@dataclass(frozen=True)
class CheckDef:
    """A registered check. ``tier`` is the lowest tier that runs it."""

    id: str
    func: CheckFunc
    tier: Tier = Tier.QUICK
    category: str = "General"
    description: str = ""
    enabled: bool = True


# ── Registry ─────────────────────────────────────────────────────────────────


class CheckRegistry:
    """Static id -> check mapping, resolved once at startup."""

    def __init__(self, checks: list[CheckDef] | None = None) -> None:
        self._checks: dict[str, CheckDef] = {}
        for check in checks or []:
            self.add(check)

    def add(self, check: CheckDef) -> CheckDef:
        if check.id in self._checks:
            raise ValueError(f"Check '{check.id}' is already registered")
        self._checks[check.id] = check
        return check

    def register(
        self,
        check_id: str,
        func: CheckFunc,
        tier: Tier | str = Tier.QUICK,
        category: str = "General",
        description: str = "",
    ) -> CheckDef:
        return self.add(CheckDef(
            id=check_id, func=func, tier=Tier.parse(tier),
            category=category, description=description,
        ))

    def check(
        self,
        check_id: str,
        tier: Tier | str = Tier.QUICK,
        category: str = "General",
        description: str = "",
    ) -> Callable[[CheckFunc], CheckFunc]:
        """Decorator form of :meth:`register`."""

        def decorator(func: CheckFunc) -> CheckFunc:
            self.register(check_id, func, tier, category, description or (func.__doc__ or "").strip())
            return func

        return decorator

    def get_checks(self, tier: Tier | str) -> list[str]:
        """Ordered ids of the enabled checks that run under ``tier``."""
        tier = Tier.parse(tier)
        return [c.id for c in self._checks.values() if c.enabled and tier.includes(c.tier)]

    def get(self, check_id: str) -> CheckDef:
        try:
            return self._checks[check_id]
        except KeyError:
            raise KeyError(f"Unknown check '{check_id}'") from None

    def resolve(self, check_id: str) -> CheckFunc:
        return self.get(check_id).func

    def definitions(self) -> list[CheckDef]:
        return list(self._checks.values())

    def __contains__(self, check_id: object) -> bool:
        return check_id in self._checks

    def __len__(self) -> int:
        return len(self._checks)

    # ------------------------------------------------------------------
    def apply_profile(self, path: Path | str) -> int:
        """Re-tier or disable checks from a YAML profile.

        Returns the number of entries applied. Unknown ids and malformed
        entries are logged and skipped.
        """
        path = Path(path)
        if not path.exists():
            logger.warning("Profile file not found: %s", path)
            return 0

        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            logger.error("Failed to parse %s: %s", path, e)
            return 0

        entries = raw.get("checks") if isinstance(raw, dict) else None
        if not isinstance(entries, dict):
            logger.warning("Profile %s has no 'checks' mapping", path)
            return 0

        applied = 0
        for check_id, entry in entries.items():
            if check_id not in self._checks:
                logger.warning("Profile references unknown check '%s'", check_id)
                continue
            try:
                self._checks[check_id] = _apply_entry(self._checks[check_id], entry)
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed profile entry '%s': %s", check_id, e)
                continue
            applied += 1

        logger.info("Applied %d profile entries from %s", applied, path)
        return applied


def _apply_entry(check: CheckDef, entry: Any) -> CheckDef:
    if entry is None:
        return check
    if not isinstance(entry, dict):
        raise TypeError(f"expected a mapping, got {type(entry).__name__}")
    changes: dict[str, Any] = {}
    if "tier" in entry:
        changes["tier"] = Tier.parse(entry["tier"])
    if "enabled" in entry:
        if not isinstance(entry["enabled"], bool):
            raise ValueError("'enabled' must be true or false")
        changes["enabled"] = entry["enabled"]
    if "category" in entry:
        changes["category"] = str(entry["category"])
    return replace(check, **changes)
