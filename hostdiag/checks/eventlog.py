"""Event log checks. Both go through the resilient query wrapper."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone

from hostdiag.scan.models import Finding, QueryReason, Tier
from hostdiag.scan.registry import CheckContext, CheckDef, CheckUnavailable

logger = logging.getLogger(__name__)

SYSTEM_ERROR_THRESHOLD = 10
LOGON_FAILURE_THRESHOLD = 20
LOOKBACK = timedelta(hours=24)

_LEVEL_ERROR = 2
_EVENT_LOGON_FAILED = 4625


def check_system_event_errors(ctx: CheckContext) -> Finding | None:
    since = datetime.now(timezone.utc) - LOOKBACK
    result = ctx.query("System", {"start": since, "level": _LEVEL_ERROR}, timeout=15)

    if result.reason is QueryReason.NOT_FOUND:
        raise CheckUnavailable(result.note)
    if not result.success:
        logger.info("Skipping system error scan: %s", result.note)
        return None
    if result.count < SYSTEM_ERROR_THRESHOLD:
        return None

    sources = Counter(e.get("Source", "?") for e in result.data or [])
    top = ", ".join(f"{name} ({n})" for name, n in sources.most_common(3))
    return ctx.finding(
        f"{result.count} error events in the System log over the last 24h",
        impact=6,
        confidence=8,
        effort=5,
        priority=2,
        evidence=f"top sources: {top}" + (f"; {result.note}" if result.note else ""),
    )


def check_security_logon_failures(ctx: CheckContext) -> Finding | None:
    since = datetime.now(timezone.utc) - LOOKBACK
    result = ctx.query("Security", {"start": since, "event_ids": [_EVENT_LOGON_FAILED]}, timeout=20)

    if result.reason is QueryReason.ACCESS_DENIED:
        # Reading Security needs elevation; report what the summary told us.
        return ctx.finding(
            "Security log could not be read without elevation",
            impact=3,
            confidence=2,
            effort=1,
            priority=4,
            evidence=f"{result.note}; records in log: {result.count}",
            fix_id="run-elevated",
        )
    if result.reason is QueryReason.NOT_FOUND:
        raise CheckUnavailable(result.note)
    if not result.success:
        logger.info("Skipping logon failure scan: %s", result.note)
        return None
    if result.count < LOGON_FAILURE_THRESHOLD:
        return None

    accounts = Counter(e.get("Account Name", e.get("User", "?")) for e in result.data or [])
    top = ", ".join(f"{name} ({n})" for name, n in accounts.most_common(3))
    return ctx.finding(
        f"{result.count} failed logons in the last 24h",
        impact=8,
        confidence=8,
        effort=4,
        priority=1,
        evidence=f"top accounts: {top}",
        fix_id="review-account-lockout-policy",
    )


CHECKS = [
    CheckDef(
        "system_event_errors", check_system_event_errors, Tier.STANDARD, "Event Log",
        "Error-level events in the System channel",
    ),
    CheckDef(
        "security_logon_failures", check_security_logon_failures, Tier.DEEP, "Security",
        "Failed logon events (4625) in the Security channel",
    ),
]
