"""Security posture checks: Defender and Windows Firewall."""

from __future__ import annotations

from hostdiag.checks.common import as_list, powershell_json
from hostdiag.scan.models import Finding, Tier
from hostdiag.scan.registry import CheckContext, CheckDef, CheckUnavailable

SIGNATURE_MAX_AGE_DAYS = 7


def check_defender_status(ctx: CheckContext) -> Finding | None:
    status = powershell_json(
        ctx,
        "Get-MpComputerStatus"
        " | Select-Object AntivirusEnabled,RealTimeProtectionEnabled,AntivirusSignatureAge",
    )
    if not status:
        raise CheckUnavailable("Get-MpComputerStatus returned no data")

    if not status.get("AntivirusEnabled") or not status.get("RealTimeProtectionEnabled"):
        return ctx.finding(
            "Microsoft Defender real-time protection is off",
            impact=9,
            confidence=9,
            effort=1,
            priority=1,
            evidence=(
                f"AntivirusEnabled={status.get('AntivirusEnabled')} "
                f"RealTimeProtectionEnabled={status.get('RealTimeProtectionEnabled')}"
            ),
            fix_id="enable-defender-realtime",
        )

    age = int(status.get("AntivirusSignatureAge") or 0)
    if age > SIGNATURE_MAX_AGE_DAYS:
        return ctx.finding(
            f"Defender signatures are {age} days old",
            impact=6,
            confidence=9,
            effort=1,
            priority=2,
            evidence=f"AntivirusSignatureAge={age}",
            fix_id="update-defender-signatures",
        )
    return None


def check_firewall_profiles(ctx: CheckContext) -> Finding | None:
    profiles = as_list(powershell_json(ctx, "Get-NetFirewallProfile | Select-Object Name,Enabled"))
    disabled = sorted(str(p.get("Name")) for p in profiles if not p.get("Enabled"))
    if not disabled:
        return None
    return ctx.finding(
        f"Windows Firewall is disabled for: {', '.join(disabled)}",
        impact=8,
        confidence=9,
        effort=1,
        priority=1,
        evidence=f"{len(disabled)} of {len(profiles)} profiles disabled",
        fix_id="enable-firewall",
    )


CHECKS = [
    CheckDef("defender_status", check_defender_status, Tier.DEEP, "Security", "Defender protection state"),
    CheckDef("firewall_profiles", check_firewall_profiles, Tier.DEEP, "Security", "Firewall profile state"),
]
