"""Host resource checks: disk, CPU, memory, uptime, pending reboot."""

from __future__ import annotations

import os
import shutil

from hostdiag.checks.common import powershell_json
from hostdiag.scan.models import Finding, Tier
from hostdiag.scan.registry import CheckContext, CheckDef

DISK_FREE_WARN_PCT = 15.0
DISK_FREE_CRIT_PCT = 5.0
CPU_LOAD_WARN_PCT = 90.0
MEMORY_FREE_WARN_PCT = 10.0
UPTIME_WARN_DAYS = 30

_GB = 1024 ** 3


def _system_drive() -> str:
    if os.name == "nt":
        return os.environ.get("SystemDrive", "C:") + "\\"
    return "/"


def check_disk_free(ctx: CheckContext) -> Finding | None:
    """Free space on the system drive."""
    drive = _system_drive()
    usage = shutil.disk_usage(drive)
    pct_free = usage.free / usage.total * 100 if usage.total else 0.0
    if pct_free >= DISK_FREE_WARN_PCT:
        return None

    critical = pct_free < DISK_FREE_CRIT_PCT
    return ctx.finding(
        f"System drive {drive} has only {pct_free:.1f}% free space",
        impact=8 if critical else 5,
        confidence=10,
        effort=2,
        priority=1 if critical else 2,
        evidence=f"free={usage.free / _GB:.1f}GB total={usage.total / _GB:.1f}GB",
        fix_id="disk-cleanup",
    )


def check_cpu_load(ctx: CheckContext) -> Finding | None:
    data = powershell_json(
        ctx,
        "Get-CimInstance Win32_Processor | Measure-Object -Property LoadPercentage -Average"
        " | Select-Object Average",
    )
    load = float((data or {}).get("Average") or 0.0)
    if load < CPU_LOAD_WARN_PCT:
        return None
    return ctx.finding(
        f"CPU load is {load:.0f}%",
        impact=6,
        confidence=6,  # single sample
        effort=3,
        priority=2,
        evidence=f"LoadPercentage average={load:.1f}",
    )


def check_memory_pressure(ctx: CheckContext) -> Finding | None:
    data = powershell_json(
        ctx,
        "Get-CimInstance Win32_OperatingSystem"
        " | Select-Object FreePhysicalMemory,TotalVisibleMemorySize",
    ) or {}
    total_kb = float(data.get("TotalVisibleMemorySize") or 0)
    free_kb = float(data.get("FreePhysicalMemory") or 0)
    if not total_kb:
        return None
    pct_free = free_kb / total_kb * 100
    if pct_free >= MEMORY_FREE_WARN_PCT:
        return None
    return ctx.finding(
        f"Only {pct_free:.1f}% of physical memory is free",
        impact=7,
        confidence=7,
        effort=4,
        priority=2,
        evidence=f"free={free_kb / 1024:.0f}MB total={total_kb / 1024:.0f}MB",
    )


def check_system_uptime(ctx: CheckContext) -> Finding | None:
    days = powershell_json(
        ctx,
        "[int]((Get-Date) - (Get-CimInstance Win32_OperatingSystem).LastBootUpTime).TotalDays",
    )
    if days is None or int(days) < UPTIME_WARN_DAYS:
        return None
    return ctx.finding(
        f"Host has not rebooted in {int(days)} days",
        impact=3,
        confidence=9,
        effort=2,
        priority=3,
        evidence=f"uptime_days={int(days)}",
        fix_id="schedule-reboot",
    )


_REBOOT_KEYS = {
    "ComponentBasedServicing": r"HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Component Based Servicing\RebootPending",
    "WindowsUpdate": r"HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\WindowsUpdate\Auto Update\RebootRequired",
}


def check_pending_reboot(ctx: CheckContext) -> Finding | None:
    probes = "; ".join(f"{name} = (Test-Path '{key}')" for name, key in _REBOOT_KEYS.items())
    flags = powershell_json(ctx, f"[pscustomobject]@{{ {probes} }}") or {}
    pending = sorted(name for name, value in flags.items() if value)
    if not pending:
        return None
    return ctx.finding(
        "A reboot is pending to finish installing updates",
        impact=5,
        confidence=9,
        effort=1,
        priority=2,
        evidence="pending: " + ", ".join(pending),
        fix_id="schedule-reboot",
    )


CHECKS = [
    CheckDef("disk_free", check_disk_free, Tier.QUICK, "Disk", "System drive free space"),
    CheckDef("cpu_load", check_cpu_load, Tier.QUICK, "CPU", "Average processor load"),
    CheckDef("memory_pressure", check_memory_pressure, Tier.QUICK, "Memory", "Free physical memory"),
    CheckDef("system_uptime", check_system_uptime, Tier.STANDARD, "System", "Days since last boot"),
    CheckDef("pending_reboot", check_pending_reboot, Tier.STANDARD, "System", "Pending reboot flags"),
]
