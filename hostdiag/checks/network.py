"""Network checks: name resolution and outbound reachability."""

from __future__ import annotations

import socket
import time

import httpx

from hostdiag.scan.models import Finding, Tier
from hostdiag.scan.registry import CheckContext, CheckDef

SLOW_DNS_MS = 1000
_HTTP_TIMEOUT = 10.0


def check_dns_resolve(ctx: CheckContext) -> Finding | None:
    host = ctx.settings.dns_probe_host
    t0 = time.perf_counter()
    try:
        addrs = socket.getaddrinfo(host, None)
    except socket.gaierror as e:
        return ctx.finding(
            f"DNS resolution of {host} failed",
            impact=8,
            confidence=8,
            effort=3,
            priority=1,
            evidence=str(e),
            fix_id="flush-dns",
        )
    latency = (time.perf_counter() - t0) * 1000
    if latency < SLOW_DNS_MS:
        return None
    ips = sorted({a[4][0] for a in addrs})
    return ctx.finding(
        f"DNS resolution of {host} took {latency:.0f}ms",
        impact=4,
        confidence=5,
        effort=3,
        priority=3,
        evidence=f"resolved to {', '.join(ips[:3])}",
    )


def check_internet_reachability(ctx: CheckContext) -> Finding | None:
    url = ctx.settings.connectivity_url
    timeout = _HTTP_TIMEOUT
    remaining = ctx.remaining()
    if remaining is not None:
        timeout = min(timeout, max(remaining, 0.1))
    try:
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            resp = client.get(url)
    except httpx.HTTPError as e:
        return ctx.finding(
            "No outbound HTTP connectivity",
            impact=7,
            confidence=7,
            effort=3,
            priority=1,
            evidence=f"{url}: {type(e).__name__}: {e}",
        )
    if resp.status_code == 200:
        return None
    return ctx.finding(
        f"Connectivity probe returned HTTP {resp.status_code}",
        impact=5,
        confidence=6,
        effort=3,
        priority=2,
        evidence=f"{url} -> {resp.status_code} (captive portal or proxy?)",
    )


CHECKS = [
    CheckDef("dns_resolve", check_dns_resolve, Tier.QUICK, "Network", "Resolve a well-known host"),
    CheckDef(
        "internet_reachability", check_internet_reachability, Tier.STANDARD, "Network",
        "HTTP probe of the connectivity test URL",
    ),
]
