"""Entry point for the hostdiag scanner."""

from __future__ import annotations

import argparse
import logging
import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from hostdiag.checks import default_registry
from hostdiag.config import settings
from hostdiag.scan.controller import JobController
from hostdiag.scan.models import BudgetSeverity, ScanResult, Tier

console = Console()

_SEVERITY_STYLE = {
    BudgetSeverity.NONE: "green",
    BudgetSeverity.WARNING: "yellow",
    BudgetSeverity.CRITICAL: "bold red",
}


def run_scan(
    tier: Tier,
    sequential: bool = False,
    max_concurrency: int | None = None,
    per_check_timeout: float | None = None,
    profile: str | None = None,
) -> ScanResult:
    """Run one tier and print the result."""
    registry = default_registry(profile)
    controller = JobController(registry, settings)
    console.print(Panel(f"Scanning host: {tier.value} tier", title="hostdiag", style="bold blue"))

    with console.status("[bold green]Running checks..."):
        result = controller.run_tier(
            tier,
            sequential=sequential,
            max_concurrency=max_concurrency,
            per_check_timeout=per_check_timeout,
        )

    render_result(result)
    return result


def render_result(result: ScanResult) -> None:
    if result.findings:
        table = Table(title="Findings", show_lines=False)
        for column in ("Score", "Id", "Category", "Message", "Fix"):
            table.add_column(column)
        for f in sorted(result.findings, key=lambda f: (-f.score, f.priority, f.id)):
            table.add_row(f"{f.score:.2f}", f.id, f.category, f.message, f.fix_id or "")
        console.print(table)
    else:
        console.print("[green]No findings detected.[/green]")

    if result.failures:
        console.print("\n[bold]Soft failures:[/bold]")
        for run in result.failures:
            console.print(f"  [yellow]{run.check_id}[/yellow] {run.state.value}: {run.error}")

    slow = [v for v in result.verdicts if v.exceeded]
    for v in slow:
        style = _SEVERITY_STYLE[v.severity]
        console.print(f"  [{style}]{v.check_name}: {v.elapsed_seconds:.1f}s of {v.budget_seconds:.0f}s[/{style}]")

    overall = result.overall
    style = _SEVERITY_STYLE[overall.severity]
    console.print(
        f"\n[dim]{len(result.runs)} checks in {result.elapsed_seconds:.1f}s[/dim] "
        f"[{style}](budget {overall.budget_seconds:.0f}s, {overall.severity.value})[/{style}]"
    )


def list_checks(tier: Tier, profile: str | None = None) -> None:
    registry = default_registry(profile)
    table = Table(title=f"{tier.value} tier checks")
    for column in ("Id", "Tier", "Category", "Description"):
        table.add_column(column)
    for check_id in registry.get_checks(tier):
        check = registry.get(check_id)
        table.add_row(check.id, check.tier.value, check.category, check.description)
    console.print(table)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Windows host diagnostic scanner")
    sub = parser.add_subparsers(dest="command")

    tiers = [t.value for t in Tier]

    scan_parser = sub.add_parser("scan", help="Run a diagnostic scan")
    scan_parser.add_argument("--tier", choices=tiers, default=Tier.STANDARD.value)
    scan_parser.add_argument("--sequential", action="store_true", help="Run checks one at a time")
    scan_parser.add_argument("--max-concurrency", type=int, default=None)
    scan_parser.add_argument("--timeout", type=float, default=None, help="Per-check timeout (seconds)")
    scan_parser.add_argument("--profile", default=None, help="YAML profile overriding check tiers")

    list_parser = sub.add_parser("list", help="List the checks of a tier")
    list_parser.add_argument("--tier", choices=tiers, default=Tier.DEEP.value)
    list_parser.add_argument("--profile", default=None)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    if args.command == "scan":
        run_scan(
            Tier.parse(args.tier),
            sequential=args.sequential,
            max_concurrency=args.max_concurrency,
            per_check_timeout=args.timeout,
            profile=args.profile,
        )
    elif args.command == "list":
        list_checks(Tier.parse(args.tier), args.profile)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
