"""Budget evaluator: flags checks and tier runs that are running slow.

This is a threshold function, not a predictor. It only annotates; nothing
is aborted because of a verdict.
"""

from __future__ import annotations

from collections.abc import Mapping

from hostdiag.config import settings
from hostdiag.scan.models import BudgetSeverity, BudgetVerdict, Tier


def evaluate(
    check_name: str,
    elapsed: float,
    tier: Tier,
    budgets: Mapping[Tier, float] | None = None,
    warning_ratio: float | None = None,
) -> BudgetVerdict:
    """Compare ``elapsed`` seconds against the budget of ``tier``.

    Critical when elapsed > budget, Warning when elapsed > ratio * budget,
    otherwise None. The same table serves per-check and whole-run calls.
    """
    if not isinstance(tier, Tier):
        raise ValueError(f"Invalid tier: {tier!r}")
    if elapsed < 0:
        raise ValueError(f"Elapsed time must be >= 0, got {elapsed}")

    table = budgets if budgets is not None else settings.budgets()
    budget = float(table[tier])
    ratio = settings.budget_warning_ratio if warning_ratio is None else warning_ratio

    if elapsed > budget:
        severity = BudgetSeverity.CRITICAL
    elif elapsed > ratio * budget:
        severity = BudgetSeverity.WARNING
    else:
        severity = BudgetSeverity.NONE

    return BudgetVerdict(
        check_name=check_name,
        tier=tier,
        elapsed_seconds=float(elapsed),
        budget_seconds=budget,
        severity=severity,
    )
