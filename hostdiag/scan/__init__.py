"""Scan core: result model, resilient queries, budgets, registry, controller."""

from .budget import evaluate
from .controller import JobController
from .models import (
    BudgetSeverity,
    BudgetVerdict,
    CheckRun,
    CheckState,
    Finding,
    MetricsCollector,
    QueryReason,
    QueryResult,
    ScanResult,
    Tier,
)
from .query import QueryAccessDenied, QueryError, QueryFilter, QueryNotFound, ResilientQuery
from .registry import CheckContext, CheckDef, CheckRegistry, CheckUnavailable
