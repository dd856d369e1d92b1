"""Shared records for a scan: tiers, findings, query results, verdicts.

Every check produces a :class:`Finding` (or ``None``); the controller wraps
each execution in a :class:`CheckRun` and returns a :class:`ScanResult`
that the reporting layer consumes as-is.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ── Enums ────────────────────────────────────────────────────────────────────


class Tier(str, Enum):
    """Scan depth. Each tier includes every check of the tiers below it."""

    QUICK = "quick"
    STANDARD = "standard"
    DEEP = "deep"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def includes(self, other: Tier) -> bool:
        """True when a check declared at ``other`` runs under this tier."""
        return other.rank <= self.rank

    @classmethod
    def parse(cls, value: str | Tier) -> Tier:
        if isinstance(value, Tier):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown tier '{value}'. Valid tiers: {valid}") from None


_TIER_ORDER = [Tier.QUICK, Tier.STANDARD, Tier.DEEP]


class QueryReason(str, Enum):
    OK = "ok"
    ACCESS_DENIED = "access_denied"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    OTHER_ERROR = "other_error"


class BudgetSeverity(str, Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"


class CheckState(str, Enum):
    """Lifecycle of one check inside a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in (CheckState.COMPLETED, CheckState.FAILED, CheckState.TIMED_OUT)


# ── Finding ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Finding:
    """A scored diagnostic result produced by a single check invocation.

    ``score`` is derived once at construction:
    ``round(impact * confidence / (effort + 1), 2)``.
    """

    id: str
    tier: Tier
    category: str
    message: str
    impact: int = 0
    confidence: int = 0
    effort: int = 0
    priority: int = 0
    evidence: str = ""
    fix_id: str | None = None
    score: float = field(init=False)

    def __post_init__(self) -> None:
        if self.effort < 0:
            raise ValueError(f"Finding '{self.id}': effort must be >= 0, got {self.effort}")
        score = round((self.impact * self.confidence) / (self.effort + 1), 2)
        object.__setattr__(self, "score", float(score))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tier": self.tier.value,
            "category": self.category,
            "message": self.message,
            "impact": self.impact,
            "confidence": self.confidence,
            "effort": self.effort,
            "priority": self.priority,
            "evidence": self.evidence,
            "fix_id": self.fix_id,
            "score": self.score,
        }


# ── QueryResult ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class QueryResult:
    """Outcome of a resilient query. Failures are data, never exceptions."""

    success: bool
    reason: QueryReason = QueryReason.OK
    data: Any = None
    count: int = 0
    note: str = ""

    def __post_init__(self) -> None:
        if self.success and self.reason is not QueryReason.OK:
            raise ValueError("A successful QueryResult must have reason OK")
        if not self.success:
            if self.reason is QueryReason.OK:
                raise ValueError("A failed QueryResult needs a non-OK reason")
            if not self.note:
                raise ValueError("A failed QueryResult needs an explanatory note")

    @classmethod
    def ok(cls, data: Any, count: int | None = None, note: str = "") -> QueryResult:
        if count is None:
            count = len(data) if hasattr(data, "__len__") else 0
        return cls(success=True, reason=QueryReason.OK, data=data, count=count, note=note)

    @classmethod
    def failed(cls, reason: QueryReason, note: str, count: int = 0) -> QueryResult:
        return cls(success=False, reason=reason, data=None, count=count, note=note)


# ── Budget verdict ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BudgetVerdict:
    check_name: str
    tier: Tier
    elapsed_seconds: float
    budget_seconds: float
    severity: BudgetSeverity = BudgetSeverity.NONE

    @property
    def exceeded(self) -> bool:
        return self.severity is not BudgetSeverity.NONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "check_name": self.check_name,
            "tier": self.tier.value,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "budget_seconds": self.budget_seconds,
            "exceeded": self.exceeded,
            "severity": self.severity.value,
        }


# ── Run records ──────────────────────────────────────────────────────────────


@dataclass
class CheckRun:
    """Execution record of one check: terminal state, timing and outcome."""

    check_id: str
    state: CheckState = CheckState.PENDING
    elapsed_seconds: float = 0.0
    finding: Finding | None = None
    error: str = ""
    verdict: BudgetVerdict | None = None

    @property
    def soft_failure(self) -> bool:
        return self.state in (CheckState.FAILED, CheckState.TIMED_OUT)


class MetricsCollector:
    """Per-run timing statistics.

    One instance belongs to one ``run_tier`` call. To aggregate several runs
    the caller merges collectors explicitly with :meth:`merge`.
    """

    def __init__(self) -> None:
        self._durations: dict[str, list[float]] = {}
        self._outcomes: Counter[str] = Counter()

    def record(self, check_id: str, elapsed: float, state: CheckState) -> None:
        self._durations.setdefault(check_id, []).append(elapsed)
        self._outcomes[state.value] += 1

    @property
    def count(self) -> int:
        return sum(len(v) for v in self._durations.values())

    @property
    def total_seconds(self) -> float:
        return sum(sum(v) for v in self._durations.values())

    def outcome_counts(self) -> dict[str, int]:
        return dict(self._outcomes)

    def slowest(self, n: int = 5) -> list[tuple[str, float]]:
        """Return the ``n`` checks with the longest single execution."""
        peaks = [(cid, max(values)) for cid, values in self._durations.items()]
        peaks.sort(key=lambda item: item[1], reverse=True)
        return peaks[:n]

    def merge(self, other: MetricsCollector) -> MetricsCollector:
        merged = MetricsCollector()
        for source in (self, other):
            for cid, values in source._durations.items():
                merged._durations.setdefault(cid, []).extend(values)
            merged._outcomes.update(source._outcomes)
        return merged

    def summary(self) -> dict[str, Any]:
        per_check = {
            cid: {
                "runs": len(values),
                "total_seconds": round(sum(values), 3),
                "max_seconds": round(max(values), 3),
            }
            for cid, values in self._durations.items()
        }
        return {
            "count": self.count,
            "total_seconds": round(self.total_seconds, 3),
            "outcomes": self.outcome_counts(),
            "checks": per_check,
        }


@dataclass
class ScanResult:
    """Everything a tier run produced. This is the reporting contract."""

    tier: Tier
    findings: list[Finding]
    verdicts: list[BudgetVerdict]
    overall: BudgetVerdict
    elapsed_seconds: float
    runs: list[CheckRun] = field(default_factory=list)
    metrics: MetricsCollector = field(default_factory=MetricsCollector)

    @property
    def failures(self) -> list[CheckRun]:
        return [r for r in self.runs if r.soft_failure]

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "overall": self.overall.to_dict(),
            "findings": [f.to_dict() for f in self.findings],
            "verdicts": [v.to_dict() for v in self.verdicts],
            "failures": [
                {"check_id": r.check_id, "state": r.state.value, "error": r.error}
                for r in self.failures
            ],
            "metrics": self.metrics.summary(),
        }
