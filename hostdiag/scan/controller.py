"""Job controller: runs a tier's checks with bounded concurrency.

Each check moves PENDING -> RUNNING -> COMPLETED | FAILED | TIMED_OUT.
Checks are dispatched FIFO in list order onto a per-call pool of daemon
worker threads, at most ``max_concurrency`` running at once. A check that
outlives ``per_check_timeout`` has its cancel event set and is abandoned:
its slot is released and a late result is discarded. Exceptions and
timeouts are soft failures, recorded on the run and never raised.

Sequential mode runs the same list inline, one check at a time, without
worker threads; a timer sets the check's cancel event at its deadline.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from hostdiag.config import Settings, settings as default_settings
from hostdiag.scan.budget import evaluate
from hostdiag.scan.models import (
    BudgetSeverity,
    BudgetVerdict,
    CheckRun,
    CheckState,
    Finding,
    MetricsCollector,
    ScanResult,
    Tier,
)
from hostdiag.scan.query import ResilientQuery, WevtutilBackend
from hostdiag.scan.registry import CheckContext, CheckFunc, CheckRegistry

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    index: int
    func: CheckFunc
    ctx: CheckContext
    run: CheckRun
    started: float = 0.0

    @property
    def deadline(self) -> float:
        if self.ctx.deadline is None:
            raise RuntimeError(f"check {self.run.check_id} has not been started")
        return self.ctx.deadline


@dataclass
class _Outcome:
    index: int
    elapsed: float
    finding: Any = None
    error: BaseException | None = None


@dataclass
class _WorkerPool:
    """Daemon worker threads owned by a single ``run_tier`` call."""

    results: queue.Queue[_Outcome] = field(default_factory=queue.Queue)
    _threads: dict[int, threading.Thread] = field(default_factory=dict)

    def submit(self, job: _Job) -> None:
        thread = threading.Thread(
            target=self._work, args=(job,), name=f"check-{job.run.check_id}", daemon=True,
        )
        self._threads[job.index] = thread
        thread.start()

    def _work(self, job: _Job) -> None:
        t0 = time.perf_counter()
        try:
            finding = job.func(job.ctx)
        except Exception as e:
            self.results.put(_Outcome(job.index, time.perf_counter() - t0, error=e))
            return
        self.results.put(_Outcome(job.index, time.perf_counter() - t0, finding=finding))

    def shutdown(self, abandoned: Sequence[_Job]) -> None:
        for job in abandoned:
            job.ctx.cancel.set()
        alive = [t.name for t in self._threads.values() if t.is_alive()]
        if alive:
            logger.warning(
                "%d abandoned check thread(s) still winding down: %s",
                len(alive), ", ".join(alive),
            )
        self._threads.clear()


class JobController:
    """Executes checks for a tier and aggregates findings and verdicts."""

    def __init__(
        self,
        registry: CheckRegistry,
        settings: Settings | None = None,
        query: ResilientQuery | None = None,
        on_run: Callable[[CheckRun], Any] | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or default_settings
        self.query = query or ResilientQuery(WevtutilBackend(), self.settings)
        self.on_run = on_run

    def run_tier(
        self,
        tier: Tier | str,
        checks: Sequence[str] | None = None,
        *,
        sequential: bool = False,
        max_concurrency: int | None = None,
        per_check_timeout: float | None = None,
    ) -> ScanResult:
        """Run ``checks`` (default: the registry's list for ``tier``).

        Raises only for caller errors: unknown tier, unknown check id,
        non-positive concurrency or timeout.
        """
        tier = Tier.parse(tier)
        workers = max_concurrency if max_concurrency is not None else self.settings.concurrency_for(tier)
        timeout = per_check_timeout if per_check_timeout is not None else self.settings.per_check_timeout
        if workers < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {workers}")
        if timeout <= 0:
            raise ValueError(f"per_check_timeout must be > 0, got {timeout}")

        check_ids = list(checks) if checks is not None else self.registry.get_checks(tier)
        jobs = [self._make_job(i, cid, tier) for i, cid in enumerate(check_ids)]

        logger.info(
            "Running %d %s check(s) %s",
            len(jobs), tier.value,
            "sequentially" if sequential else f"with {workers} worker(s)",
        )

        metrics = MetricsCollector()
        findings: list[Finding] = []
        t0 = time.perf_counter()
        if sequential:
            self._run_sequential(jobs, tier, timeout, findings, metrics)
        else:
            self._run_parallel(jobs, tier, workers, timeout, findings, metrics)
        elapsed = time.perf_counter() - t0

        overall = evaluate(f"tier:{tier.value}", elapsed, tier, self.settings.budgets())
        self._log_verdict(overall)

        runs = [job.run for job in jobs]
        failed = sum(1 for r in runs if r.soft_failure)
        logger.info(
            "Tier %s finished in %.2fs: %d finding(s), %d soft failure(s)",
            tier.value, elapsed, len(findings), failed,
        )

        return ScanResult(
            tier=tier,
            findings=findings,
            verdicts=[r.verdict for r in runs if r.verdict is not None],
            overall=overall,
            elapsed_seconds=elapsed,
            runs=runs,
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    def _make_job(self, index: int, check_id: str, tier: Tier) -> _Job:
        definition = self.registry.get(check_id)
        ctx = CheckContext(
            check_id=check_id,
            tier=tier,
            category=definition.category,
            query_wrapper=self.query,
            settings=self.settings,
        )
        return _Job(index=index, func=definition.func, ctx=ctx, run=CheckRun(check_id=check_id))

    def _start(self, job: _Job, timeout: float) -> None:
        job.started = time.monotonic()
        job.ctx.deadline = job.started + timeout
        job.run.state = CheckState.RUNNING
        logger.debug("Dispatching check %s", job.run.check_id)

    def _run_parallel(
        self,
        jobs: list[_Job],
        tier: Tier,
        workers: int,
        timeout: float,
        findings: list[Finding],
        metrics: MetricsCollector,
    ) -> None:
        pool = _WorkerPool()
        pending = deque(jobs)
        running: dict[int, _Job] = {}
        abandoned: list[_Job] = []

        try:
            while pending or running:
                while pending and len(running) < workers:
                    job = pending.popleft()
                    self._start(job, timeout)
                    running[job.index] = job
                    pool.submit(job)

                wait = max(0.0, min(j.deadline for j in running.values()) - time.monotonic())
                try:
                    outcome = pool.results.get(timeout=wait)
                except queue.Empty:
                    outcome = None

                if outcome is not None:
                    job = running.pop(outcome.index, None)
                    if job is None:
                        logger.debug("Discarding late result of abandoned check #%d", outcome.index)
                    else:
                        self._complete(job, outcome, tier, timeout, findings, metrics)

                now = time.monotonic()
                for index, job in list(running.items()):
                    if now >= job.deadline:
                        del running[index]
                        job.ctx.cancel.set()
                        abandoned.append(job)
                        self._finish(
                            job, tier, CheckState.TIMED_OUT, now - job.started, metrics,
                            error=f"timed out after {timeout:g}s",
                        )
        finally:
            pool.shutdown(abandoned + list(running.values()))

    def _run_sequential(
        self,
        jobs: list[_Job],
        tier: Tier,
        timeout: float,
        findings: list[Finding],
        metrics: MetricsCollector,
    ) -> None:
        for job in jobs:
            self._start(job, timeout)
            alarm = threading.Timer(timeout, job.ctx.cancel.set)
            alarm.daemon = True
            alarm.start()
            t0 = time.perf_counter()
            try:
                finding = job.func(job.ctx)
            except Exception as e:
                outcome = _Outcome(job.index, time.perf_counter() - t0, error=e)
            else:
                outcome = _Outcome(job.index, time.perf_counter() - t0, finding=finding)
            finally:
                alarm.cancel()
            self._complete(job, outcome, tier, timeout, findings, metrics)

    def _complete(
        self,
        job: _Job,
        outcome: _Outcome,
        tier: Tier,
        timeout: float,
        findings: list[Finding],
        metrics: MetricsCollector,
    ) -> None:
        if outcome.elapsed > timeout or job.ctx.cancelled:
            job.ctx.cancel.set()
            self._finish(
                job, tier, CheckState.TIMED_OUT, outcome.elapsed, metrics,
                error=f"timed out after {timeout:g}s",
            )
            return
        if outcome.error is not None:
            self._finish(
                job, tier, CheckState.FAILED, outcome.elapsed, metrics,
                error=f"{type(outcome.error).__name__}: {outcome.error}",
            )
            return
        if outcome.finding is not None and not isinstance(outcome.finding, Finding):
            self._finish(
                job, tier, CheckState.FAILED, outcome.elapsed, metrics,
                error=f"returned {type(outcome.finding).__name__}, expected Finding or None",
            )
            return

        job.run.finding = outcome.finding
        if outcome.finding is not None:
            findings.append(outcome.finding)
        self._finish(job, tier, CheckState.COMPLETED, outcome.elapsed, metrics)

    def _finish(
        self,
        job: _Job,
        tier: Tier,
        state: CheckState,
        elapsed: float,
        metrics: MetricsCollector,
        error: str = "",
    ) -> None:
        run = job.run
        run.state = state
        run.elapsed_seconds = elapsed
        run.error = error
        run.verdict = evaluate(run.check_id, elapsed, tier, self.settings.budgets())
        metrics.record(run.check_id, elapsed, state)

        if state is CheckState.COMPLETED:
            logger.debug(
                "Check %s completed in %.2fs (%s)",
                run.check_id, elapsed, "finding" if run.finding else "no issue",
            )
        else:
            logger.warning("Check %s %s after %.2fs: %s", run.check_id, state.value, elapsed, error)
        self._log_verdict(run.verdict)

        if self.on_run:
            try:
                self.on_run(run)
            except Exception:
                logger.exception("on_run callback error")

    @staticmethod
    def _log_verdict(verdict: BudgetVerdict) -> None:
        if verdict.severity is BudgetSeverity.CRITICAL:
            logger.error(
                "%s exceeded its %s budget: %.2fs > %.0fs",
                verdict.check_name, verdict.tier.value, verdict.elapsed_seconds, verdict.budget_seconds,
            )
        elif verdict.severity is BudgetSeverity.WARNING:
            logger.warning(
                "%s is close to its %s budget: %.2fs of %.0fs",
                verdict.check_name, verdict.tier.value, verdict.elapsed_seconds, verdict.budget_seconds,
            )
