"""Resilient query wrapper for slow or flaky OS data sources.

``ResilientQuery.query`` never raises. It runs the backend call on a worker
thread with a hard deadline, falls back to a count-only query when access
is denied, retries once on a narrower recent window when the first answer
is empty, and encodes every failure in the returned :class:`QueryResult`.

Backends receive a cancellation event and must stop when it is set; the
wrapper sets it on timeout, on caller cancellation and when it returns.
"""

from __future__ import annotations

import logging
import math
import re
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, TypeVar

from hostdiag.config import Settings, settings as default_settings
from hostdiag.scan.models import QueryReason, QueryResult
from hostdiag.shell import run_command

logger = logging.getLogger(__name__)

T = TypeVar("T")

_POLL_INTERVAL = 0.05


# ── Errors ───────────────────────────────────────────────────────────────────


class QueryError(Exception):
    """Raised by a backend when a query cannot be answered."""


class QueryAccessDenied(QueryError):
    """The caller is not authorized to read the source."""


class QueryNotFound(QueryError):
    """The source does not exist on this host."""


class _Expired(Exception):
    pass


class _Cancelled(Exception):
    pass


# ── Filters ──────────────────────────────────────────────────────────────────


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class QueryFilter:
    """Time window plus backend-specific criteria.

    Null or unparseable bounds are dropped rather than rejected, so a
    ``start=None`` filter behaves exactly like one with no start at all.
    """

    start: datetime | None = None
    end: datetime | None = None
    criteria: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(cls, filters: QueryFilter | Mapping[str, Any] | None) -> QueryFilter:
        if filters is None:
            return cls()
        if isinstance(filters, QueryFilter):
            return cls(
                start=_coerce_datetime(filters.start),
                end=_coerce_datetime(filters.end),
                criteria={k: v for k, v in filters.criteria.items() if v is not None},
            )
        criteria = {
            k: v for k, v in filters.items()
            if k not in ("start", "end") and v is not None
        }
        return cls(
            start=_coerce_datetime(filters.get("start")),
            end=_coerce_datetime(filters.get("end")),
            criteria=criteria,
        )

    def narrowed(self, days: int, now: datetime) -> QueryFilter | None:
        """Return a window covering only the last ``days`` days.

        ``None`` when the current window is already that narrow, or when
        the end bound lies before the narrowed start.
        """
        cutoff = now - timedelta(days=days)
        if self.start is not None and self.start >= cutoff:
            return None
        if self.end is not None and self.end <= cutoff:
            return None
        return QueryFilter(start=cutoff, end=self.end, criteria=dict(self.criteria))


class QueryBackend(Protocol):
    def fetch(self, source: str, filters: QueryFilter, cancel: threading.Event) -> list[Any]:
        ...

    def count(self, source: str, filters: QueryFilter, cancel: threading.Event) -> int:
        ...


# ── Wrapper ──────────────────────────────────────────────────────────────────


class ResilientQuery:
    """Runs backend queries with timeout, fallback and narrowed retry."""

    def __init__(
        self,
        backend: QueryBackend,
        settings: Settings | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.backend = backend
        self.settings = settings or default_settings
        self._now = now or (lambda: datetime.now(timezone.utc))

    def query(
        self,
        source: str,
        filters: QueryFilter | Mapping[str, Any] | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> QueryResult:
        """Query ``source`` and always return a QueryResult."""
        try:
            timeout = self._clamp_timeout(timeout)
            flt = QueryFilter.build(filters)
        except Exception as e:
            return QueryResult.failed(QueryReason.OTHER_ERROR, f"{source}: invalid query: {e}")

        deadline = time.monotonic() + timeout
        token = threading.Event()
        try:
            rows = self._call(self.backend.fetch, source, flt, deadline, token, cancel)
            if rows:
                return QueryResult.ok(rows)
            return self._retry_narrowed(source, flt, deadline, token, cancel)
        except _Expired:
            logger.warning("Query %s timed out after %.1fs", source, timeout)
            return QueryResult.failed(
                QueryReason.TIMEOUT, f"{source}: query timed out after {timeout:g}s",
            )
        except _Cancelled:
            return QueryResult.failed(QueryReason.TIMEOUT, f"{source}: query cancelled by caller")
        except (QueryAccessDenied, PermissionError) as e:
            logger.info("Access denied reading %s, trying summary count: %s", source, e)
            return self._count_fallback(source, flt, deadline, token, cancel, e)
        except (QueryNotFound, FileNotFoundError) as e:
            return QueryResult.failed(QueryReason.NOT_FOUND, f"{source}: not found: {e}")
        except Exception as e:
            logger.warning("Query %s failed: %s: %s", source, type(e).__name__, e)
            return QueryResult.failed(
                QueryReason.OTHER_ERROR, f"{source}: {type(e).__name__}: {e}",
            )
        finally:
            token.set()

    # ------------------------------------------------------------------
    def _clamp_timeout(self, timeout: float | None) -> float:
        default = self.settings.query_default_timeout
        if timeout is None:
            timeout = default
        elif not math.isfinite(float(timeout)):
            logger.warning("Query timeout %s is not finite, using %ss", timeout, default)
            timeout = default
        lo, hi = self.settings.query_timeout_min, self.settings.query_timeout_max
        clamped = min(max(float(timeout), lo), hi)
        if clamped != timeout:
            logger.warning("Query timeout %ss outside [%s, %s], using %ss", timeout, lo, hi, clamped)
        return clamped

    def _retry_narrowed(
        self,
        source: str,
        flt: QueryFilter,
        deadline: float,
        token: threading.Event,
        cancel: threading.Event | None,
    ) -> QueryResult:
        days = self.settings.query_retry_window_days
        narrowed = flt.narrowed(days, self._now())
        if narrowed is None:
            return QueryResult.ok([], count=0)

        logger.debug("Query %s returned nothing, retrying with last %d days", source, days)
        rows = self._call(self.backend.fetch, source, narrowed, deadline, token, cancel)
        if rows:
            return QueryResult.ok(rows, note=f"results from the last {days} days only")
        return QueryResult.ok([], count=0, note=f"empty, also empty over the last {days} days")

    def _count_fallback(
        self,
        source: str,
        flt: QueryFilter,
        deadline: float,
        token: threading.Event,
        cancel: threading.Event | None,
        cause: BaseException,
    ) -> QueryResult:
        try:
            count = int(self._call(self.backend.count, source, flt, deadline, token, cancel))
            return QueryResult.failed(QueryReason.ACCESS_DENIED, "summary only", count=max(count, 0))
        except (_Expired, _Cancelled):
            return QueryResult.failed(
                QueryReason.ACCESS_DENIED, f"{source}: access denied; summary query timed out",
            )
        except Exception as e:
            return QueryResult.failed(
                QueryReason.ACCESS_DENIED, f"{source}: access denied ({cause}); summary failed: {e}",
            )

    def _call(
        self,
        fn: Callable[[str, QueryFilter, threading.Event], T],
        source: str,
        flt: QueryFilter,
        deadline: float,
        token: threading.Event,
        cancel: threading.Event | None,
    ) -> T:
        """Run one backend call on a daemon thread and wait for it.

        A hung call is abandoned: the token is set so the backend can stop,
        and the wait ends at the deadline either way.
        """
        future: Future[T] = Future()

        def _target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(source, flt, token))
            except Exception as e:
                future.set_exception(e)

        worker = threading.Thread(target=_target, name=f"query-{source}", daemon=True)
        worker.start()

        while True:
            if cancel is not None and cancel.is_set():
                token.set()
                raise _Cancelled()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                token.set()
                raise _Expired()
            try:
                return future.result(timeout=min(_POLL_INTERVAL, remaining))
            except FutureTimeout:
                continue


# ── Windows event log backend ────────────────────────────────────────────────


_ACCESS_DENIED = re.compile(r"access is denied|unauthorized", re.IGNORECASE)
_CHANNEL_MISSING = re.compile(r"could not be found|15007", re.IGNORECASE)
_RECORD_COUNT = re.compile(r"numberOfLogRecords:\s*(\d+)")


def _xpath(filters: QueryFilter) -> str:
    clauses = []
    level = filters.criteria.get("level")
    if level is not None:
        clauses.append(f"Level={int(level)}")
    event_ids = filters.criteria.get("event_ids") or []
    if event_ids:
        clauses.append("(" + " or ".join(f"EventID={int(e)}" for e in event_ids) + ")")
    time_terms = []
    if filters.start is not None:
        time_terms.append(f"@SystemTime>='{_utc(filters.start)}'")
    if filters.end is not None:
        time_terms.append(f"@SystemTime<='{_utc(filters.end)}'")
    if time_terms:
        clauses.append("TimeCreated[" + " and ".join(time_terms) + "]")
    if not clauses:
        return "*"
    return "*[System[" + " and ".join(clauses) + "]]"


def _utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def parse_wevtutil_text(output: str) -> list[dict[str, str]]:
    """Split ``wevtutil qe /f:text`` output into one dict per event."""
    events: list[dict[str, str]] = []
    current: dict[str, str] | None = None
    for line in output.splitlines():
        if line.startswith("Event["):
            current = {}
            events.append(current)
            continue
        if current is None or ":" not in line:
            continue
        key, _, value = line.strip().partition(":")
        if key and key not in current:
            current[key] = value.strip()
    return events


class WevtutilBackend:
    """Reads Windows event log channels through ``wevtutil``."""

    def __init__(
        self,
        executable: str = "wevtutil.exe",
        max_events: int = 200,
        command_timeout: float | None = None,
    ) -> None:
        self.executable = executable
        self.max_events = max_events
        self.command_timeout = command_timeout or default_settings.query_timeout_max

    def fetch(self, source: str, filters: QueryFilter, cancel: threading.Event) -> list[dict[str, str]]:
        cmd = [
            self.executable, "qe", source,
            f"/q:{_xpath(filters)}", "/f:text", "/rd:true", f"/c:{self.max_events}",
        ]
        return parse_wevtutil_text(self._run(cmd, source, cancel))

    def count(self, source: str, filters: QueryFilter, cancel: threading.Event) -> int:
        output = self._run([self.executable, "gli", source], source, cancel)
        match = _RECORD_COUNT.search(output)
        if not match:
            raise QueryError(f"No record count in wevtutil output for {source}")
        return int(match.group(1))

    def _run(self, cmd: list[str], source: str, cancel: threading.Event) -> str:
        result = run_command(cmd, self.command_timeout, cancel=cancel)
        if result.ok:
            return result.stdout
        if result.not_found:
            raise QueryError(f"wevtutil unavailable: {result.stderr}")
        if result.cancelled or result.timed_out:
            raise QueryError(result.stderr)
        detail = (result.stderr or result.stdout).strip()
        if result.exit_code == 5 or _ACCESS_DENIED.search(detail):
            raise QueryAccessDenied(f"{source}: {detail}")
        if result.exit_code == 15007 or _CHANNEL_MISSING.search(detail):
            raise QueryNotFound(f"{source}: {detail}")
        raise QueryError(f"wevtutil exited {result.exit_code}: {detail}")
