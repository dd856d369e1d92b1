"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

import pytest

from hostdiag.config import Settings
from hostdiag.scan.query import QueryFilter


class FakeBackend:
    """Query backend driven by plain callables; records every call."""

    def __init__(
        self,
        fetch: Callable[[str, QueryFilter, threading.Event], list[Any]] | None = None,
        count: Callable[[str, QueryFilter, threading.Event], int] | None = None,
    ) -> None:
        self._fetch = fetch or (lambda source, flt, cancel: [])
        self._count = count or (lambda source, flt, cancel: 0)
        self.fetch_calls: list[QueryFilter] = []
        self.count_calls: list[QueryFilter] = []
        self.tokens: list[threading.Event] = []

    def fetch(self, source: str, filters: QueryFilter, cancel: threading.Event) -> list[Any]:
        self.fetch_calls.append(filters)
        self.tokens.append(cancel)
        return self._fetch(source, filters, cancel)

    def count(self, source: str, filters: QueryFilter, cancel: threading.Event) -> int:
        self.count_calls.append(filters)
        self.tokens.append(cancel)
        return self._count(source, filters, cancel)


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with sub-second query bounds so timeout tests stay fast."""
    return Settings(
        _env_file=None,
        query_default_timeout=0.5,
        query_timeout_min=0.05,
        query_timeout_max=5.0,
        per_check_timeout=5.0,
    )


@pytest.fixture
def backend_factory() -> type[FakeBackend]:
    return FakeBackend
