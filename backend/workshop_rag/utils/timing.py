"""Clock helpers and stage timing for retrieval requests."""

from __future__ import annotations

import time
from contextlib import contextmanager
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalise a timestamp to aware UTC; naive values are read as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_ms(start_counter: float) -> float:
    return round((time.perf_counter() - start_counter) * 1000.0, 3)


class StageTimer:
    """Utility to capture stage-level timings for a single query."""

    def __init__(self) -> None:
        self._origin = time.perf_counter()
        self._stages: dict[str, float] = {}

    @contextmanager
    def track(self, name: str):
        start_counter = time.perf_counter()
        try:
            yield
        finally:
            self._stages[name] = elapsed_ms(start_counter)

    def duration(self, name: str) -> float:
        return self._stages.get(name, 0.0)

    @property
    def total_ms(self) -> float:
        return elapsed_ms(self._origin)
