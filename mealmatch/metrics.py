"""
Lightweight runtime metrics for health/observability.

Uses in-process counters so it works without extra dependencies.
"""

from __future__ import annotations

import threading
from typing import Dict

COUNTERS = (
    "preferences_recorded",
    "duplicate_preferences",
    "matches_created",
    "races_lost",
    "realtime_events_published",
    "notifications_sent",
    "notifications_failed",
    "storage_faults",
)


class _RuntimeMetrics:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {name: 0 for name in COUNTERS}

    def increment(self, name: str, amount: int = 1) -> None:
        if name not in self._counts:
            raise KeyError(f"unknown metric {name}")
        with self._lock:
            self._counts[name] += max(0, int(amount))

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def reset_for_tests(self) -> None:
        with self._lock:
            for name in self._counts:
                self._counts[name] = 0


_METRICS = _RuntimeMetrics()


def increment(name: str, amount: int = 1) -> None:
    _METRICS.increment(name, amount)


def metrics_snapshot() -> Dict[str, int]:
    return _METRICS.snapshot()


def reset_metrics_for_tests() -> None:
    _METRICS.reset_for_tests()
