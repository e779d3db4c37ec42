from __future__ import annotations

import threading

import pytest

from mealmatch.metrics import COUNTERS, increment, metrics_snapshot, reset_metrics_for_tests


def test_snapshot_starts_at_zero():
    reset_metrics_for_tests()
    snap = metrics_snapshot()
    assert set(snap) == set(COUNTERS)
    assert all(v == 0 for v in snap.values())


def test_increment_and_amount():
    increment("matches_created")
    increment("notifications_sent", 3)
    snap = metrics_snapshot()
    assert snap["matches_created"] == 1
    assert snap["notifications_sent"] == 3


def test_unknown_counter_rejected():
    with pytest.raises(KeyError):
        increment("not_a_metric")


def test_increment_is_thread_safe():
    def _worker():
        for _ in range(1000):
            increment("preferences_recorded")

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert metrics_snapshot()["preferences_recorded"] == 8000
