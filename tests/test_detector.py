"""Tests for match detection, including the simultaneous-like race."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from mealmatch import database
from mealmatch.detector import MatchDetector
from mealmatch.domain.enums import OutcomeKind, SwipeDirection
from mealmatch.ledger import PreferenceLedger
from mealmatch.metrics import metrics_snapshot


@pytest.fixture
def ledger(session_factory):
    return PreferenceLedger(session_factory)


@pytest.fixture
def detector(session_factory):
    return MatchDetector(session_factory)


def _count_matches(session_factory, group_id, item_id):
    db = session_factory()
    try:
        return database.count_matches(db, group_id, item_id)
    finally:
        db.close()


def test_dislike_never_matches(ledger, detector, group):
    ledger.record("bob", "pasta", group.id, SwipeDirection.LIKE)
    event = ledger.record("alice", "pasta", group.id, SwipeDirection.DISLIKE)
    assert detector.on_preference_recorded(event).kind == OutcomeKind.NO_MATCH_POSSIBLE


def test_first_like_has_no_partner_like(ledger, detector, group):
    event = ledger.record("alice", "pasta", group.id, SwipeDirection.LIKE)
    outcome = detector.on_preference_recorded(event)
    assert outcome.kind == OutcomeKind.NO_MATCH_POSSIBLE
    assert outcome.match is None


def test_partner_dislike_blocks_match(ledger, detector, group):
    ledger.record("bob", "pasta", group.id, SwipeDirection.DISLIKE)
    event = ledger.record("alice", "pasta", group.id, SwipeDirection.LIKE)
    assert detector.on_preference_recorded(event).kind == OutcomeKind.NO_MATCH_POSSIBLE


def test_incomplete_group_never_matches(ledger, detector, make_group):
    solo = make_group("carol", None)
    event = ledger.record("carol", "pasta", solo.id, SwipeDirection.LIKE)
    assert detector.on_preference_recorded(event).kind == OutcomeKind.NO_MATCH_POSSIBLE


def test_second_like_creates_match(ledger, detector, group, session_factory):
    ledger.record("alice", "pasta", group.id, SwipeDirection.LIKE)
    event = ledger.record("bob", "pasta", group.id, SwipeDirection.LIKE)

    outcome = detector.on_preference_recorded(event)
    assert outcome.kind == OutcomeKind.MATCH_CREATED
    assert outcome.completed_by == "bob"
    assert outcome.match.item_id == "pasta"
    assert outcome.match.is_favorite is False
    assert outcome.owns_side_effects
    assert _count_matches(session_factory, group.id, "pasta") == 1
    assert metrics_snapshot()["matches_created"] == 1


def test_replay_reports_lost_race(ledger, detector, group, session_factory):
    ledger.record("alice", "pasta", group.id, SwipeDirection.LIKE)
    event = ledger.record("bob", "pasta", group.id, SwipeDirection.LIKE)

    first = detector.on_preference_recorded(event)
    again = detector.on_preference_recorded(event)
    assert first.kind == OutcomeKind.MATCH_CREATED
    assert again.kind == OutcomeKind.MATCH_LOST_RACE
    assert not again.owns_side_effects
    assert again.match.id == first.match.id
    assert _count_matches(session_factory, group.id, "pasta") == 1


def test_groups_are_isolated(ledger, detector, make_group):
    g1 = make_group("alice", "bob")
    g2 = make_group("carol", "dave")
    ledger.record("alice", "pasta", g1.id, SwipeDirection.LIKE)
    event = ledger.record("carol", "pasta", g2.id, SwipeDirection.LIKE)
    assert detector.on_preference_recorded(event).kind == OutcomeKind.NO_MATCH_POSSIBLE


@pytest.mark.parametrize("rounds", [5])
def test_concurrent_detection_creates_exactly_one(ledger, detector, group, session_factory, rounds):
    for i in range(rounds):
        item = f"item-{i}"
        events = [
            ledger.record("alice", item, group.id, SwipeDirection.LIKE),
            ledger.record("bob", item, group.id, SwipeDirection.LIKE),
        ]
        barrier = threading.Barrier(2)

        def _detect(event):
            barrier.wait()
            return detector.on_preference_recorded(event)

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(_detect, events))

        kinds = sorted(o.kind.value for o in outcomes)
        assert kinds == sorted([OutcomeKind.MATCH_CREATED.value, OutcomeKind.MATCH_LOST_RACE.value])
        assert outcomes[0].match.id == outcomes[1].match.id
        assert _count_matches(session_factory, group.id, item) == 1

    snap = metrics_snapshot()
    assert snap["matches_created"] == rounds
    assert snap["races_lost"] == rounds


def test_completer_is_the_later_liker_even_when_earlier_event_replays(ledger, detector, group):
    earlier = ledger.record("alice", "pasta", group.id, SwipeDirection.LIKE)
    ledger.record("bob", "pasta", group.id, SwipeDirection.LIKE)

    # Detection replayed for alice's (earlier) like, e.g. on resubmission.
    outcome = detector.on_preference_recorded(earlier)
    assert outcome.kind == OutcomeKind.MATCH_CREATED
    assert outcome.completed_by == "bob"
