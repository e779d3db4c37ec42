"""
Pytest configuration and shared fixtures.

Fixtures available to all tests:
  • engine / session_factory : fresh file-backed SQLite per test (WAL, busy_timeout)
  • make_group(first, second): create (and optionally complete) a two-slot group
  • group                    : complete alice/bob group
  • gateway / dispatcher     : recording push gateway and a dispatcher over it
  • channel / service        : realtime channel and the full submission pipeline
"""

from __future__ import annotations

import os
import sys
from typing import List, Optional

import pytest

# Ensure the project root is on the path so all mealmatch imports resolve.
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from mealmatch import database
from mealmatch.domain.errors import NotificationDeliveryFailure
from mealmatch.domain.models import NotificationEnvelope
from mealmatch.metrics import reset_metrics_for_tests
from mealmatch.notifications.dispatcher import NotificationDispatcher
from mealmatch.notifications.gateway import PushGateway
from mealmatch.service import PreferenceService
from mealmatch.websocket import RealtimeChannel

ALICE = "alice"
BOB = "bob"


class RecordingGateway(PushGateway):
    """Keeps every envelope it is handed; optionally fails every send."""

    def __init__(self, fail: bool = False):
        self.sent: List[NotificationEnvelope] = []
        self.fail = fail

    async def send(self, envelope: NotificationEnvelope) -> None:
        self.sent.append(envelope)
        if self.fail:
            raise NotificationDeliveryFailure("gateway down")


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics_for_tests()
    yield
    reset_metrics_for_tests()


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

@pytest.fixture
def engine(tmp_path):
    eng = database.build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    database.init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return database.build_session_factory(engine)


@pytest.fixture
def make_group(session_factory):
    def _factory(first: str = ALICE, second: Optional[str] = BOB):
        db = session_factory()
        try:
            group = database.create_group(db, first)
            if second is not None:
                group = database.join_group(db, group.invite_code, second)
            return group
        finally:
            db.close()
    return _factory


@pytest.fixture
def group(make_group):
    return make_group(ALICE, BOB)


@pytest.fixture
def set_token(session_factory):
    def _set(actor_id: str, token: Optional[str]):
        db = session_factory()
        try:
            database.set_push_token(db, actor_id, token)
        finally:
            db.close()
    return _set


# ---------------------------------------------------------------------------
# Pipeline collaborators
# ---------------------------------------------------------------------------

@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def dispatcher(gateway, session_factory):
    return NotificationDispatcher(gateway, session_factory=session_factory)


@pytest.fixture
def channel():
    return RealtimeChannel(queue_size=10)


@pytest.fixture
def service(channel, dispatcher, session_factory):
    return PreferenceService(channel, dispatcher, session_factory=session_factory)
