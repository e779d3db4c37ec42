"""
Match Detector.

Consumes one freshly recorded preference event and decides whether a match
now exists.  Creation goes through ``database.insert_match_if_absent``: the
``(group_id, item_id)`` unique constraint picks exactly one winner, so when
both actors like the same item at the same moment only one call reports
``MATCH_CREATED`` and owns the realtime publish and the notification.  The
other gets ``MATCH_LOST_RACE`` and must stay silent.

There is no application lock; groups never share state, and within a group
the store's constraint is the only arbiter.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import sessionmaker

from mealmatch import database
from mealmatch.domain.enums import SwipeDirection
from mealmatch.domain.models import Outcome, PreferenceEvent
from mealmatch.metrics import increment

logger = logging.getLogger(__name__)


class MatchDetector:
    """Turns recorded likes into exactly-once match records."""

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory or database.SessionLocal

    def on_preference_recorded(self, event: PreferenceEvent) -> Outcome:
        """Run detection for ``event``.

        Returns an ``Outcome``; raises ``StorageUnavailable`` when the store
        cannot be reached.  Retrying with the same event is always safe.
        """
        if event.direction == SwipeDirection.DISLIKE:
            return Outcome.no_match()

        db = self._session_factory()
        try:
            with database.storage_errors():
                group = database.get_group(db, event.group_id)
                if group is None or not group.is_complete:
                    return Outcome.no_match()

                partner = group.partner_of(event.actor_id)
                if partner is None:
                    return Outcome.no_match()

                partner_like = database.find_preference(
                    db, partner, event.item_id, event.group_id, direction=SwipeDirection.LIKE,
                )
        finally:
            db.close()

        if partner_like is None:
            # Partner has not liked it (yet); their own like will complete it.
            return Outcome.no_match()

        # Fresh session so no read snapshot is held while competing for the insert.
        db = self._session_factory()
        try:
            with database.storage_errors():
                match, inserted = database.insert_match_if_absent(db, event.group_id, event.item_id)
        finally:
            db.close()

        if inserted:
            completed_by = self._completer(event, partner_like)
            increment("matches_created")
            logger.info(
                "Match created group=%s item=%s match=%s completed_by=%s",
                event.group_id, event.item_id, match.id, completed_by,
            )
            return Outcome.created(match, completed_by=completed_by)

        increment("races_lost")
        logger.info(
            "Match already present group=%s item=%s match=%s; suppressing side effects",
            event.group_id, event.item_id, match.id,
        )
        return Outcome.lost_race(match)

    @staticmethod
    def _completer(event: PreferenceEvent, partner_like: PreferenceEvent) -> str:
        """The actor whose like was written last completed the match.

        Detection can run for the earlier like too (a resubmission replays
        detection after a fault), so the event being processed is not
        necessarily the completing one.  Equal timestamps keep the event's actor.
        """
        if partner_like.created_at > event.created_at:
            return partner_like.actor_id
        return event.actor_id
