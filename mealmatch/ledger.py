"""
Preference Ledger.

Durable, append-only store of preference events.  ``record`` validates group
membership, writes one row and nothing else: it never looks at the partner
and never triggers matching.
"""

from __future__ import annotations

import logging
from typing import Optional, Set

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from mealmatch import database
from mealmatch.domain.enums import SwipeDirection
from mealmatch.domain.errors import ActorNotInGroup, DuplicatePreference, UnknownGroup
from mealmatch.domain.models import Group, PreferenceEvent
from mealmatch.metrics import increment

logger = logging.getLogger(__name__)


class PreferenceLedger:
    """Append-only preference store backed by the ``preferences`` table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory or database.SessionLocal

    def record(
        self,
        actor_id: str,
        item_id: str,
        group_id: str,
        direction: SwipeDirection | str,
    ) -> PreferenceEvent:
        """Durably append one preference event.

        Raises
        ------
        UnknownGroup
            ``group_id`` does not exist.
        ActorNotInGroup
            ``actor_id`` occupies neither slot of the group.
        DuplicatePreference
            A row for (actor, item, group) already exists.  Callers treat
            this as "already recorded", never as a crash.
        StorageUnavailable
            The datastore could not be reached; retryable.
        """
        direction = SwipeDirection(direction)
        db = self._session_factory()
        try:
            with database.storage_errors():
                group = database.get_group(db, group_id)
                if group is None:
                    raise UnknownGroup(group_id)
                if not group.has_member(actor_id):
                    raise ActorNotInGroup(actor_id, group_id)
                try:
                    event = database.insert_preference(db, actor_id, item_id, group_id, direction)
                except IntegrityError as exc:
                    db.rollback()
                    # Only the uniqueness constraint means "already recorded".
                    if database.find_preference(db, actor_id, item_id, group_id) is None:
                        raise
                    logger.info(
                        "Duplicate preference actor=%s item=%s group=%s",
                        actor_id, item_id, group_id,
                    )
                    increment("duplicate_preferences")
                    raise DuplicatePreference(actor_id, item_id, group_id) from exc
        finally:
            db.close()

        increment("preferences_recorded")
        logger.debug(
            "Recorded %s actor=%s item=%s group=%s",
            event.direction.value, actor_id, item_id, group_id,
        )
        return event

    def get(self, actor_id: str, item_id: str, group_id: str) -> Optional[PreferenceEvent]:
        """Return the stored event for (actor, item, group), if any."""
        db = self._session_factory()
        try:
            with database.storage_errors():
                return database.find_preference(db, actor_id, item_id, group_id)
        finally:
            db.close()

    def find_like(self, actor_id: str, item_id: str, group_id: str) -> Optional[PreferenceEvent]:
        db = self._session_factory()
        try:
            with database.storage_errors():
                return database.find_preference(
                    db, actor_id, item_id, group_id, direction=SwipeDirection.LIKE,
                )
        finally:
            db.close()

    def swiped_items(self, actor_id: str, group_id: str) -> Set[str]:
        db = self._session_factory()
        try:
            with database.storage_errors():
                return database.swiped_item_ids(db, actor_id, group_id)
        finally:
            db.close()

    def group(self, group_id: str) -> Optional[Group]:
        db = self._session_factory()
        try:
            with database.storage_errors():
                return database.get_group(db, group_id)
        finally:
            db.close()
