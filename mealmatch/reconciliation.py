"""
Client-side match cache.

Keeps what a client shows between round trips: optimistic preferences that
have not been confirmed by the ledger yet, plus the confirmed match list fed
by realtime events and authoritative refetches.  Nothing here is ever used
to decide uniqueness; the server owns that.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from mealmatch.domain.enums import SubscriptionState, SwipeDirection
from mealmatch.domain.models import MatchEvent, MatchRecord, SubmissionResult

logger = logging.getLogger(__name__)


@dataclass
class PendingPreference:
    actor_id: str
    item_id: str
    direction: SwipeDirection


@dataclass
class CachedMatch:
    match_id: str
    item_id: str
    group_id: str
    matched_at: datetime
    is_favorite: bool = False


class MatchCache:
    """Per-group view of pending preferences and confirmed matches."""

    def __init__(self, group_id: str):
        self.group_id = group_id
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingPreference] = {}
        self._matches: Dict[str, CachedMatch] = {}
        self.needs_refetch = False

    # -- optimistic preferences ------------------------------------------

    def apply_optimistic(self, actor_id: str, item_id: str, direction: SwipeDirection | str) -> PendingPreference:
        pending = PendingPreference(actor_id, item_id, SwipeDirection(direction))
        with self._lock:
            self._pending[item_id] = pending
        return pending

    def confirm(self, result: SubmissionResult) -> None:
        """Settle a pending preference; duplicates count as confirmation."""
        item_id = result.preference.item_id
        with self._lock:
            self._pending.pop(item_id, None)
        if result.outcome.match is not None:
            self._upsert(result.outcome.match.to_event(), result.outcome.match.is_favorite)

    def rollback(self, item_id: str) -> Optional[PendingPreference]:
        """Drop a pending preference the ledger rejected."""
        with self._lock:
            removed = self._pending.pop(item_id, None)
        if removed is not None:
            logger.debug("Rolled back optimistic %s on item %s", removed.direction.value, item_id)
        return removed

    def is_pending(self, item_id: str) -> bool:
        return item_id in self._pending

    @property
    def pending(self) -> List[PendingPreference]:
        with self._lock:
            return list(self._pending.values())

    # -- confirmed matches -------------------------------------------------

    def _upsert(self, event: MatchEvent, is_favorite: bool = False) -> bool:
        with self._lock:
            if event.item_id in self._matches:
                return False
            self._matches[event.item_id] = CachedMatch(
                match_id=event.match_id,
                item_id=event.item_id,
                group_id=event.group_id,
                matched_at=event.matched_at,
                is_favorite=is_favorite,
            )
            return True

    def apply_realtime(self, event: MatchEvent) -> bool:
        """Add a match pushed over the realtime channel.  Returns False if already known."""
        if event.group_id != self.group_id:
            return False
        return self._upsert(event)

    def apply_refetch(self, matches: Iterable[MatchRecord]) -> None:
        """Replace the confirmed set with the authoritative list."""
        fresh = {
            m.item_id: CachedMatch(
                match_id=m.id,
                item_id=m.item_id,
                group_id=m.group_id,
                matched_at=m.matched_at,
                is_favorite=m.is_favorite,
            )
            for m in matches
            if m.group_id == self.group_id
        }
        with self._lock:
            self._matches = fresh
            self.needs_refetch = False

    def on_subscription_state(self, state: SubscriptionState) -> None:
        """Any gap in the realtime stream means events may have been missed."""
        if state.is_terminal:
            self.needs_refetch = True

    def has_match(self, item_id: str) -> bool:
        return item_id in self._matches

    @property
    def matches(self) -> List[CachedMatch]:
        with self._lock:
            items = list(self._matches.values())
        items.sort(key=lambda m: m.matched_at, reverse=True)
        return items
