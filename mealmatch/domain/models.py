"""
mealmatch.domain.models: Canonical dataclass models.

These are the single source of truth for data structures flowing through
the core.  Storage rows are converted into these at the ``database`` module
boundary so no other layer touches ORM objects.

Import pattern::

    from mealmatch.domain.models import Group, PreferenceEvent, MatchRecord
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from mealmatch.domain.enums import OutcomeKind, SwipeDirection


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Group:
    """
    Two-slot pairing context.  ``first`` is filled at creation, ``second``
    by invite redemption.  A group with an empty slot is incomplete.
    """
    id: str
    first: str
    second: Optional[str] = None
    invite_code: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.second is not None

    def has_member(self, actor_id: str) -> bool:
        return actor_id == self.first or (self.second is not None and actor_id == self.second)

    def partner_of(self, actor_id: str) -> Optional[str]:
        """Return the other slot, or None when the group is incomplete."""
        if actor_id == self.first:
            return self.second
        if actor_id == self.second:
            return self.first
        return None


# ---------------------------------------------------------------------------
# Ledger + matches
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PreferenceEvent:
    """One actor's immutable stance on one item within one group."""
    id: str
    actor_id: str
    item_id: str
    group_id: str
    direction: SwipeDirection
    created_at: datetime

    @property
    def is_like(self) -> bool:
        return self.direction == SwipeDirection.LIKE


@dataclass(frozen=True)
class MatchRecord:
    """Exactly-once record that both actors of a group liked the same item."""
    id: str
    group_id: str
    item_id: str
    is_favorite: bool
    matched_at: datetime

    def to_event(self) -> "MatchEvent":
        return MatchEvent(
            match_id=self.id,
            item_id=self.item_id,
            group_id=self.group_id,
            matched_at=self.matched_at,
        )


@dataclass(frozen=True)
class MatchEvent:
    """Payload pushed to realtime subscribers for a newly created match."""
    match_id: str
    item_id: str
    group_id: str
    matched_at: datetime

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": "match_created",
            "matchId": self.match_id,
            "itemId": self.item_id,
            "groupId": self.group_id,
            "matchedAt": self.matched_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NotificationEnvelope:
    """Ephemeral push message built once per winning match creation."""
    to: str
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    sound: str = "default"

    def to_message(self) -> Dict[str, Any]:
        return {
            "to": self.to,
            "sound": self.sound,
            "title": self.title,
            "body": self.body,
            "data": dict(self.data),
        }


# ---------------------------------------------------------------------------
# Detection outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Outcome:
    """
    What match detection decided for one preference event.

    ``completed_by`` is set only on ``MATCH_CREATED``: it is the actor whose
    event won the insert, so the partner is the notification recipient.
    """
    kind: OutcomeKind
    match: Optional[MatchRecord] = None
    completed_by: Optional[str] = None

    @classmethod
    def no_match(cls) -> "Outcome":
        return cls(OutcomeKind.NO_MATCH_POSSIBLE)

    @classmethod
    def created(cls, match: MatchRecord, completed_by: str) -> "Outcome":
        return cls(OutcomeKind.MATCH_CREATED, match=match, completed_by=completed_by)

    @classmethod
    def lost_race(cls, match: Optional[MatchRecord] = None) -> "Outcome":
        return cls(OutcomeKind.MATCH_LOST_RACE, match=match)

    @classmethod
    def already_exists(cls, match: MatchRecord) -> "Outcome":
        return cls(OutcomeKind.MATCH_ALREADY_EXISTS, match=match)

    @property
    def owns_side_effects(self) -> bool:
        return self.kind == OutcomeKind.MATCH_CREATED


@dataclass(frozen=True)
class SubmissionResult:
    """Return value of one preference submission."""
    preference: PreferenceEvent
    outcome: Outcome
    duplicate: bool = False
