"""
mealmatch.domain.enums: All enumerations used across the service.

Keep this module import-clean (stdlib only).
"""

from enum import Enum


class SwipeDirection(str, Enum):
    """An actor's stance on one item."""
    LIKE    = "like"
    DISLIKE = "dislike"


class OutcomeKind(str, Enum):
    """
    Result of running match detection for one recorded preference.

    Only ``MATCH_CREATED`` owns downstream effects (realtime publish and
    partner notification).  Every other kind is a non-error no-op.
    """
    NO_MATCH_POSSIBLE    = "no_match_possible"
    MATCH_ALREADY_EXISTS = "match_already_exists"
    MATCH_CREATED        = "match_created"
    MATCH_LOST_RACE      = "match_lost_race"


class SubscriptionState(str, Enum):
    """
    Connection state of one realtime subscription.

    Connecting -> Subscribed -> {Closed, Errored}.  Closed and Errored are
    terminal; a fresh ``subscribe`` call is required to receive again.
    """
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CLOSED     = "closed"
    ERRORED    = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionState.CLOSED, SubscriptionState.ERRORED)
