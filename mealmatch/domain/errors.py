"""
mealmatch.domain.errors: Error taxonomy.

``DuplicatePreference`` and ``StorageUnavailable`` are separate
classes: the first means "already recorded" and is never a fault, the second
is a retryable storage fault.  Race losses and impossible matches are
outcomes (see ``OutcomeKind``), not exceptions.
"""

from __future__ import annotations

from typing import Optional


class MealMatchError(Exception):
    """Base class for every error raised by the core."""


class DuplicatePreference(MealMatchError):
    """A preference for this (actor, item, group) is already in the ledger."""

    def __init__(self, actor_id: str, item_id: str, group_id: str) -> None:
        super().__init__(
            f"preference already recorded for actor={actor_id} item={item_id} group={group_id}"
        )
        self.actor_id = actor_id
        self.item_id = item_id
        self.group_id = group_id


class UnknownGroup(MealMatchError):
    """The referenced group does not exist."""

    def __init__(self, group_id: str) -> None:
        super().__init__(f"unknown group {group_id}")
        self.group_id = group_id


class ActorNotInGroup(MealMatchError):
    """The actor occupies neither slot of the group."""

    def __init__(self, actor_id: str, group_id: str) -> None:
        super().__init__(f"actor {actor_id} is not a member of group {group_id}")
        self.actor_id = actor_id
        self.group_id = group_id


class GroupMembershipError(MealMatchError):
    """Group bootstrap rejected (bad invite code, full group, self-join)."""


class MatchNotFound(MealMatchError):
    """No match record with the given id."""

    def __init__(self, match_id: str) -> None:
        super().__init__(f"match {match_id} not found")
        self.match_id = match_id


class StorageUnavailable(MealMatchError):
    """The datastore could not be reached.  Safe to retry the whole submission."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class ChannelError(MealMatchError):
    """A realtime subscription failed; resubscribe and refetch to recover."""


class NotificationDeliveryFailure(MealMatchError):
    """The push gateway rejected or did not answer a send."""
