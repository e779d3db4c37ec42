"""
Notification Dispatcher.

Called only on the detector's winning path.  The recipient is the partner of
the actor whose like completed the match, i.e. the one who liked the item
first.  One envelope, one gateway call, no retry: every failure is logged and
discarded, and nothing here can fail the match itself.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from mealmatch import config, database
from mealmatch.core.logging import mask_token
from mealmatch.domain.errors import NotificationDeliveryFailure, StorageUnavailable
from mealmatch.domain.models import Group, MatchRecord, NotificationEnvelope, Outcome
from mealmatch.metrics import increment
from mealmatch.notifications.gateway import PushGateway

logger = logging.getLogger(__name__)

ItemLabelResolver = Callable[[str], str]
TokenLookup = Callable[[str], Optional[str]]


class NotificationDispatcher:
    """Builds and submits the single push envelope for a created match."""

    def __init__(
        self,
        gateway: PushGateway,
        session_factory: Optional[sessionmaker] = None,
        item_label: Optional[ItemLabelResolver] = None,
        token_lookup: Optional[TokenLookup] = None,
        title: str = config.MATCH_NOTIFICATION_TITLE,
    ) -> None:
        self._gateway = gateway
        self._session_factory = session_factory or database.SessionLocal
        self._item_label = item_label or (lambda item_id: item_id)
        self._token_lookup = token_lookup or self._lookup_token
        self._title = title

    def _lookup_token(self, actor_id: str) -> Optional[str]:
        db = self._session_factory()
        try:
            with database.storage_errors():
                return database.get_push_token(db, actor_id)
        finally:
            db.close()

    def build_envelope(self, token: str, match: MatchRecord) -> NotificationEnvelope:
        label = self._item_label(match.item_id) or match.item_id
        return NotificationEnvelope(
            to=token,
            title=self._title,
            body=f'You both liked "{label}"! Time to add it to your meal plan.',
            data={
                "type": "match",
                "matchId": match.id,
                "itemId": match.item_id,
                "groupId": match.group_id,
            },
        )

    async def dispatch(self, group: Group, outcome: Outcome) -> bool:
        """Send the partner notification for a ``MATCH_CREATED`` outcome.

        Returns True when the gateway accepted the envelope.  Never raises.
        """
        if not outcome.owns_side_effects or outcome.match is None or outcome.completed_by is None:
            logger.debug("dispatch called without a winning outcome (%s); ignoring", outcome.kind.value)
            return False

        recipient = group.partner_of(outcome.completed_by)
        if recipient is None:
            return False

        try:
            token = await asyncio.to_thread(self._token_lookup, recipient)
        except StorageUnavailable as exc:
            logger.warning("Push endpoint lookup failed for %s: %s", recipient, exc)
            increment("notifications_failed")
            return False

        if not token:
            logger.info(
                "No push endpoint for %s; skipping notification for match %s",
                recipient, outcome.match.id,
            )
            return False

        envelope = self.build_envelope(token, outcome.match)
        try:
            await self._gateway.send(envelope)
        except NotificationDeliveryFailure as exc:
            increment("notifications_failed")
            logger.warning(
                "Match notification to %s (%s) failed: %s",
                recipient, mask_token(token), exc,
            )
            return False
        except Exception:
            increment("notifications_failed")
            logger.exception("Unexpected error sending match notification to %s", recipient)
            return False

        increment("notifications_sent")
        logger.info("Match notification sent to %s for match %s", recipient, outcome.match.id)
        return True
