"""
Preference submission pipeline.

The strict order for one submission:
1) Ledger write (``PreferenceLedger.record``)
2) Match detection (``MatchDetector.on_preference_recorded``)
3) Return the ``SubmissionResult`` to the caller
4) Only on ``MATCH_CREATED``: realtime publish and partner notification,
   each as its own detached task that the caller never awaits

Steps 1-2 are the only ones that must finish before the caller hears back;
3-4 are best-effort and absorb their own failures.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set

from sqlalchemy.orm import sessionmaker

from mealmatch import config, database
from mealmatch.detector import MatchDetector
from mealmatch.domain.enums import SwipeDirection
from mealmatch.domain.errors import DuplicatePreference, MatchNotFound, StorageUnavailable, UnknownGroup
from mealmatch.domain.models import Group, MatchRecord, Outcome, SubmissionResult
from mealmatch.ledger import PreferenceLedger
from mealmatch.metrics import increment
from mealmatch.notifications.dispatcher import NotificationDispatcher
from mealmatch.websocket import RealtimeChannel

logger = logging.getLogger(__name__)


class PreferenceService:
    """Facade over ledger, detector, realtime channel and dispatcher."""

    def __init__(
        self,
        channel: RealtimeChannel,
        dispatcher: NotificationDispatcher,
        session_factory: Optional[sessionmaker] = None,
        ledger: Optional[PreferenceLedger] = None,
        detector: Optional[MatchDetector] = None,
    ) -> None:
        self._session_factory = session_factory or database.SessionLocal
        self.ledger = ledger or PreferenceLedger(self._session_factory)
        self.detector = detector or MatchDetector(self._session_factory)
        self.channel = channel
        self.dispatcher = dispatcher
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        actor_id: str,
        group_id: str,
        item_id: str,
        direction: SwipeDirection | str,
    ) -> SubmissionResult:
        """Record a preference and run detection (blocking; no side effects)."""
        try:
            event = self.ledger.record(actor_id, item_id, group_id, direction)
        except DuplicatePreference:
            return self._resolve_duplicate(actor_id, group_id, item_id)

        outcome = self.detector.on_preference_recorded(event)
        return SubmissionResult(preference=event, outcome=outcome)

    def _resolve_duplicate(self, actor_id: str, group_id: str, item_id: str) -> SubmissionResult:
        """Answer a resubmission as if it had just been recorded.

        An existing match is reported without any new insert attempt.  If
        the stored like never got through detection (e.g. the store dropped
        out right after the ledger write) detection runs again on the stored
        event, which is safe because match creation is insert-if-absent.
        """
        stored = self.ledger.get(actor_id, item_id, group_id)
        if stored is None:
            # Unique violation but no row: only a concurrent cascade delete does this.
            raise StorageUnavailable(
                f"preference for actor={actor_id} item={item_id} vanished after duplicate check"
            )

        existing = self.get_match(group_id, item_id)
        if existing is not None:
            return SubmissionResult(stored, Outcome.already_exists(existing), duplicate=True)
        if stored.is_like:
            outcome = self.detector.on_preference_recorded(stored)
            return SubmissionResult(stored, outcome, duplicate=True)
        return SubmissionResult(stored, Outcome.no_match(), duplicate=True)

    async def submit_async(
        self,
        actor_id: str,
        group_id: str,
        item_id: str,
        direction: SwipeDirection | str,
    ) -> SubmissionResult:
        """Async entry point: run ``submit`` off-loop, then fire side effects."""
        result = await asyncio.to_thread(self.submit, actor_id, group_id, item_id, direction)
        if result.outcome.owns_side_effects:
            self._fire_side_effects(result.outcome)
        return result

    async def submit_with_retry(
        self,
        actor_id: str,
        group_id: str,
        item_id: str,
        direction: SwipeDirection | str,
        attempts: int = config.STORAGE_RETRY_ATTEMPTS,
    ) -> SubmissionResult:
        """``submit_async`` with exponential backoff on ``StorageUnavailable``.

        Every step is idempotent (duplicate ledger writes resolve to the
        stored row; match creation is insert-if-absent), so replaying the
        whole submission is safe.  Other errors propagate immediately.
        """
        initial_backoff = max(0.0, config.STORAGE_RETRY_INITIAL_SECONDS)
        max_backoff = max(initial_backoff, config.STORAGE_RETRY_MAX_SECONDS)
        backoff = initial_backoff
        attempts = max(1, attempts)

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.submit_async(actor_id, group_id, item_id, direction)
            except StorageUnavailable as exc:
                if attempt >= attempts:
                    raise
                logger.warning(
                    "Storage unavailable on attempt %d/%d (%s); retrying in %.2fs",
                    attempt, attempts, exc, backoff,
                )
                await asyncio.sleep(backoff)
                backoff = min(max_backoff, backoff * 2.0)

    # ------------------------------------------------------------------
    # Side effects (winning path only)
    # ------------------------------------------------------------------

    def _fire_side_effects(self, outcome: Outcome) -> None:
        match = outcome.match
        self._spawn(self._publish(match), name=f"publish:{match.id}")
        self._spawn(self._notify(outcome), name=f"notify:{match.id}")

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, match: MatchRecord) -> None:
        try:
            await self.channel.publish(match.group_id, match)
        except Exception:
            logger.exception("Realtime publish failed for match %s", match.id)

    async def _notify(self, outcome: Outcome) -> None:
        match = outcome.match
        try:
            group = await asyncio.to_thread(self.get_group, match.group_id)
            await self.dispatcher.dispatch(group, outcome)
        except Exception:
            increment("notifications_failed")
            logger.exception("Notification dispatch failed for match %s", match.id)

    async def drain(self) -> None:
        """Wait for every in-flight publish/notify task (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory

    @property
    def pending_side_effects(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Reads / favorite toggle
    # ------------------------------------------------------------------

    def get_group(self, group_id: str) -> Group:
        group = self.ledger.group(group_id)
        if group is None:
            raise UnknownGroup(group_id)
        return group

    def get_match(self, group_id: str, item_id: str) -> Optional[MatchRecord]:
        db = self._session_factory()
        try:
            with database.storage_errors():
                return database.get_match(db, group_id, item_id)
        finally:
            db.close()

    def list_matches(self, group_id: str, favorites_only: bool = False) -> List[MatchRecord]:
        """Authoritative match list (cold start / after a realtime gap)."""
        db = self._session_factory()
        try:
            with database.storage_errors():
                if database.get_group(db, group_id) is None:
                    raise UnknownGroup(group_id)
                return database.list_matches(db, group_id, favorites_only=favorites_only)
        finally:
            db.close()

    def set_favorite(self, match_id: str, is_favorite: bool) -> MatchRecord:
        db = self._session_factory()
        try:
            with database.storage_errors():
                return database.set_match_favorite(db, match_id, is_favorite)
        finally:
            db.close()

    def toggle_favorite(self, match_id: str) -> MatchRecord:
        db = self._session_factory()
        try:
            with database.storage_errors():
                current = database.get_match_by_id(db, match_id)
                if current is None:
                    raise MatchNotFound(match_id)
                return database.set_match_favorite(db, match_id, not current.is_favorite)
        finally:
            db.close()

    def swiped_items(self, actor_id: str, group_id: str) -> Set[str]:
        return self.ledger.swiped_items(actor_id, group_id)

    def register_push_token(self, actor_id: str, token: Optional[str]) -> None:
        db = self._session_factory()
        try:
            with database.storage_errors():
                database.set_push_token(db, actor_id, token)
        finally:
            db.close()

    def clear_push_token(self, actor_id: str) -> None:
        self.register_push_token(actor_id, None)
