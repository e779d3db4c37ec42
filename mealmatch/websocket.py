"""
Realtime Channel for MealMatch
Per-group, best-effort fan-out of newly created matches to connected clients.

Delivery is at-most-once with no durability: a subscriber receives an event
only if it is ``SUBSCRIBED`` when ``publish`` runs.  A subscriber that falls
over (send failure, full buffer) moves to ``ERRORED`` and is dropped; it has
to ``subscribe`` again and refetch the match list to catch up.
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Dict, List, Optional

from fastapi import WebSocket

from mealmatch import config
from mealmatch.domain.enums import SubscriptionState
from mealmatch.domain.errors import ChannelError
from mealmatch.domain.models import MatchEvent, MatchRecord
from mealmatch.metrics import increment

logger = logging.getLogger(__name__)

_END = object()


class Subscriber:
    """One subscription instance.  Terminal states are never left."""

    def __init__(self, group_id: str):
        self.group_id = group_id
        self.state = SubscriptionState.CONNECTING
        self.error: Optional[ChannelError] = None

    @property
    def is_active(self) -> bool:
        return self.state == SubscriptionState.SUBSCRIBED

    def _transition(self, new_state: SubscriptionState, error: Optional[ChannelError] = None):
        if self.state.is_terminal:
            return
        self.state = new_state
        if error is not None:
            self.error = error
        logger.debug("Subscriber for group %s -> %s", self.group_id, new_state.value)

    def mark_subscribed(self):
        if self.state == SubscriptionState.CONNECTING:
            self._transition(SubscriptionState.SUBSCRIBED)

    def mark_closed(self):
        self._transition(SubscriptionState.CLOSED)

    def mark_errored(self, error: ChannelError):
        self._transition(SubscriptionState.ERRORED, error)

    async def deliver(self, event: MatchEvent):
        raise NotImplementedError

    async def shutdown(self):
        """Release transport resources once the subscriber is terminal."""


class Subscription(Subscriber):
    """In-process stream of ``MatchEvent`` for one group.

    Iterate with ``async for event in subscription``; iteration ends when the
    subscription is closed or errored (check ``state`` / ``error``).
    """

    def __init__(self, channel: "RealtimeChannel", group_id: str, maxsize: int):
        super().__init__(group_id)
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, maxsize) + 1)
        self._maxsize = max(1, maxsize)

    async def deliver(self, event: MatchEvent):
        if self._queue.qsize() >= self._maxsize:
            raise ChannelError(f"subscriber buffer full ({self._maxsize} events)")
        self._queue.put_nowait(event)

    def _wake(self):
        # Pending events are discarded once the subscription is terminal.
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)

    def mark_closed(self):
        was_terminal = self.state.is_terminal
        super().mark_closed()
        if not was_terminal:
            self._wake()

    def mark_errored(self, error: ChannelError):
        was_terminal = self.state.is_terminal
        super().mark_errored(error)
        if not was_terminal:
            self._wake()

    async def next_event(self) -> Optional[MatchEvent]:
        """Wait for the next event; ``None`` once the subscription has ended."""
        item = await self._queue.get()
        if item is _END:
            self._queue.put_nowait(_END)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[MatchEvent]:
        return self

    async def __anext__(self) -> MatchEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event

    async def close(self):
        await self._channel.unsubscribe(self)


class WebSocketSubscriber(Subscriber):
    """Pushes each event to a WebSocket client as a JSON text frame."""

    def __init__(self, websocket: WebSocket, group_id: str):
        super().__init__(group_id)
        self.websocket = websocket

    async def deliver(self, event: MatchEvent):
        await self.websocket.send_text(json.dumps(event.to_payload()))

    async def shutdown(self):
        # 1011: server stopped serving this subscription; client must resubscribe.
        try:
            await self.websocket.close(code=1011)
        except Exception as exc:
            logger.debug("WebSocket close for group %s failed: %s", self.group_id, exc)


class RealtimeChannel:
    """Tracks subscribers per group and broadcasts match events."""

    def __init__(self, queue_size: int = config.REALTIME_QUEUE_SIZE):
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._lock = asyncio.Lock()
        self._queue_size = queue_size

    async def _register(self, subscriber: Subscriber):
        async with self._lock:
            self._subscribers.setdefault(subscriber.group_id, []).append(subscriber)
            subscriber.mark_subscribed()
        logger.info(
            "Realtime subscriber joined group %s. Group subscribers: %d",
            subscriber.group_id, self.subscriber_count(subscriber.group_id),
        )

    async def subscribe(self, group_id: str) -> Subscription:
        """Open an in-process subscription for ``group_id``."""
        subscription = Subscription(self, group_id, self._queue_size)
        await self._register(subscription)
        return subscription

    async def connect(self, websocket: WebSocket, group_id: str) -> WebSocketSubscriber:
        """Accept a WebSocket connection and subscribe it to ``group_id``."""
        subscriber = WebSocketSubscriber(websocket, group_id)
        try:
            await websocket.accept()
        except Exception as exc:
            subscriber.mark_errored(ChannelError(f"websocket accept failed: {exc}"))
            logger.warning("WebSocket accept failed for group %s: %s", group_id, exc)
            return subscriber
        await self._register(subscriber)
        return subscriber

    async def unsubscribe(self, subscriber: Subscriber):
        """Remove a subscriber.  Has no effect on ledger or match state."""
        async with self._lock:
            members = self._subscribers.get(subscriber.group_id, [])
            if subscriber in members:
                members.remove(subscriber)
            if not members:
                self._subscribers.pop(subscriber.group_id, None)
        subscriber.mark_closed()
        logger.info(
            "Realtime subscriber left group %s. Group subscribers: %d",
            subscriber.group_id, self.subscriber_count(subscriber.group_id),
        )

    async def disconnect(self, subscriber: Subscriber):
        """Alias used by the WebSocket endpoint."""
        await self.unsubscribe(subscriber)

    async def publish(self, group_id: str, match: MatchRecord) -> int:
        """Send ``match`` to every subscriber of ``group_id``.

        Returns the number of subscribers that received it.  Never raises;
        subscribers that fail are errored and removed.
        """
        event = match.to_event()
        async with self._lock:
            targets = [s for s in self._subscribers.get(group_id, []) if s.is_active]

        delivered = 0
        stale: List[Subscriber] = []
        for subscriber in targets:
            try:
                await subscriber.deliver(event)
                delivered += 1
            except ChannelError as exc:
                subscriber.mark_errored(exc)
                stale.append(subscriber)
            except Exception as exc:
                subscriber.mark_errored(ChannelError(f"delivery failed: {exc}"))
                stale.append(subscriber)

        if stale:
            async with self._lock:
                members = self._subscribers.get(group_id, [])
                for subscriber in stale:
                    if subscriber in members:
                        members.remove(subscriber)
                if not members:
                    self._subscribers.pop(group_id, None)
            logger.info("Removed %d stale realtime subscribers for group %s", len(stale), group_id)
            for subscriber in stale:
                await subscriber.shutdown()

        increment("realtime_events_published")
        logger.debug("Published match %s to %d subscribers of group %s", match.id, delivered, group_id)
        return delivered

    def subscriber_count(self, group_id: str) -> int:
        return len(self._subscribers.get(group_id, []))

    @property
    def client_count(self) -> int:
        return sum(len(members) for members in self._subscribers.values())


# Singleton used across the application
manager = RealtimeChannel()
