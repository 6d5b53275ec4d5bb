"""
Raz - Realtime fan-out of room events.

Created by orpheus497
Version: 1.0.0

Pushes message-appended, room-destroyed and participant-count-changed events
to the subscribers of a room channel. Delivery is best-effort and
at-least-once with no ordering guarantee across senders; a failed emit never
fails the room operation that triggered it, clients fall back to polling.
"""

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from .errors import RealtimeUnavailable

logger = logging.getLogger(__name__)


class RealtimeEvent(Enum):
    """Events pushed on a room channel."""

    MESSAGE_APPENDED = "message-appended"
    ROOM_DESTROYED = "room-destroyed"
    PARTICIPANT_COUNT_CHANGED = "participant-count-changed"


@dataclass
class RealtimeEnvelope:
    """One event delivered on a room channel."""

    channel: str
    event: RealtimeEvent
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"room_id": self.channel, "event": self.event.value, "payload": self.payload}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "RealtimeEnvelope":
        return RealtimeEnvelope(
            channel=data["room_id"],
            event=RealtimeEvent(data["event"]),
            payload=data.get("payload") or {},
        )


class Subscription:
    """
    A subscriber's view of one room channel.

    Events are buffered in an asyncio.Queue and consumed with ``get()`` or
    ``async for``. Iteration ends when the subscription is closed.
    """

    def __init__(
        self,
        channel: str,
        on_close: Optional[Callable[["Subscription"], None]] = None,
        max_queue_size: int = 0,
    ):
        self.channel = channel
        self.closed = False
        self._on_close = on_close
        self._queue: asyncio.Queue = asyncio.Queue(max_queue_size)

    def deliver(self, envelope: RealtimeEnvelope) -> bool:
        """Queue an event without blocking. Returns False if it was dropped."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(envelope)
            return True
        except asyncio.QueueFull:
            return False

    async def get(self, timeout: Optional[float] = None) -> Optional[RealtimeEnvelope]:
        """
        Wait for the next event.

        Args:
            timeout: Seconds to wait (None waits forever)

        Returns:
            The next envelope, or None once closed or on timeout
        """
        if self.closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                return await self._queue.get()
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> int:
        """Number of queued events."""
        return self._queue.qsize()

    def close(self) -> None:
        """Stop receiving events and wake any waiting consumer."""
        if self.closed:
            return
        self.closed = True
        # Sentinel wakes a consumer blocked in get()
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(None)
        if self._on_close:
            self._on_close(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> RealtimeEnvelope:
        envelope = await self.get()
        if envelope is None:
            raise StopAsyncIteration
        return envelope


class RealtimeFanout(ABC):
    """Abstract publish/subscribe channel keyed by room."""

    @abstractmethod
    async def emit(self, channel: str, event: RealtimeEvent, payload: Dict[str, Any]) -> int:
        """
        Publish an event.

        Returns:
            Number of subscribers the event was queued for

        Raises:
            RealtimeUnavailable: If the channel cannot accept events
        """

    @abstractmethod
    def subscribe(self, channel: str) -> Subscription:
        """Open a subscription to a room channel."""


class MemoryFanout(RealtimeFanout):
    """In-process fan-out delivering to per-subscriber queues."""

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self.available = True
        self._channels: Dict[str, Set[Subscription]] = {}

    async def emit(self, channel: str, event: RealtimeEvent, payload: Dict[str, Any]) -> int:
        await asyncio.sleep(0)
        if not self.available:
            raise RealtimeUnavailable(
                f"Cannot emit {event.value} on {channel}", {"channel": channel}
            )

        envelope = RealtimeEnvelope(channel=channel, event=event, payload=payload)
        delivered = 0
        for subscription in list(self._channels.get(channel, ())):
            if subscription.deliver(envelope):
                delivered += 1
            else:
                logger.warning(f"Dropped {event.value} event for a subscriber of {channel}")

        logger.debug(f"Emitted {event.value} on {channel} to {delivered} subscribers")
        return delivered

    def subscribe(self, channel: str) -> Subscription:
        subscription = Subscription(
            channel, on_close=self._unsubscribe, max_queue_size=self.max_queue_size
        )
        self._channels.setdefault(channel, set()).add(subscription)
        logger.debug(f"New subscriber on {channel}")
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._channels.get(subscription.channel)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._channels[subscription.channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))


async def emit_best_effort(
    fanout: RealtimeFanout, channel: str, event: RealtimeEvent, payload: Dict[str, Any]
) -> bool:
    """
    Emit an event, logging instead of raising when the channel is down.

    Returns:
        True if the event was handed to the fan-out, False otherwise
    """
    try:
        await fanout.emit(channel, event, payload)
        return True
    except RealtimeUnavailable as e:
        logger.warning(f"Realtime unavailable, {event.value} not pushed: {e.message}")
        return False
