"""
Change feed: fan-out of message INSERT/UPDATE events filtered by session.

Version: 1.0.0
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


@dataclass
class ChangeEvent:
    """A committed row change."""

    event_type: ChangeType
    session_id: str
    new: Dict[str, Any] = field(default_factory=dict)
    table: str = "messages"

    def to_message(self) -> Dict[str, Any]:
        """Websocket frame for this event."""
        return {
            "type": "change",
            "event": self.event_type.value,
            "table": self.table,
            "new": self.new,
        }

    def to_json(self) -> str:
        return json.dumps({
            "event_type": self.event_type.value,
            "session_id": self.session_id,
            "table": self.table,
            "new": self.new,
        })

    @classmethod
    def from_json(cls, raw: str) -> "ChangeEvent":
        data = json.loads(raw)
        return cls(
            event_type=ChangeType(data["event_type"]),
            session_id=data["session_id"],
            new=data.get("new") or {},
            table=data.get("table", "messages"),
        )


class Subscription:
    """
    Bounded per-subscriber queue, consumed as an async iterator.

    When the queue is full the oldest pending event is dropped; consumers
    recover lost updates through the status endpoint.
    """

    _CLOSED = object()

    def __init__(self, session_id: str, max_queue_size: int = 256, on_close=None):
        self.session_id = session_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size + 1)
        self.max_queue_size = max_queue_size
        self.dropped = 0
        self.closed = False
        self._on_close = on_close

    def put(self, event: ChangeEvent) -> None:
        if self.closed:
            return
        if event.session_id != self.session_id:
            return

        while self.queue.qsize() >= self.max_queue_size:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self.dropped += 1
            if self.dropped % 50 == 1:
                logger.warning(
                    f"Subscription for session {self.session_id} is slow, "
                    f"dropped {self.dropped} events"
                )

        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or None once closed or on timeout."""
        if self.closed and self.queue.empty():
            return None
        try:
            if timeout is None:
                item = await self.queue.get()
            else:
                item = await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is self._CLOSED:
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Wake any reader; the extra slot reserved in the queue guarantees room
        try:
            self.queue.put_nowait(self._CLOSED)
        except asyncio.QueueFull:
            pass
        if self._on_close is not None:
            await self._on_close(self)


class ChangeFeed(ABC):
    """Publish/subscribe contract for message row changes."""

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None:
        """Deliver an event to every subscriber of its session."""

    @abstractmethod
    async def subscribe(self, session_id: str) -> Subscription:
        """Open a subscription that only yields events for session_id."""

    @abstractmethod
    def subscriber_count(self, session_id: Optional[str] = None) -> int:
        pass

    async def close(self) -> None:
        pass


class InMemoryChangeFeed(ChangeFeed):
    """
    Single-process change feed.

    Does not fan out across workers; use RedisChangeFeed for that.
    """

    def __init__(self, max_queue_size: int = 256):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)
        logger.info(f"InMemoryChangeFeed initialized (max_queue_size={max_queue_size})")

    async def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscribers.get(event.session_id, ())):
            subscription.put(event)

    async def subscribe(self, session_id: str) -> Subscription:
        subscription = Subscription(
            session_id,
            max_queue_size=self.max_queue_size,
            on_close=self._unsubscribe
        )
        self._subscribers[session_id].add(subscription)
        logger.debug(f"Subscribed to session {session_id} ({len(self._subscribers[session_id])} subscribers)")
        return subscription

    async def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.session_id)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.session_id]
        logger.debug(f"Unsubscribed from session {subscription.session_id}")

    def subscriber_count(self, session_id: Optional[str] = None) -> int:
        if session_id is not None:
            return len(self._subscribers.get(session_id, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    async def close(self) -> None:
        for subscribers in list(self._subscribers.values()):
            for subscription in list(subscribers):
                await subscription.close()
        self._subscribers.clear()
