"""
Redis pub/sub change feed for multi-instance deployments.

Each session maps to one channel ``{prefix}{session_id}``. A subscription
owns a pubsub connection and a reader task that feeds its local queue.

Version: 1.0.0
"""
import asyncio
import logging
from typing import Dict, Optional, Set

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from .change_feed import ChangeEvent, ChangeFeed, Subscription

logger = logging.getLogger(__name__)


class RedisChangeFeed(ChangeFeed):
    """Change feed backed by Redis PUBLISH/SUBSCRIBE."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        channel_prefix: str = "botportal:messages:",
        max_queue_size: int = 256,
        client: Optional[Redis] = None
    ):
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self.max_queue_size = max_queue_size
        self.client: Redis = client or redis.from_url(redis_url, decode_responses=True)
        self._readers: Dict[Subscription, asyncio.Task] = {}
        self._subscriptions: Set[Subscription] = set()

        logger.info(f"RedisChangeFeed initialized (url={redis_url}, prefix={channel_prefix})")

    def channel_for(self, session_id: str) -> str:
        return f"{self.channel_prefix}{session_id}"

    async def publish(self, event: ChangeEvent) -> None:
        try:
            await self.client.publish(self.channel_for(event.session_id), event.to_json())
        except RedisError as e:
            # Subscribers fall back to the status endpoint
            logger.error(f"Failed to publish change for session {event.session_id}: {e}")

    async def subscribe(self, session_id: str) -> Subscription:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(self.channel_for(session_id))

        subscription = Subscription(
            session_id,
            max_queue_size=self.max_queue_size,
            on_close=self._unsubscribe
        )
        self._subscriptions.add(subscription)
        self._readers[subscription] = asyncio.create_task(
            self._read(pubsub, subscription),
            name=f"change-feed-{session_id}"
        )
        return subscription

    async def _read(self, pubsub, subscription: Subscription) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    subscription.put(ChangeEvent.from_json(message["data"]))
                except (ValueError, KeyError) as e:
                    logger.warning(f"Discarding malformed change event: {e}")
        except asyncio.CancelledError:
            pass
        except RedisError as e:
            logger.error(f"Change feed reader for session {subscription.session_id} failed: {e}")
        finally:
            try:
                await pubsub.unsubscribe()
                await pubsub.aclose()
            except RedisError as e:
                logger.debug(f"Error closing pubsub: {e}")

    async def _unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)
        task = self._readers.pop(subscription, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def subscriber_count(self, session_id: Optional[str] = None) -> int:
        if session_id is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions if s.session_id == session_id)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()
        try:
            await self.client.aclose()
        except RedisError as e:
            logger.error(f"Error closing Redis client: {e}")
