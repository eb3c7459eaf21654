"""
Redis Broadcast Adapter (multi-worker)

Redis Pub/Sub transport for the worker relay: a score event accepted by
one worker reaches every other worker, which folds it into its own
leaderboards. Deterministic, delivery-only.
"""
import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as aioredis

from .broadcast_adapter import BroadcastAdapter

logger = logging.getLogger(__name__)


class RedisAdapter(BroadcastAdapter):
    """
    Redis Pub/Sub adapter for production multi-worker deployment.

    Guarantees:
    - Deterministic JSON serialization (sort_keys=True)
    - Cross-worker message delivery
    - No Redis as source of truth (delivery only)
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0"):
        self.redis_url = redis_url
        self._redis: Optional[aioredis.Redis] = None
        self._pubsubs = set()

    async def connect(self) -> None:
        """Establish Redis connection."""
        self._redis = aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True
        )
        await self._redis.ping()
        logger.info(f"[BROADCAST] Connected to Redis at {self.redis_url}")

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        """
        Publish message to Redis channel.

        Args:
            channel: Channel name
            message: Relay message or snapshot payload
        """
        if not self._redis:
            await self.connect()

        self.validate_message(message)

        # Serialize deterministically
        serialized = self._serialize_message(message)

        await self._redis.publish(channel, serialized)

    async def subscribe(self, channel: str):
        """
        Subscribe a dedicated PubSub connection to channel.

        Args:
            channel: Channel name to subscribe to
        Returns:
            Async iterator of parsed message dicts
        """
        if not self._redis:
            await self.connect()

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        self._pubsubs.add(pubsub)
        return _PubSubSubscription(self, channel, pubsub)

    async def close(self) -> None:
        """Close Redis connections."""
        for pubsub in list(self._pubsubs):
            await pubsub.aclose()
        self._pubsubs.clear()
        if self._redis:
            await self._redis.aclose()
            self._redis = None


class _PubSubSubscription:
    """Async iterator over one dedicated PubSub connection; aclose() releases it."""

    def __init__(self, adapter: RedisAdapter, channel: str, pubsub):
        self._adapter = adapter
        self._channel = channel
        self._pubsub = pubsub
        self._closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        while not self._closed:
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=None)
            if message is None or message["type"] != "message":
                continue
            try:
                return json.loads(message["data"])
            except json.JSONDecodeError:
                logger.warning(f"[BROADCAST] Skipping corrupted message on {self._channel}")
        raise StopAsyncIteration

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._adapter._pubsubs.discard(self._pubsub)
        await self._pubsub.unsubscribe(self._channel)
        await self._pubsub.aclose()


async def create_broadcast_adapter(
    use_redis: bool = False,
    redis_url: str = "redis://localhost:6379/0",
    max_queue_size: int = 16
) -> BroadcastAdapter:
    """
    Factory function to create appropriate broadcast adapter.

    Args:
        use_redis: True for RedisAdapter, False for InMemoryAdapter
        redis_url: Redis connection URL
        max_queue_size: Per-subscriber queue bound for the in-memory adapter
    Returns:
        Configured BroadcastAdapter instance
    """
    if use_redis:
        adapter = RedisAdapter(redis_url)
        await adapter.connect()
        return adapter
    else:
        from .in_memory_adapter import InMemoryAdapter
        return InMemoryAdapter(max_queue_size=max_queue_size)
