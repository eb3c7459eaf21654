"""
In-Memory Broadcast Adapter (single worker / development / tests)

Local-only snapshot fan-out using one bounded asyncio.Queue per subscriber.
No Redis dependency.
"""
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Set

from .broadcast_adapter import BroadcastAdapter

logger = logging.getLogger(__name__)

_SHUTDOWN = None


class InMemoryAdapter(BroadcastAdapter):
    """
    In-memory broadcast adapter.

    Backpressure: when a subscriber's queue is full the oldest pending
    message is dropped. Snapshots are whole replacements, so a slow viewer
    only ever skips intermediate versions and never sees a partial one.
    """

    def __init__(self, max_queue_size: int = 16):
        self.max_queue_size = max_queue_size
        self._channels: Dict[str, Set[asyncio.Queue]] = {}
        self._lock = asyncio.Lock()
        self.dropped_count = 0

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        """
        Publish message to in-memory channel.

        Args:
            channel: Channel name
            message: Snapshot payload or relay message (see validate_message)
        """
        self.validate_message(message)

        # Serialize deterministically
        serialized = self._serialize_message(message)

        async with self._lock:
            # Copy to avoid modification during iteration
            queues = list(self._channels.get(channel, ()))

        for queue in queues:
            self._offer(queue, serialized)

    def _offer(self, queue: asyncio.Queue, serialized: Optional[str]) -> None:
        try:
            queue.put_nowait(serialized)
        except asyncio.QueueFull:
            # Drop oldest, keep newest
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self.dropped_count += 1
            queue.put_nowait(serialized)

    async def subscribe(self, channel: str) -> AsyncIterator[Dict[str, Any]]:
        """
        Register a queue on channel and return an iterator over it.

        Args:
            channel: Channel name
        Returns:
            Async iterator of parsed message dicts
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)

        async with self._lock:
            self._channels.setdefault(channel, set()).add(queue)

        return _QueueSubscription(self, channel, queue)

    async def _unregister(self, channel: str, queue: asyncio.Queue) -> None:
        async with self._lock:
            subscribers = self._channels.get(channel)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._channels[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    async def close(self) -> None:
        """Signal shutdown to every subscriber and forget all channels."""
        async with self._lock:
            for subscribers in self._channels.values():
                for queue in subscribers:
                    self._offer(queue, _SHUTDOWN)
            self._channels.clear()


class _QueueSubscription:
    """Async iterator over one subscriber queue; aclose() unregisters it."""

    def __init__(self, adapter: InMemoryAdapter, channel: str, queue: asyncio.Queue):
        self._adapter = adapter
        self._channel = channel
        self._queue = queue
        self._closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        while not self._closed:
            serialized = await self._queue.get()
            if serialized is _SHUTDOWN:
                break
            try:
                return json.loads(serialized)
            except json.JSONDecodeError:
                logger.warning(f"[BROADCAST] Skipping corrupted message on {self._channel}")
        await self.aclose()
        raise StopAsyncIteration

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._adapter._unregister(self._channel, self._queue)
