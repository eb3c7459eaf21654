"""
Score Event Relay

Keeps the in-memory leaderboards of every worker process in step. The
worker that commits a score event applies it locally and publishes it on
the relay channel; every other worker folds it into its own aggregator.
Profile changes and rebuild requests travel the same way.

- Each relay has a random origin id; messages it published itself are
  ignored on receipt (the publishing worker already applied them).
- Snapshot fan-out to WebSocket viewers stays local to each worker.
- Delivery is best-effort: a lost message leaves a worker behind until its
  next rebuild (window rollover or POST /leaderboards/rebuild).
"""
import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from contest_engine.orm.score_event import ScoreEvent
from contest_engine.realtime.broadcast_adapter import RELAY_CHANNEL, BroadcastAdapter

logger = logging.getLogger(__name__)

SCORE_EVENT = "SCORE_EVENT"
PROFILE_UPDATED = "PROFILE_UPDATED"
REBUILD_REQUESTED = "REBUILD_REQUESTED"

RelayHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class ScoreEventRelay:
    """Publishes this worker's changes and feeds other workers' changes to `handler`."""

    def __init__(self, transport: BroadcastAdapter, handler: RelayHandler, origin: Optional[str] = None):
        self.transport = transport
        self.handler = handler
        self.origin = origin or uuid.uuid4().hex
        self._stream = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """
        Subscribe, then start consuming in the background.

        Subscription is registered before this returns, so anything other
        workers publish afterwards is delivered.
        """
        if self._task is not None:
            return
        self._stream = await self.transport.subscribe(RELAY_CHANNEL)
        self._task = asyncio.create_task(self._consume())
        logger.info(f"[RELAY] started origin={self.origin}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._stream is not None:
            await self._stream.aclose()
            self._stream = None
        logger.info(f"[RELAY] stopped origin={self.origin}")

    async def _consume(self) -> None:
        async for message in self._stream:
            if message.get("origin") == self.origin:
                continue
            try:
                await self.handler(message)
            except Exception:
                logger.exception(
                    f"[RELAY ERROR] type={message.get('type')} seq={message.get('sequence')} "
                    f"from={message.get('origin')}"
                )

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def publish_event(self, event: ScoreEvent) -> None:
        await self._publish({
            "type": SCORE_EVENT,
            "sequence": event.id,
            "user_id": event.user_id,
            "points": event.points,
            "occurred_at": event.occurred_at.isoformat(),
        })

    async def publish_profile(
        self,
        user_id: str,
        display_name: str,
        avatar_url: Optional[str],
        badge_count: int
    ) -> None:
        await self._publish({
            "type": PROFILE_UPDATED,
            "user_id": user_id,
            "display_name": display_name,
            "avatar_url": avatar_url,
            "badge_count": badge_count,
        })

    async def request_rebuild(self) -> None:
        await self._publish({"type": REBUILD_REQUESTED})

    async def _publish(self, message: Dict[str, Any]) -> None:
        message["origin"] = self.origin
        try:
            await self.transport.publish(RELAY_CHANNEL, message)
        except Exception:
            # The change is committed and applied here; other workers catch up on rebuild
            logger.exception(f"[RELAY ERROR] {message['type']} not delivered to other workers")
