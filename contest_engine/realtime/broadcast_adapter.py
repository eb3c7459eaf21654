"""
Leaderboard Broadcast Adapter Interface

Abstract base class for snapshot and worker relay fan-out.
Deterministic serialization, version-ordered, delivery-only.
"""
import abc
import json
import hashlib
from typing import Any, AsyncIterator, Dict


def leaderboard_channel(window: str) -> str:
    """Channel name for a leaderboard window (e.g. "leaderboard:weekly")."""
    return f"leaderboard:{window}"


# Worker-to-worker channel carrying score events, profile changes and rebuild requests
RELAY_CHANNEL = "engine:relay"

SNAPSHOT_FIELDS = ["window", "version", "snapshot_hash"]

# Required fields per relay message type
RELAY_FIELDS = {
    "SCORE_EVENT": ["origin", "sequence", "user_id", "points", "occurred_at"],
    "PROFILE_UPDATED": ["origin", "user_id", "display_name"],
    "REBUILD_REQUESTED": ["origin"],
}


class BroadcastAdapter(abc.ABC):
    """
    Abstract base class for broadcast adapters.

    Guarantees:
    - Deterministic message serialization (sort_keys=True)
    - Snapshots identify one version; relay messages carry their type and origin
    - Delivery-only (the ledger is the source of truth, not the transport)
    """

    @abc.abstractmethod
    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        """
        Publish message to channel.

        Args:
            channel: Channel name (e.g., "leaderboard:global")
            message: Snapshot payload (must contain window, version, snapshot_hash)
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(self, channel: str) -> AsyncIterator[Dict[str, Any]]:
        """
        Register a subscriber on channel.

        Registration is complete when this coroutine returns, so nothing
        published afterwards is missed. The returned iterator yields parsed
        message dicts until the subscriber closes it or the adapter shuts down.

        Args:
            channel: Channel name to subscribe to
        Returns:
            Async iterator of message dicts
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        """Close adapter connections and end all subscriptions."""
        raise NotImplementedError

    def _serialize_message(self, message: Dict[str, Any]) -> str:
        """
        Serialize message deterministically.

        Requirements:
        - sort_keys=True for determinism
        - No pretty printing (compact)
        """
        return json.dumps(message, sort_keys=True, separators=(',', ':'))

    def _compute_message_hash(self, message: Dict[str, Any]) -> str:
        """SHA256 of the deterministic serialization."""
        serialized = self._serialize_message(message)
        return hashlib.sha256(serialized.encode()).hexdigest()

    def validate_message(self, message: Dict[str, Any]) -> bool:
        """
        Validate message carries the fields its type requires.

        Relay messages are keyed by `type` (see RELAY_FIELDS); anything else
        is a leaderboard snapshot and must identify exactly one version
        (window, version, snapshot_hash).

        Raises:
            ValueError: If required fields missing
        """
        required = RELAY_FIELDS.get(message.get("type"), SNAPSHOT_FIELDS)
        missing = [f for f in required if f not in message]
        if missing:
            raise ValueError(f"Message missing required fields: {missing}")
        return True
