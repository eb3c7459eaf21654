"""
Leaderboard Aggregator: versioned snapshot store per window

Maintains one ranked view per window kind (global, weekly, monthly),
updated incrementally from accepted score events and served as immutable,
versioned snapshots.

Guarantees:
- A snapshot is never mutated after publication; readers hold a reference
  to one version, so a page never mixes pre- and post-update rows.
- Updates to one window are serialized by that window's lock; a new
  version is published only after the moved user's rank and all affected
  neighbours are recomputed.
- Versions are strictly increasing per window (rebuilds included).
- The last N versions are retained so clients can keep paging a pinned
  version while writes continue.
- Every materialized view can be rebuilt from the score ledger.
- An event sequence is folded in at most once per aggregator, so an event
  delivered both locally and by the worker relay counts once.
- Recently applied events are replayed into a rebuild when the ledger read
  did not include them (they committed after it).
"""
import asyncio
import hashlib
import json
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from contest_engine.config.feature_flags import EngineSettings
from contest_engine.exceptions import SnapshotExpiredError, SnapshotNotFoundError
from contest_engine.realtime.broadcast_adapter import BroadcastAdapter, leaderboard_channel
from contest_engine.services.ranking import LeaderboardEntry, RankedIndex, make_key
from contest_engine.services.score_ledger import UserWindowTotal
from contest_engine.services.windows import WindowBounds, WindowKind, parse_window, window_bounds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileInfo:
    display_name: str
    avatar_url: Optional[str] = None
    badge_count: int = 0


@dataclass(frozen=True)
class AppliedEvent:
    sequence: int
    user_id: str
    points: int
    occurred_at: datetime


@dataclass(frozen=True)
class LeaderboardSnapshot:
    """One consistent, immutable view of a window at a point in time."""
    window: WindowKind
    version: int
    window_start: Optional[datetime]
    window_end: Optional[datetime]
    generated_at: datetime
    entries: Tuple[LeaderboardEntry, ...]

    @property
    def total_count(self) -> int:
        return len(self.entries)

    def page(self, offset: int, limit: int) -> Tuple[LeaderboardEntry, ...]:
        return self.entries[offset:offset + limit]

    def to_payload(self, top_n: Optional[int] = None) -> Dict[str, Any]:
        """Serializable whole-snapshot message (entries truncated to top_n)."""
        entries = self.entries if top_n is None else self.entries[:top_n]
        payload = {
            "type": "LEADERBOARD_SNAPSHOT",
            "window": self.window.value,
            "version": self.version,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "generated_at": self.generated_at.isoformat(),
            "total_count": self.total_count,
            "entries": [entry.to_dict() for entry in entries],
        }
        payload["snapshot_hash"] = hashlib.sha256(
            json.dumps(payload, sort_keys=True, separators=(',', ':')).encode()
        ).hexdigest()
        return payload


@dataclass(frozen=True)
class LeaderboardPage:
    window: WindowKind
    version: int
    offset: int
    total_count: int
    entries: Tuple[LeaderboardEntry, ...]
    generated_at: datetime
    window_start: Optional[datetime]
    window_end: Optional[datetime]


class WindowBoard:
    """Mutable working state of one window. Only touched under `lock`."""

    def __init__(self, kind: WindowKind, bounds: WindowBounds, retention: int, require_same_time: bool):
        self.kind = kind
        self.bounds = bounds
        self.index = RankedIndex(require_same_time=require_same_time)
        self.totals: Dict[str, int] = {}
        self.last_event_at: Dict[str, datetime] = {}
        # Events with sequence <= this are already folded in by the last rebuild
        self.through_sequence = 0
        self.version = 0
        self.history: Deque[LeaderboardSnapshot] = deque(maxlen=retention)
        self.lock = asyncio.Lock()

    @property
    def current(self) -> LeaderboardSnapshot:
        return self.history[-1]

    def find(self, version: int) -> Optional[LeaderboardSnapshot]:
        for snapshot in reversed(self.history):
            if snapshot.version == version:
                return snapshot
        return None

    def reset(self, bounds: WindowBounds) -> None:
        self.bounds = bounds
        self.totals = {}
        self.last_event_at = {}
        self.through_sequence = 0


class LeaderboardAggregator:
    """
    Ranked, versioned leaderboards for every window kind.

    Score events enter through `apply`; `load_window` replaces a window's
    state wholesale (startup, rollover, recovery).
    """

    def __init__(
        self,
        broadcast: BroadcastAdapter,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.settings = settings or EngineSettings()
        self._broadcast = broadcast
        self._clock = clock
        self._profiles: Dict[str, ProfileInfo] = {}
        # sequence -> event, oldest first, bounded by settings.event_dedup_horizon
        self._recent: "OrderedDict[int, AppliedEvent]" = OrderedDict()

        now = clock()
        self._boards: Dict[WindowKind, WindowBoard] = {}
        for kind in WindowKind:
            board = WindowBoard(
                kind,
                window_bounds(kind, now),
                self.settings.version_retention,
                self.settings.rank_ties_require_same_time,
            )
            board.history.append(self._materialize(board, now))
            self._boards[kind] = board

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _board(self, window) -> WindowBoard:
        return self._boards[parse_window(window)]

    def current_snapshot(self, window) -> LeaderboardSnapshot:
        return self._board(window).current

    def bounds_of(self, window) -> WindowBounds:
        return self._board(window).bounds

    def snapshot(self, window, offset: int, limit: int, version: Optional[int] = None) -> LeaderboardPage:
        """
        Page of one snapshot version (the current one unless pinned).

        Raises:
            SnapshotExpiredError: pinned version is older than the retained range
            SnapshotNotFoundError: pinned version has not been published
        """
        board = self._board(window)
        snapshot = board.current

        if version is not None and version != snapshot.version:
            if version > snapshot.version:
                raise SnapshotNotFoundError(board.kind.value, version, snapshot.version)
            found = board.find(version)
            if found is None:
                raise SnapshotExpiredError(board.kind.value, version, board.history[0].version)
            snapshot = found

        return LeaderboardPage(
            window=snapshot.window,
            version=snapshot.version,
            offset=offset,
            total_count=snapshot.total_count,
            entries=snapshot.page(offset, limit),
            generated_at=snapshot.generated_at,
            window_start=snapshot.window_start,
            window_end=snapshot.window_end,
        )

    def rank_of(self, window, user_id: str) -> Optional[int]:
        """Rank in the current snapshot; None means unranked (no qualifying events)."""
        return self._board(window).index.rank_of(user_id)

    def total_of(self, window, user_id: str) -> int:
        return self._board(window).totals.get(user_id, 0)

    def needs_rollover(self, window, now: datetime) -> bool:
        bounds = self._board(window).bounds
        return bounds.end is not None and now >= bounds.end

    def windows_due(self, now: datetime) -> List[WindowKind]:
        return [kind for kind in WindowKind if self.needs_rollover(kind, now)]

    def has_applied(self, sequence: int) -> bool:
        return sequence in self._recent

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def apply(self, user_id: str, points: int, occurred_at: datetime, sequence: int) -> Dict[WindowKind, int]:
        """
        Fold one accepted score event into every window it qualifies for.

        A sequence already applied here is ignored, whichever path (local
        write or worker relay) delivers it again.

        Returns:
            {window: published version} for the windows that changed
        """
        if sequence in self._recent:
            logger.debug(f"[AGGREGATE DUPLICATE] seq={sequence} already applied")
            return {}
        self._remember(AppliedEvent(sequence, user_id, points, occurred_at))

        published: Dict[WindowKind, int] = {}

        for kind, board in self._boards.items():
            async with board.lock:
                if not board.bounds.contains(occurred_at):
                    continue
                if sequence <= board.through_sequence:
                    logger.debug(f"[AGGREGATE SKIP] {kind.value} seq={sequence} already in rebuild")
                    continue

                total, last_at = self._accumulate(board, user_id, points, occurred_at)
                changed = board.index.upsert(make_key(total, last_at, user_id))

                snapshot = await self._publish(board)
                published[kind] = snapshot.version
                logger.info(
                    f"[AGGREGATE] {kind.value} v{snapshot.version} user={user_id} "
                    f"total={total} seq={sequence} ranks_changed={changed}"
                )

        return published

    def _remember(self, event: AppliedEvent) -> None:
        self._recent[event.sequence] = event
        while len(self._recent) > self.settings.event_dedup_horizon:
            self._recent.popitem(last=False)

    @staticmethod
    def _accumulate(board: WindowBoard, user_id: str, points: int, occurred_at: datetime) -> Tuple[int, datetime]:
        total = board.totals.get(user_id, 0) + points
        previous_at = board.last_event_at.get(user_id)
        last_at = occurred_at if previous_at is None or occurred_at > previous_at else previous_at

        board.totals[user_id] = total
        board.last_event_at[user_id] = last_at
        return total, last_at

    async def load_window(
        self,
        window,
        bounds: WindowBounds,
        rows: Iterable[UserWindowTotal]
    ) -> LeaderboardSnapshot:
        """
        Replace a window's state with ledger totals (O(n log n) rebuild).

        Used at startup, on rollover to new bounds and for recovery.

        Events applied while the ledger was being read carry a sequence above
        the rows' highest one; they are replayed on top of the rows.
        """
        board = self._board(window)
        async with board.lock:
            board.reset(bounds)
            for row in rows:
                board.totals[row.user_id] = row.total
                board.last_event_at[row.user_id] = row.last_event_at
                board.through_sequence = max(board.through_sequence, row.last_sequence)

            replayed = 0
            for event in list(self._recent.values()):
                if event.sequence > board.through_sequence and bounds.contains(event.occurred_at):
                    self._accumulate(board, event.user_id, event.points, event.occurred_at)
                    replayed += 1

            board.index = RankedIndex(require_same_time=self.settings.rank_ties_require_same_time)
            board.index.load([
                make_key(total, board.last_event_at[user_id], user_id)
                for user_id, total in board.totals.items()
            ])

            snapshot = await self._publish(board)

        logger.info(
            f"[AGGREGATE REBUILD] {board.kind.value} v{snapshot.version} users={snapshot.total_count} "
            f"bounds=[{bounds.start}, {bounds.end}) through_seq={board.through_sequence} replayed={replayed}"
        )
        return snapshot

    async def update_profile(self, user_id: str, profile: ProfileInfo) -> None:
        """Set display data; windows that list the user publish a new version."""
        self._profiles[user_id] = profile
        for board in self._boards.values():
            async with board.lock:
                if user_id in board.index:
                    await self._publish(board)

    def set_profiles(self, profiles: Dict[str, ProfileInfo]) -> None:
        """Bulk profile load (startup); takes effect at the next publication."""
        self._profiles.update(profiles)

    # ------------------------------------------------------------------
    # Publication & subscription
    # ------------------------------------------------------------------

    def _materialize(self, board: WindowBoard, now: datetime) -> LeaderboardSnapshot:
        entries = []
        for key, rank in board.index.rows():
            user_id = key[2]
            profile = self._profiles.get(user_id)
            entries.append(LeaderboardEntry(
                user_id=user_id,
                window_total=-key[0],
                rank=rank,
                display_name=profile.display_name if profile else user_id,
                avatar_url=profile.avatar_url if profile else None,
                badge_count=profile.badge_count if profile else 0,
                last_event_at=key[1],
            ))
        return LeaderboardSnapshot(
            window=board.kind,
            version=board.version,
            window_start=board.bounds.start,
            window_end=board.bounds.end,
            generated_at=now,
            entries=tuple(entries),
        )

    async def _publish(self, board: WindowBoard) -> LeaderboardSnapshot:
        """Swap in the next version and fan it out. Caller holds board.lock."""
        board.version += 1
        snapshot = self._materialize(board, self._clock())
        board.history.append(snapshot)

        try:
            await self._broadcast.publish(
                leaderboard_channel(board.kind.value),
                snapshot.to_payload(self.settings.max_page_size),
            )
        except Exception:
            # The snapshot is already readable; only live delivery failed
            logger.exception(f"[BROADCAST ERROR] {board.kind.value} v{snapshot.version} not delivered")

        return snapshot

    async def subscribe(self, window, top_n: int) -> AsyncIterator[Dict[str, Any]]:
        """
        Live feed of whole-snapshot payloads, current snapshot first.

        Versions are strictly increasing per subscriber: stale or repeated
        versions (e.g. after a dropped message) are skipped.
        """
        kind = parse_window(window)
        top_n = max(1, min(top_n, self.settings.max_page_size))
        stream = await self._broadcast.subscribe(leaderboard_channel(kind.value))

        try:
            current = self._boards[kind].current
            last_version = current.version
            yield current.to_payload(top_n)

            async for message in stream:
                version = message.get("version", 0)
                if version <= last_version:
                    continue
                last_version = version
                if len(message.get("entries", [])) > top_n:
                    message["entries"] = message["entries"][:top_n]
                yield message
        finally:
            await stream.aclose()
