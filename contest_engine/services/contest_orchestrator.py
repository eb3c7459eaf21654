"""
Contest Orchestrator: composition root of the engine

Sequences registry -> participation tracker -> score ledger -> aggregator.

- One database session (and transaction) per operation.
- Score events are applied to the aggregator only after their transaction
  commits, so leaderboards never show credit the ledger does not hold.
- Errors from inner components propagate unchanged.
- Weekly/monthly windows are rolled over lazily before reads and writes
  (and on a schedule by tasks.window_rollover).
- With an event bus, accepted score events, profile changes and rebuild
  requests are relayed to the other worker processes, whose aggregators
  apply them too.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from contest_engine.config.feature_flags import EngineSettings
from contest_engine.exceptions import InvalidSubmissionError
from contest_engine.orm.contest import Contest
from contest_engine.orm.leaderboard_profile import LeaderboardProfile
from contest_engine.orm.participation import ContestParticipation
from contest_engine.orm.score_event import ScoreEvent, ScoreSourceKind
from contest_engine.realtime.broadcast_adapter import BroadcastAdapter
from contest_engine.services import contest_registry, participation_tracker, score_ledger
from contest_engine.services.contest_registry import LifecycleState
from contest_engine.services.leaderboard_aggregator import (
    LeaderboardAggregator,
    LeaderboardPage,
    ProfileInfo,
)
from contest_engine.services.participation_tracker import StandingRow
from contest_engine.services.ranking import level_for_xp
from contest_engine.services.score_event_relay import (
    PROFILE_UPDATED,
    REBUILD_REQUESTED,
    SCORE_EVENT,
    ScoreEventRelay,
)
from contest_engine.services.windows import WindowKind, parse_window, window_bounds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContestState:
    contest_id: int
    state: LifecycleState
    cancelled: bool
    participant_count: int
    as_of: datetime


@dataclass(frozen=True)
class AwardResult:
    event: ScoreEvent
    deduplicated: bool


@dataclass(frozen=True)
class UserStanding:
    user_id: str
    global_total: int
    weekly_total: int
    monthly_total: int
    level: int
    ranks: Dict[WindowKind, Optional[int]]


class ContestOrchestrator:
    """External API of the contest & leaderboard engine."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        aggregator: LeaderboardAggregator,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        event_bus: Optional[BroadcastAdapter] = None
    ):
        self.session_factory = session_factory
        self.aggregator = aggregator
        self.settings = settings or aggregator.settings
        self.clock = clock
        self._rollover_lock = asyncio.Lock()
        self.relay = ScoreEventRelay(event_bus, self.receive_relay_message) if event_bus is not None else None

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self.clock()

    # ------------------------------------------------------------------
    # Contests
    # ------------------------------------------------------------------

    async def create_contest(self, definition: Dict[str, Any]) -> Contest:
        async with self.session_factory() as db:
            contest = await contest_registry.create(definition, db)
            await db.commit()
            await db.refresh(contest)
            return contest

    async def get_contest(self, contest_id: int) -> Contest:
        async with self.session_factory() as db:
            return await contest_registry.get(contest_id, db)

    async def update_contest(self, contest_id: int, changes: Dict[str, Any]) -> Contest:
        async with self.session_factory() as db:
            # Commits under the contest lock
            contest = await contest_registry.update(contest_id, changes, db)
            await db.refresh(contest)
            return contest

    async def cancel_contest(self, contest_id: int, reason: Optional[str] = None, now: Optional[datetime] = None) -> Contest:
        async with self.session_factory() as db:
            contest = await contest_registry.cancel(contest_id, reason, self._now(now), db)
            await db.commit()
            await db.refresh(contest)
            return contest

    async def list_contests(self, state: LifecycleState, now: Optional[datetime] = None, limit: int = 50) -> List[Contest]:
        async with self.session_factory() as db:
            return await contest_registry.list_contests(state, self._now(now), db, limit=limit)

    async def get_contest_state(self, contest_id: int, now: Optional[datetime] = None) -> ContestState:
        now = self._now(now)
        async with self.session_factory() as db:
            contest = await contest_registry.get(contest_id, db)
            count = await contest_registry.count_participants(contest_id, db)
        return ContestState(
            contest_id=contest_id,
            state=contest_registry.lifecycle_state(contest, now),
            cancelled=contest.is_cancelled,
            participant_count=count,
            as_of=now,
        )

    # ------------------------------------------------------------------
    # Participation
    # ------------------------------------------------------------------

    async def join_contest(self, contest_id: int, user_id: str, now: Optional[datetime] = None) -> ContestParticipation:
        if not user_id:
            raise InvalidSubmissionError("user_id is required")
        now = self._now(now)
        async with self.session_factory() as db:
            contest = await contest_registry.get(contest_id, db)
            participation = await participation_tracker.join(contest, user_id, now, db)
            await db.commit()
            await db.refresh(participation)
            return participation

    async def start_attempt(self, participation_id: int, now: Optional[datetime] = None) -> ContestParticipation:
        async with self.session_factory() as db:
            participation = await participation_tracker.mark_in_progress(participation_id, self._now(now), db)
            await db.commit()
            await db.refresh(participation)
            return participation

    async def submit_contest_score(
        self,
        participation_id: int,
        score: int,
        correct_count: int,
        total_questions: int,
        now: Optional[datetime] = None
    ) -> ContestParticipation:
        """
        Write-once score submission.

        A retry returns the stored participation; its original score stands.
        """
        now = self._now(now)
        async with self.session_factory() as db:
            result = await participation_tracker.submit_score(
                participation_id, score, correct_count, total_questions, now, db
            )
            await db.commit()
            await db.refresh(result.participation)

        if result.event is not None:
            await self._apply_event(result.event, now)
        return result.participation

    async def get_participation(self, contest_id: int, user_id: str) -> Optional[ContestParticipation]:
        async with self.session_factory() as db:
            return await participation_tracker.get_participation(contest_id, user_id, db)

    async def get_contest_participants(self, contest_id: int) -> List[ContestParticipation]:
        """Roster in join order, every status included."""
        async with self.session_factory() as db:
            await contest_registry.get(contest_id, db)
            return await participation_tracker.list_for_contest(contest_id, db)

    async def get_contest_standings(self, contest_id: int) -> List[StandingRow]:
        async with self.session_factory() as db:
            await contest_registry.get(contest_id, db)
            return await participation_tracker.contest_standings(contest_id, db)

    async def get_user_history(self, user_id: str, limit: int = 50) -> List[ContestParticipation]:
        async with self.session_factory() as db:
            return await participation_tracker.user_history(user_id, db, limit=limit)

    async def get_best_performances(self, user_id: str, limit: int = 5) -> List[ContestParticipation]:
        async with self.session_factory() as db:
            return await participation_tracker.best_performances(user_id, db, limit=limit)

    async def find_stale_attempts(self, now: Optional[datetime] = None) -> List[Tuple[ContestParticipation, Contest]]:
        grace = timedelta(minutes=self.settings.in_progress_grace_minutes)
        async with self.session_factory() as db:
            return await participation_tracker.find_stale_attempts(self._now(now), grace, db)

    # ------------------------------------------------------------------
    # Non-contest XP
    # ------------------------------------------------------------------

    async def award_points(
        self,
        user_id: str,
        points: int,
        source_kind: ScoreSourceKind,
        source_id: str,
        occurred_at: Optional[datetime] = None
    ) -> AwardResult:
        """
        Credit quiz, daily challenge or achievement XP through the ledger.

        Contest points only enter via submit_contest_score.
        """
        if source_kind == ScoreSourceKind.CONTEST_PARTICIPATION:
            raise InvalidSubmissionError("contest points are recorded by score submission")
        if not user_id or not str(source_id):
            raise InvalidSubmissionError("user_id and source_id are required")

        occurred_at = self._now(occurred_at)
        async with self.session_factory() as db:
            appended = await score_ledger.append(user_id, points, source_kind, source_id, occurred_at, db)
            await db.commit()

        if not appended.deduplicated:
            await self._apply_event(appended.event, self.clock())
        return AwardResult(event=appended.event, deduplicated=appended.deduplicated)

    async def get_score_history(self, user_id: str, after_sequence: int = 0, limit: int = 50) -> List[ScoreEvent]:
        """A user's ledger events in sequence order, resumable from any sequence."""
        events: List[ScoreEvent] = []
        async with self.session_factory() as db:
            stream = score_ledger.events_for_user(
                user_id, db, after_sequence=after_sequence, batch_size=self.settings.ledger_page_size
            )
            try:
                async for event in stream:
                    events.append(event)
                    if len(events) >= limit:
                        break
            finally:
                await stream.aclose()
        return events

    # ------------------------------------------------------------------
    # Leaderboards
    # ------------------------------------------------------------------

    async def _apply_event(self, event: ScoreEvent, now: datetime) -> None:
        await self.roll_windows(now)
        await self.aggregator.apply(event.user_id, event.points, event.occurred_at, event.id)
        if self.relay is not None:
            await self.relay.publish_event(event)

    async def receive_relay_message(self, message: Dict[str, Any]) -> None:
        """Apply a change another worker committed."""
        kind = message.get("type")
        if kind == SCORE_EVENT:
            await self.roll_windows(self.clock())
            await self.aggregator.apply(
                message["user_id"],
                int(message["points"]),
                datetime.fromisoformat(message["occurred_at"]),
                int(message["sequence"]),
            )
        elif kind == PROFILE_UPDATED:
            await self.aggregator.update_profile(message["user_id"], ProfileInfo(
                display_name=message["display_name"],
                avatar_url=message.get("avatar_url"),
                badge_count=int(message.get("badge_count", 0)),
            ))
        elif kind == REBUILD_REQUESTED:
            logger.info(f"[RELAY] rebuild requested by {message['origin']}")
            await self.rebuild_leaderboards()
        else:
            logger.warning(f"[RELAY] ignoring message of unknown type {kind!r}")

    async def get_leaderboard(
        self,
        window,
        page: int = 1,
        page_size: int = 20,
        version: Optional[int] = None
    ) -> LeaderboardPage:
        """
        1-based page of one leaderboard version.

        Pass the version from the first page to keep paging a consistent view.
        """
        kind = parse_window(window)
        if page < 1:
            raise InvalidSubmissionError("page must be >= 1", {"page": page})
        if page_size < 1 or page_size > self.settings.max_page_size:
            raise InvalidSubmissionError(
                f"page_size must be between 1 and {self.settings.max_page_size}",
                {"page_size": page_size}
            )

        if version is None:
            await self.roll_windows(self.clock())
        return self.aggregator.snapshot(kind, (page - 1) * page_size, page_size, version=version)

    async def subscribe_leaderboard(self, window, top_n: int = 10) -> AsyncIterator[Dict[str, Any]]:
        await self.roll_windows(self.clock())
        feed = self.aggregator.subscribe(window, top_n)
        try:
            async for payload in feed:
                yield payload
        finally:
            await feed.aclose()

    async def get_user_standing(self, user_id: str) -> UserStanding:
        await self.roll_windows(self.clock())
        global_total = self.aggregator.total_of(WindowKind.GLOBAL, user_id)
        return UserStanding(
            user_id=user_id,
            global_total=global_total,
            weekly_total=self.aggregator.total_of(WindowKind.WEEKLY, user_id),
            monthly_total=self.aggregator.total_of(WindowKind.MONTHLY, user_id),
            level=level_for_xp(global_total),
            ranks={kind: self.aggregator.rank_of(kind, user_id) for kind in WindowKind},
        )

    async def upsert_profile(
        self,
        user_id: str,
        display_name: str,
        avatar_url: Optional[str] = None,
        badge_count: int = 0
    ) -> LeaderboardProfile:
        if badge_count < 0:
            raise InvalidSubmissionError("badge_count must not be negative")
        async with self.session_factory() as db:
            profile = await db.get(LeaderboardProfile, user_id)
            if profile is None:
                profile = LeaderboardProfile(user_id=user_id)
                db.add(profile)
            profile.display_name = display_name
            profile.avatar_url = avatar_url
            profile.badge_count = badge_count
            await db.commit()
            await db.refresh(profile)

        await self.aggregator.update_profile(
            user_id, ProfileInfo(display_name=display_name, avatar_url=avatar_url, badge_count=badge_count)
        )
        if self.relay is not None:
            await self.relay.publish_profile(user_id, display_name, avatar_url, badge_count)
        return profile

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def rebuild_window(self, window, now: Optional[datetime] = None):
        """Recompute one window from the ledger for the bounds containing `now`."""
        kind = parse_window(window)
        bounds = window_bounds(kind, self._now(now))
        async with self.session_factory() as db:
            rows = await score_ledger.window_totals(bounds.start, bounds.end, db)
        return await self.aggregator.load_window(kind, bounds, rows)

    async def rebuild_leaderboards(self, now: Optional[datetime] = None, propagate: bool = False) -> Dict[WindowKind, int]:
        """
        Reload profiles and rebuild every window from the ledger.

        With propagate=True the other workers are asked to rebuild as well.
        """
        now = self._now(now)
        async with self.session_factory() as db:
            result = await db.execute(select(LeaderboardProfile))
            self.aggregator.set_profiles({
                profile.user_id: ProfileInfo(
                    display_name=profile.display_name,
                    avatar_url=profile.avatar_url,
                    badge_count=profile.badge_count,
                )
                for profile in result.scalars().all()
            })

        versions = {}
        for kind in WindowKind:
            snapshot = await self.rebuild_window(kind, now)
            versions[kind] = snapshot.version
        summary = ", ".join(f"{kind.value}=v{version}" for kind, version in versions.items())
        logger.info(f"[REBUILD] leaderboards rebuilt from ledger: {summary}")

        if propagate and self.relay is not None:
            await self.relay.request_rebuild()
        return versions

    async def roll_windows(self, now: Optional[datetime] = None) -> List[WindowKind]:
        """Rebuild every window whose bounds no longer contain `now`."""
        now = self._now(now)
        if not self.aggregator.windows_due(now):
            return []

        rolled = []
        async with self._rollover_lock:
            # Re-check: a concurrent caller may have rolled while we waited
            for kind in self.aggregator.windows_due(now):
                previous = self.aggregator.bounds_of(kind)
                await self.rebuild_window(kind, now)
                rolled.append(kind)
                logger.info(f"[ROLLOVER] {kind.value} window [{previous.start}, {previous.end}) closed")
        return rolled
