"""
Score Ledger

Append-only record of scoring events; the single source of truth for XP and
contest points. Leaderboards are projections of this table and can be
rebuilt from it at any time.

Idempotency:
- (source_kind, source_id) may contribute at most one event
- the dedup check and the insert are one logical operation: a per-key lock
  covers writers in this process, the unique constraint covers the rest
- a losing writer gets the stored event back with deduplicated=True
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from contest_engine.core.keyed_lock import KeyedLock
from contest_engine.orm.score_event import ScoreEvent, ScoreSourceKind

logger = logging.getLogger(__name__)

_append_locks = KeyedLock()

DEFAULT_PAGE_SIZE = 500


@dataclass(frozen=True)
class AppendResult:
    event: ScoreEvent
    deduplicated: bool


@dataclass(frozen=True)
class UserWindowTotal:
    """Aggregate of one user's events inside a window."""
    user_id: str
    total: int
    last_event_at: datetime
    event_count: int
    last_sequence: int


async def get_by_key(source_kind: ScoreSourceKind, source_id: str, db: AsyncSession) -> Optional[ScoreEvent]:
    result = await db.execute(
        select(ScoreEvent).where(
            ScoreEvent.source_kind == source_kind,
            ScoreEvent.source_id == str(source_id)
        )
    )
    return result.scalar_one_or_none()


async def append(
    user_id: str,
    points: int,
    source_kind: ScoreSourceKind,
    source_id: str,
    occurred_at: datetime,
    db: AsyncSession
) -> AppendResult:
    """
    Append one scoring event, or return the stored one for a repeated key.

    The event is flushed (sequence assigned) but not committed; the caller
    owns the transaction. If a concurrent writer committed the same key
    first, the unique constraint fires, the caller's transaction is rolled
    back and the winner's event is returned as deduplicated.
    """
    source_id = str(source_id)

    async with _append_locks.hold((source_kind, source_id)):
        existing = await get_by_key(source_kind, source_id, db)
        if existing is not None:
            logger.info(
                f"[LEDGER DEDUP] {source_kind.value}:{source_id} already recorded as seq={existing.id}"
            )
            return AppendResult(event=existing, deduplicated=True)

        event = ScoreEvent(
            user_id=user_id,
            points=points,
            source_kind=source_kind,
            source_id=source_id,
            occurred_at=occurred_at,
        )
        db.add(event)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            existing = await get_by_key(source_kind, source_id, db)
            if existing is None:
                raise
            logger.warning(
                f"[LEDGER DEDUP] {source_kind.value}:{source_id} lost insert race, "
                f"stored seq={existing.id}"
            )
            return AppendResult(event=existing, deduplicated=True)

    logger.info(
        f"[LEDGER APPEND] seq={event.id} user={user_id} points={points} "
        f"source={source_kind.value}:{source_id}"
    )
    return AppendResult(event=event, deduplicated=False)


async def events_for_user(
    user_id: str,
    db: AsyncSession,
    since: Optional[datetime] = None,
    after_sequence: int = 0,
    batch_size: int = DEFAULT_PAGE_SIZE
) -> AsyncIterator[ScoreEvent]:
    """
    Lazily yield a user's events in sequence order.

    Pages by sequence cursor, so iteration can be resumed from any
    event's sequence via `after_sequence`.
    """
    cursor = after_sequence
    while True:
        query = select(ScoreEvent).where(
            ScoreEvent.user_id == user_id,
            ScoreEvent.id > cursor
        )
        if since is not None:
            query = query.where(ScoreEvent.occurred_at >= since)
        result = await db.execute(query.order_by(ScoreEvent.id.asc()).limit(batch_size))
        batch = result.scalars().all()

        for event in batch:
            yield event

        if len(batch) < batch_size:
            return
        cursor = batch[-1].id


def _window_filter(query, window_start: Optional[datetime], window_end: Optional[datetime]):
    if window_start is not None:
        query = query.where(ScoreEvent.occurred_at >= window_start)
    if window_end is not None:
        query = query.where(ScoreEvent.occurred_at < window_end)
    return query


async def total_for_user(
    user_id: str,
    window_start: Optional[datetime],
    window_end: Optional[datetime],
    db: AsyncSession
) -> int:
    """Sum of points with occurred_at in [window_start, window_end). None bounds are open."""
    query = select(func.coalesce(func.sum(ScoreEvent.points), 0)).where(ScoreEvent.user_id == user_id)
    query = _window_filter(query, window_start, window_end)
    result = await db.execute(query)
    return int(result.scalar_one())


async def window_totals(
    window_start: Optional[datetime],
    window_end: Optional[datetime],
    db: AsyncSession
) -> List[UserWindowTotal]:
    """Per-user totals for a window; the input of a full leaderboard rebuild."""
    query = select(
        ScoreEvent.user_id,
        func.sum(ScoreEvent.points),
        func.max(ScoreEvent.occurred_at),
        func.count(ScoreEvent.id),
        func.max(ScoreEvent.id),
    ).group_by(ScoreEvent.user_id)
    query = _window_filter(query, window_start, window_end)

    result = await db.execute(query)
    return [
        UserWindowTotal(
            user_id=row[0],
            total=int(row[1] or 0),
            last_event_at=row[2],
            event_count=int(row[3]),
            last_sequence=int(row[4]),
        )
        for row in result.all()
    ]


async def count_events(db: AsyncSession) -> int:
    result = await db.execute(select(func.count(ScoreEvent.id)))
    return result.scalar_one()
