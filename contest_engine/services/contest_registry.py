"""
Contest Registry

Holds contest definitions and derives lifecycle state from wall-clock time.

Lifecycle is never stored:
- SCHEDULED  now < start_time
- LIVE       start_time <= now <= end_time
- ENDED      now > end_time

Administrative cancellation is stored separately and does not change the
derived state; the participation tracker treats it like ENDED for joins.
"""
import logging
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from contest_engine.core.keyed_lock import KeyedLock
from contest_engine.exceptions import ContestNotFoundError, InvalidContestError
from contest_engine.orm.contest import Contest, ContestDifficulty
from contest_engine.orm.participation import ContestParticipation

logger = logging.getLogger(__name__)

# Serializes definition edits with joins on the same contest
contest_locks = KeyedLock()


class LifecycleState(str, PyEnum):
    SCHEDULED = "Scheduled"
    LIVE = "Live"
    ENDED = "Ended"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.lower():
                    return member
        return None


# Fields an organizer may set on create/update
DEFINITION_FIELDS = (
    "title",
    "description",
    "subject_id",
    "difficulty",
    "question_count",
    "duration_minutes",
    "start_time",
    "end_time",
    "max_participants",
    "prize",
    "created_by",
)

REQUIRED_FIELDS = (
    "title",
    "question_count",
    "duration_minutes",
    "start_time",
    "end_time",
    "max_participants",
)

# Optional on create (a default applies) but stored NOT NULL
DEFAULTED_FIELDS = ("difficulty",)


def lifecycle_state(contest: Contest, now: datetime) -> LifecycleState:
    """Pure function of (start_time, end_time, now)."""
    return lifecycle_state_for(contest.start_time, contest.end_time, now)


def lifecycle_state_for(start: datetime, end: datetime, now: datetime) -> LifecycleState:
    if now < start:
        return LifecycleState.SCHEDULED
    if now <= end:
        return LifecycleState.LIVE
    return LifecycleState.ENDED


def validate_definition(definition: Dict[str, Any], allow_defaults: bool = True) -> None:
    """
    Check contest invariants.

    With allow_defaults=False (edits) an explicit None for a defaulted
    field is rejected instead of being left for create to fill in.

    Raises:
        InvalidContestError: on the first violated invariant
    """
    missing = [f for f in REQUIRED_FIELDS if definition.get(f) is None]
    if missing:
        raise InvalidContestError(f"Missing required fields: {missing}", {"missing": missing})

    if not allow_defaults:
        nulled = [f for f in DEFAULTED_FIELDS if f in definition and definition[f] is None]
        if nulled:
            raise InvalidContestError(f"Fields cannot be null: {nulled}", {"null": nulled})

    unknown = [f for f in definition if f not in DEFINITION_FIELDS]
    if unknown:
        raise InvalidContestError(f"Unknown fields: {unknown}", {"unknown": unknown})

    if not str(definition["title"]).strip():
        raise InvalidContestError("title must not be empty")

    start = definition["start_time"]
    end = definition["end_time"]
    if start >= end:
        raise InvalidContestError(
            "start_time must be before end_time",
            {"start_time": start.isoformat(), "end_time": end.isoformat()}
        )

    if definition["duration_minutes"] <= 0:
        raise InvalidContestError("duration_minutes must be positive")

    if definition["max_participants"] <= 0:
        raise InvalidContestError("max_participants must be positive")

    if definition["question_count"] <= 0:
        raise InvalidContestError("question_count must be positive")

    difficulty = definition.get("difficulty")
    if difficulty is not None:
        try:
            ContestDifficulty(difficulty)
        except ValueError:
            raise InvalidContestError(f"Unknown difficulty '{difficulty}'")


async def get(contest_id: int, db: AsyncSession) -> Contest:
    """
    Load a contest.

    Raises:
        ContestNotFoundError: if the id does not resolve
    """
    contest = await db.get(Contest, contest_id)
    if contest is None:
        raise ContestNotFoundError(contest_id)
    return contest


async def create(definition: Dict[str, Any], db: AsyncSession) -> Contest:
    """
    Validate and persist a new contest definition.

    The caller owns the transaction (commit happens in the orchestrator).
    """
    validate_definition(definition)

    contest = Contest(**definition)
    if contest.difficulty is None:
        contest.difficulty = ContestDifficulty.MEDIUM
    db.add(contest)
    await db.flush()

    logger.info(
        f"[CONTEST CREATED] id={contest.id} title='{contest.title}' "
        f"start={contest.start_time.isoformat()} end={contest.end_time.isoformat()} "
        f"capacity={contest.max_participants}"
    )
    return contest


async def count_participants(contest_id: int, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(ContestParticipation.id)).where(
            ContestParticipation.contest_id == contest_id
        )
    )
    return result.scalar_one()


async def update(contest_id: int, changes: Dict[str, Any], db: AsyncSession) -> Contest:
    """
    Edit a contest definition.

    Only allowed while nobody has joined; the merged definition is
    re-validated against the same invariants as create.

    Runs under the contest lock shared with joins and commits before
    releasing it, so a join sees either the old definition with no edit
    pending or the edited one.

    Raises:
        ContestNotFoundError
        InvalidContestError: invariant violated or participants exist
    """
    async with contest_locks.hold(contest_id):
        contest = await get(contest_id, db)
        # Row lock keeps joiners in other processes out until commit (no-op on SQLite)
        await db.execute(select(Contest.id).where(Contest.id == contest_id).with_for_update())

        if contest.is_cancelled:
            raise InvalidContestError(f"Contest {contest_id} is cancelled")

        participants = await count_participants(contest_id, db)
        if participants > 0:
            raise InvalidContestError(
                f"Contest {contest_id} cannot be edited after participants joined",
                {"participants": participants}
            )

        merged = {field: getattr(contest, field) for field in DEFINITION_FIELDS}
        merged.update(changes)
        validate_definition(merged, allow_defaults=False)

        for field, value in changes.items():
            setattr(contest, field, value)
        await db.commit()

    logger.info(f"[CONTEST UPDATED] id={contest_id} fields={sorted(changes)}")
    return contest


async def cancel(contest_id: int, reason: Optional[str], now: datetime, db: AsyncSession) -> Contest:
    """Administrative cancellation. Idempotent: a second cancel keeps the first timestamp."""
    contest = await get(contest_id, db)

    if contest.is_cancelled:
        logger.info(f"[CONTEST CANCEL NO-OP] id={contest_id} already cancelled at {contest.cancelled_at}")
        return contest

    contest.cancelled_at = now
    contest.cancel_reason = reason
    await db.flush()

    logger.warning(f"[CONTEST CANCELLED] id={contest_id} reason='{reason}'")
    return contest


async def list_contests(
    state: LifecycleState,
    now: datetime,
    db: AsyncSession,
    limit: int = 50
) -> List[Contest]:
    """
    Contests in a lifecycle state at `now`.

    LIVE and SCHEDULED exclude cancelled contests and are ordered by start
    time; ENDED is ordered by most recent end first.
    """
    query = select(Contest)

    if state == LifecycleState.LIVE:
        query = query.where(
            Contest.start_time <= now,
            Contest.end_time >= now,
            Contest.cancelled_at.is_(None),
        ).order_by(Contest.start_time.asc(), Contest.id.asc())
    elif state == LifecycleState.SCHEDULED:
        query = query.where(
            Contest.start_time > now,
            Contest.cancelled_at.is_(None),
        ).order_by(Contest.start_time.asc(), Contest.id.asc())
    else:
        query = query.where(Contest.end_time < now).order_by(Contest.end_time.desc(), Contest.id.desc())

    result = await db.execute(query.limit(limit))
    return list(result.scalars().all())
