"""
Participation Tracker

Enforces one participation per (contest, user) and exactly one terminal
score per participation.

State machine:
    JOINED -> IN_PROGRESS -> COMPLETED (terminal, absorbing)
    JOINED -> COMPLETED is allowed (attempt started and finished at submit)

Idempotency:
- join twice returns the existing participation
- submit twice returns the stored result; the second score is ignored
- mark_in_progress on IN_PROGRESS is a no-op

Concurrency:
- joins are serialized per contest (capacity check is read-modify-write),
  on the same lock the registry holds for definition edits
- state changes are serialized per participation
- across processes: unique (contest_id, user_id) and the version column
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.ext.asyncio import AsyncSession

from contest_engine.core.keyed_lock import KeyedLock
from contest_engine.exceptions import (
    AlreadyCompletedError,
    ContestEndedError,
    ContestFullError,
    InvalidSubmissionError,
    ParticipationNotFoundError,
)
from contest_engine.orm.contest import Contest
from contest_engine.orm.participation import ContestParticipation, ParticipationStatus
from contest_engine.orm.score_event import ScoreEvent, ScoreSourceKind
from contest_engine.services import score_ledger
from contest_engine.services.contest_registry import LifecycleState, contest_locks, lifecycle_state

logger = logging.getLogger(__name__)

_participation_locks = KeyedLock()


@dataclass(frozen=True)
class SubmitResult:
    participation: ContestParticipation
    # None when the submit was a retry of an already completed participation
    event: Optional[ScoreEvent]


@dataclass(frozen=True)
class StandingRow:
    """One row of a per-contest leaderboard."""
    rank: int
    participation_id: int
    user_id: str
    score: int
    correct_count: Optional[int]
    total_questions: Optional[int]
    completed_at: datetime


async def get_by_id(participation_id: int, db: AsyncSession) -> ContestParticipation:
    participation = await db.get(ContestParticipation, participation_id)
    if participation is None:
        raise ParticipationNotFoundError(participation_id)
    return participation


async def get_participation(contest_id: int, user_id: str, db: AsyncSession) -> Optional[ContestParticipation]:
    result = await db.execute(
        select(ContestParticipation).where(
            ContestParticipation.contest_id == contest_id,
            ContestParticipation.user_id == user_id
        )
    )
    return result.scalar_one_or_none()


async def join(contest: Contest, user_id: str, now: datetime, db: AsyncSession) -> ContestParticipation:
    """
    Join a contest (idempotent).

    Permitted while the contest is SCHEDULED or LIVE. Every participation,
    whatever its status, counts toward max_participants.

    Commits before releasing the contest lock so the next joiner's
    capacity count includes this row.

    Raises:
        ContestEndedError: contest ENDED or cancelled
        ContestFullError: capacity reached
    """
    contest_id = contest.id

    async with contest_locks.hold(contest_id):
        # The definition may have been edited while we waited for the lock
        await db.refresh(contest)

        existing = await get_participation(contest_id, user_id, db)
        if existing is not None:
            logger.info(
                f"[JOIN NO-OP] user={user_id} contest={contest_id} "
                f"already joined as participation={existing.id}"
            )
            return existing

        if contest.is_cancelled:
            raise ContestEndedError(contest_id, reason="cancelled")

        if lifecycle_state(contest, now) == LifecycleState.ENDED:
            raise ContestEndedError(contest_id)

        # Row lock serializes joiners across processes (no-op on SQLite)
        await db.execute(select(Contest.id).where(Contest.id == contest_id).with_for_update())
        result = await db.execute(
            select(func.count(ContestParticipation.id)).where(
                ContestParticipation.contest_id == contest_id
            )
        )
        if result.scalar_one() >= contest.max_participants:
            logger.info(f"[JOIN REJECTED] user={user_id} contest={contest_id} full")
            raise ContestFullError(contest_id, contest.max_participants)

        participation = ContestParticipation(
            contest_id=contest_id,
            user_id=user_id,
            status=ParticipationStatus.JOINED,
            joined_at=now,
        )
        db.add(participation)
        try:
            await db.flush()
        except IntegrityError:
            # Another process inserted the same (contest, user) first
            await db.rollback()
            existing = await get_participation(contest_id, user_id, db)
            if existing is None:
                raise
            logger.warning(
                f"[JOIN NO-OP] user={user_id} contest={contest_id} lost insert race, "
                f"participation={existing.id}"
            )
            return existing
        await db.commit()

    logger.info(f"[JOIN] user={user_id} contest={contest_id} participation={participation.id}")
    return participation


async def mark_in_progress(participation_id: int, now: datetime, db: AsyncSession) -> ContestParticipation:
    """
    JOINED -> IN_PROGRESS.

    Raises:
        ParticipationNotFoundError
        AlreadyCompletedError: participation already has a final score
    """
    async with _participation_locks.hold(participation_id):
        participation = await get_by_id(participation_id, db)

        if participation.is_completed:
            raise AlreadyCompletedError(participation_id)

        if participation.status == ParticipationStatus.IN_PROGRESS:
            logger.info(f"[START NO-OP] participation={participation_id} already in progress")
            return participation

        participation.status = ParticipationStatus.IN_PROGRESS
        participation.started_at = now
        try:
            await db.flush()
        except StaleDataError:
            await db.rollback()
            participation = await get_by_id(participation_id, db)
            await db.refresh(participation)
            if participation.is_completed:
                raise AlreadyCompletedError(participation_id)
            return participation

    logger.info(f"[START] participation={participation_id} user={participation.user_id}")
    return participation


def validate_submission(raw_score: int, correct_count: int, total_questions: int) -> None:
    if raw_score < 0:
        raise InvalidSubmissionError("score must not be negative", {"score": raw_score})
    if total_questions <= 0:
        raise InvalidSubmissionError("total_questions must be positive", {"total_questions": total_questions})
    if correct_count < 0 or correct_count > total_questions:
        raise InvalidSubmissionError(
            "correct_count must be between 0 and total_questions",
            {"correct_count": correct_count, "total_questions": total_questions}
        )


async def _reload_completed(participation_id: int, db: AsyncSession) -> ContestParticipation:
    participation = await get_by_id(participation_id, db)
    await db.refresh(participation)
    return participation


async def submit_score(
    participation_id: int,
    raw_score: int,
    correct_count: int,
    total_questions: int,
    now: datetime,
    db: AsyncSession
) -> SubmitResult:
    """
    Record the terminal score (write-once) and its ledger event.

    Both writes share the caller's transaction. A repeated submit returns
    the stored participation unchanged with event=None.

    Raises:
        ParticipationNotFoundError
        InvalidSubmissionError: malformed score payload
    """
    validate_submission(raw_score, correct_count, total_questions)

    async with _participation_locks.hold(participation_id):
        participation = await get_by_id(participation_id, db)

        if participation.is_completed:
            logger.info(
                f"[SUBMIT NO-OP] participation={participation_id} already completed "
                f"with score={participation.score}"
            )
            return SubmitResult(participation=participation, event=None)

        if participation.started_at is None:
            participation.started_at = now
        participation.score = raw_score
        participation.correct_count = correct_count
        participation.total_questions = total_questions
        participation.completed_at = now
        participation.status = ParticipationStatus.COMPLETED

        try:
            await db.flush()
        except StaleDataError:
            # Completed by another writer between our read and write
            await db.rollback()
            participation = await _reload_completed(participation_id, db)
            logger.warning(f"[SUBMIT NO-OP] participation={participation_id} completed concurrently")
            return SubmitResult(participation=participation, event=None)

        appended = await score_ledger.append(
            user_id=participation.user_id,
            points=raw_score,
            source_kind=ScoreSourceKind.CONTEST_PARTICIPATION,
            source_id=str(participation_id),
            occurred_at=now,
            db=db,
        )
        if appended.deduplicated:
            # Ledger already holds this participation's credit; the stored
            # participation is authoritative.
            await db.rollback()
            participation = await _reload_completed(participation_id, db)
            return SubmitResult(participation=participation, event=None)

        participation.score_event_id = appended.event.id
        await db.flush()

    logger.info(
        f"[SUBMIT] participation={participation_id} user={participation.user_id} "
        f"contest={participation.contest_id} score={raw_score} seq={appended.event.id}"
    )
    return SubmitResult(participation=participation, event=appended.event)


async def list_for_contest(contest_id: int, db: AsyncSession) -> List[ContestParticipation]:
    result = await db.execute(
        select(ContestParticipation)
        .where(ContestParticipation.contest_id == contest_id)
        .order_by(ContestParticipation.joined_at.asc(), ContestParticipation.id.asc())
    )
    return list(result.scalars().all())


async def contest_standings(contest_id: int, db: AsyncSession) -> List[StandingRow]:
    """
    Per-contest leaderboard of completed participations.

    Ordering: score desc, completed_at asc, user_id asc.
    Equal scores share a rank (competition ranking).
    """
    result = await db.execute(
        select(ContestParticipation)
        .where(
            ContestParticipation.contest_id == contest_id,
            ContestParticipation.status == ParticipationStatus.COMPLETED
        )
        .order_by(
            ContestParticipation.score.desc(),
            ContestParticipation.completed_at.asc(),
            ContestParticipation.user_id.asc()
        )
    )

    rows: List[StandingRow] = []
    previous_score = None
    current_rank = 0
    for position, participation in enumerate(result.scalars().all(), start=1):
        if participation.score != previous_score:
            current_rank = position
            previous_score = participation.score
        rows.append(StandingRow(
            rank=current_rank,
            participation_id=participation.id,
            user_id=participation.user_id,
            score=participation.score,
            correct_count=participation.correct_count,
            total_questions=participation.total_questions,
            completed_at=participation.completed_at,
        ))
    return rows


async def user_history(user_id: str, db: AsyncSession, limit: int = 50) -> List[ContestParticipation]:
    """A user's participations, newest join first."""
    result = await db.execute(
        select(ContestParticipation)
        .where(ContestParticipation.user_id == user_id)
        .order_by(ContestParticipation.joined_at.desc(), ContestParticipation.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def best_performances(user_id: str, db: AsyncSession, limit: int = 5) -> List[ContestParticipation]:
    """A user's highest completed scores."""
    result = await db.execute(
        select(ContestParticipation)
        .where(
            ContestParticipation.user_id == user_id,
            ContestParticipation.status == ParticipationStatus.COMPLETED
        )
        .order_by(ContestParticipation.score.desc(), ContestParticipation.completed_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def find_stale_attempts(
    now: datetime,
    grace: timedelta,
    db: AsyncSession
) -> List[Tuple[ContestParticipation, Contest]]:
    """
    IN_PROGRESS participations whose time allowance has run out.

    An attempt is stale once started_at + duration + grace < now.
    Reporting only; no state is changed.
    """
    result = await db.execute(
        select(ContestParticipation, Contest)
        .join(Contest, Contest.id == ContestParticipation.contest_id)
        .where(ContestParticipation.status == ParticipationStatus.IN_PROGRESS)
        .order_by(ContestParticipation.started_at.asc())
    )

    stale = []
    for participation, contest in result.all():
        deadline = participation.started_at + timedelta(minutes=contest.duration_minutes) + grace
        if deadline < now:
            stale.append((participation, contest))
    return stale
