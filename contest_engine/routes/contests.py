"""
Contest Router

API endpoints for contest definitions, joining and score submission.

Idempotency:
- POST /contests/{id}/join returns the existing participation on retry
- POST /participations/{id}/submit returns the stored result on retry
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from contest_engine.orm.contest import Contest
from contest_engine.routes.deps import (
    get_current_user_id,
    get_optional_user_id,
    get_orchestrator,
    limiter,
)
from contest_engine.schemas.contest import (
    ContestCancel,
    ContestCreate,
    ContestResponse,
    ContestStandingsResponse,
    ContestStateResponse,
    ContestUpdate,
    ParticipationResponse,
    ScoreSubmission,
    StandingResponse,
)
from contest_engine.services.contest_orchestrator import ContestOrchestrator
from contest_engine.services.contest_registry import LifecycleState, lifecycle_state

logger = logging.getLogger(__name__)
router = APIRouter(tags=["contests"])


def _contest_response(contest: Contest, orchestrator: ContestOrchestrator) -> ContestResponse:
    response = ContestResponse.model_validate(contest)
    return response.model_copy(update={"state": lifecycle_state(contest, orchestrator.clock()).value})


# =============================================================================
# Contest Definitions
# =============================================================================

@router.post("/contests", response_model=ContestResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_contest(
    request: Request,  # Required by slowapi
    payload: ContestCreate,
    user_id: Optional[str] = Depends(get_optional_user_id),
    orchestrator: ContestOrchestrator = Depends(get_orchestrator)
):
    definition = payload.model_dump()
    definition["created_by"] = user_id
    contest = await orchestrator.create_contest(definition)
    return _contest_response(contest, orchestrator)


@router.get("/contests", response_model=List[ContestResponse])
async def list_contests(
    state: LifecycleState = Query(default=LifecycleState.LIVE),
    limit: int = Query(default=50, ge=1, le=200),
    orchestrator: ContestOrchestrator = Depends(get_orchestrator)
):
    """Live (by start), scheduled (by start) or ended (most recent first) contests."""
    contests = await orchestrator.list_contests(state, limit=limit)
    return [_contest_response(contest, orchestrator) for contest in contests]


@router.get("/contests/{contest_id}", response_model=ContestResponse)
async def get_contest(contest_id: int, orchestrator: ContestOrchestrator = Depends(get_orchestrator)):
    contest = await orchestrator.get_contest(contest_id)
    return _contest_response(contest, orchestrator)


@router.get("/contests/{contest_id}/state", response_model=ContestStateResponse)
async def get_contest_state(contest_id: int, orchestrator: ContestOrchestrator = Depends(get_orchestrator)):
    state = await orchestrator.get_contest_state(contest_id)
    return ContestStateResponse(
        contest_id=state.contest_id,
        state=state.state.value,
        cancelled=state.cancelled,
        participant_count=state.participant_count,
        as_of=state.as_of,
    )


@router.patch("/contests/{contest_id}", response_model=ContestResponse)
@limiter.limit("30/minute")
async def update_contest(
    request: Request,  # Required by slowapi
    contest_id: int,
    payload: ContestUpdate,
    orchestrator: ContestOrchestrator = Depends(get_orchestrator)
):
    contest = await orchestrator.update_contest(contest_id, payload.model_dump(exclude_unset=True))
    return _contest_response(contest, orchestrator)


@router.post("/contests/{contest_id}/cancel", response_model=ContestResponse)
async def cancel_contest(
    contest_id: int,
    payload: ContestCancel,
    orchestrator: ContestOrchestrator = Depends(get_orchestrator)
):
    contest = await orchestrator.cancel_contest(contest_id, payload.reason)
    return _contest_response(contest, orchestrator)


@router.get("/contests/{contest_id}/participants", response_model=List[ParticipationResponse])
async def get_contest_participants(contest_id: int, orchestrator: ContestOrchestrator = Depends(get_orchestrator)):
    """Everyone who joined, in join order, whatever their attempt status."""
    rows = await orchestrator.get_contest_participants(contest_id)
    return [ParticipationResponse.model_validate(row) for row in rows]


@router.get("/contests/{contest_id}/standings", response_model=ContestStandingsResponse)
async def get_contest_standings(contest_id: int, orchestrator: ContestOrchestrator = Depends(get_orchestrator)):
    rows = await orchestrator.get_contest_standings(contest_id)
    return ContestStandingsResponse(
        contest_id=contest_id,
        standings=[StandingResponse.model_validate(row) for row in rows],
    )


# =============================================================================
# Participation
# =============================================================================

@router.post("/contests/{contest_id}/join", response_model=ParticipationResponse)
@limiter.limit("60/minute")
async def join_contest(
    request: Request,  # Required by slowapi
    contest_id: int,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ContestOrchestrator = Depends(get_orchestrator)
):
    """Join a contest. Retrying returns the same participation."""
    participation = await orchestrator.join_contest(contest_id, user_id)
    return ParticipationResponse.model_validate(participation)


@router.post("/participations/{participation_id}/start", response_model=ParticipationResponse)
async def start_attempt(participation_id: int, orchestrator: ContestOrchestrator = Depends(get_orchestrator)):
    participation = await orchestrator.start_attempt(participation_id)
    return ParticipationResponse.model_validate(participation)


@router.post("/participations/{participation_id}/submit", response_model=ParticipationResponse)
@limiter.limit("60/minute")
async def submit_score(
    request: Request,  # Required by slowapi
    participation_id: int,
    payload: ScoreSubmission,
    orchestrator: ContestOrchestrator = Depends(get_orchestrator)
):
    """Submit the final score. Retrying returns the originally stored score."""
    participation = await orchestrator.submit_contest_score(
        participation_id,
        payload.score,
        payload.correct_count,
        payload.total_questions,
    )
    return ParticipationResponse.model_validate(participation)


@router.get("/users/{user_id}/contests", response_model=List[ParticipationResponse])
async def get_user_history(
    user_id: str,
    best: bool = Query(default=False, description="Top completed scores instead of newest joins"),
    limit: int = Query(default=50, ge=1, le=200),
    orchestrator: ContestOrchestrator = Depends(get_orchestrator)
):
    if best:
        rows = await orchestrator.get_best_performances(user_id)
    else:
        rows = await orchestrator.get_user_history(user_id, limit=limit)
    return [ParticipationResponse.model_validate(row) for row in rows]
