"""
Leaderboard Router

Paginated windowed leaderboards, live WebSocket feed, XP credit, user
standing and score history, on-demand rebuild (admin).

Consistent paging: the first page response carries `version`; passing it
back on later pages serves them from the same snapshot. A version that has
fallen out of retention answers 410 and the client restarts from page 1.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect

from contest_engine.config.feature_flags import FeatureFlags
from contest_engine.exceptions import UnknownWindowError
from contest_engine.routes.deps import get_orchestrator, limiter, require_admin
from contest_engine.schemas.leaderboard import (
    LeaderboardEntryResponse,
    LeaderboardPageResponse,
    ProfileResponse,
    ProfileUpdate,
    RebuildResponse,
    ScoreEventCreate,
    ScoreEventResponse,
    UserStandingResponse,
)
from contest_engine.services.contest_orchestrator import ContestOrchestrator
from contest_engine.services.windows import parse_window

logger = logging.getLogger(__name__)
router = APIRouter(tags=["leaderboard"])


@router.get("/leaderboards/{window}", response_model=LeaderboardPageResponse)
async def get_leaderboard(
    window: str,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1),
    version: Optional[int] = Query(default=None, ge=0),
    orchestrator: ContestOrchestrator = Depends(get_orchestrator)
):
    result = await orchestrator.get_leaderboard(window, page=page, page_size=page_size, version=version)
    return LeaderboardPageResponse(
        window=result.window.value,
        version=result.version,
        page=page,
        page_size=page_size,
        total_count=result.total_count,
        window_start=result.window_start,
        window_end=result.window_end,
        generated_at=result.generated_at,
        entries=[LeaderboardEntryResponse.model_validate(entry) for entry in result.entries],
    )


@router.post("/leaderboards/rebuild", response_model=RebuildResponse, dependencies=[Depends(require_admin)])
async def rebuild_leaderboards(orchestrator: ContestOrchestrator = Depends(get_orchestrator)):
    """Recompute every window from the score ledger on this worker and ask the others to do the same."""
    rebuilt = await orchestrator.rebuild_leaderboards(propagate=True)
    versions = {kind.value: version for kind, version in rebuilt.items()}
    logger.warning(f"[ADMIN REBUILD] versions={versions}")
    return RebuildResponse(
        versions=versions,
        propagated=orchestrator.relay is not None and orchestrator.relay.running,
    )


@router.websocket("/leaderboards/{window}/live")
async def leaderboard_live(websocket: WebSocket, window: str, top_n: int = 10):
    """
    Push whole-snapshot updates for a window, current snapshot first.

    Close codes:
    - 4403: live leaderboard disabled
    - 4400: unknown window
    """
    if not FeatureFlags.is_enabled("FEATURE_LIVE_LEADERBOARD"):
        await websocket.close(code=4403)
        return

    try:
        kind = parse_window(window)
    except UnknownWindowError:
        await websocket.close(code=4400)
        return

    orchestrator: ContestOrchestrator = websocket.app.state.orchestrator
    await websocket.accept()
    logger.info(f"[WS CONNECT] leaderboard={kind.value} top_n={top_n}")

    feed = orchestrator.subscribe_leaderboard(kind, top_n)
    try:
        async for payload in feed:
            await websocket.send_json(payload)
    except WebSocketDisconnect:
        logger.info(f"[WS DISCONNECT] leaderboard={kind.value}")
    finally:
        await feed.aclose()


@router.post("/score-events", response_model=ScoreEventResponse)
@limiter.limit("120/minute")
async def award_points(
    request: Request,  # Required by slowapi
    payload: ScoreEventCreate,
    orchestrator: ContestOrchestrator = Depends(get_orchestrator)
):
    """Credit non-contest XP. Replaying the same (source_kind, source_id) is a no-op."""
    result = await orchestrator.award_points(
        payload.user_id,
        payload.points,
        payload.source_kind,
        payload.source_id,
        payload.occurred_at,
    )
    return _event_response(result.event, result.deduplicated)


def _event_response(event, deduplicated: bool = False) -> ScoreEventResponse:
    return ScoreEventResponse(
        sequence=event.id,
        user_id=event.user_id,
        points=event.points,
        source_kind=event.source_kind,
        source_id=event.source_id,
        occurred_at=event.occurred_at,
        deduplicated=deduplicated,
    )


@router.get("/users/{user_id}/score-events", response_model=List[ScoreEventResponse])
async def get_score_history(
    user_id: str,
    after_sequence: int = Query(default=0, ge=0, description="Resume after this sequence"),
    limit: int = Query(default=50, ge=1, le=500),
    orchestrator: ContestOrchestrator = Depends(get_orchestrator)
):
    events = await orchestrator.get_score_history(user_id, after_sequence=after_sequence, limit=limit)
    return [_event_response(event) for event in events]


@router.get("/users/{user_id}/standing", response_model=UserStandingResponse)
async def get_user_standing(user_id: str, orchestrator: ContestOrchestrator = Depends(get_orchestrator)):
    standing = await orchestrator.get_user_standing(user_id)
    return UserStandingResponse(
        user_id=standing.user_id,
        global_total=standing.global_total,
        weekly_total=standing.weekly_total,
        monthly_total=standing.monthly_total,
        level=standing.level,
        ranks={kind.value: rank for kind, rank in standing.ranks.items()},
    )


@router.put("/users/{user_id}/profile", response_model=ProfileResponse)
async def upsert_profile(
    user_id: str,
    payload: ProfileUpdate,
    orchestrator: ContestOrchestrator = Depends(get_orchestrator)
):
    profile = await orchestrator.upsert_profile(
        user_id,
        payload.display_name,
        avatar_url=payload.avatar_url,
        badge_count=payload.badge_count,
    )
    return ProfileResponse.model_validate(profile)
