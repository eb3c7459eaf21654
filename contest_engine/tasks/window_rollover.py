"""
contest_engine/tasks/window_rollover.py
Scheduled weekly/monthly leaderboard rollover and stale attempt report.

Attempts left IN_PROGRESS past duration + grace are reported only;
they are never expired or scored automatically.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from contest_engine.services.contest_orchestrator import ContestOrchestrator

logger = logging.getLogger(__name__)


async def run_rollover_once(orchestrator: ContestOrchestrator, now: Optional[datetime] = None) -> dict:
    """Run a single maintenance cycle."""
    now = now or orchestrator.clock()

    rolled = await orchestrator.roll_windows(now)
    if rolled:
        logger.info(f"Rollover completed: {[kind.value for kind in rolled]}")

    stale = await orchestrator.find_stale_attempts(now)
    for participation, contest in stale:
        logger.warning(
            f"[STALE ATTEMPT] participation={participation.id} user={participation.user_id} "
            f"contest={contest.id} started_at={participation.started_at.isoformat()} "
            f"duration={contest.duration_minutes}m"
        )

    return {"rolled": [kind.value for kind in rolled], "stale_attempts": len(stale)}


async def rollover_loop(orchestrator: ContestOrchestrator, interval_seconds: int = 60):
    """
    Background maintenance loop.
    Runs every interval_seconds (default 1 minute).
    """
    logger.info(f"Starting rollover loop with interval {interval_seconds}s")

    while True:
        try:
            await run_rollover_once(orchestrator)
        except Exception as e:
            logger.exception(f"Rollover loop error: {str(e)}")

        await asyncio.sleep(interval_seconds)


def start_rollover_task(orchestrator: ContestOrchestrator, interval_seconds: int = 60) -> asyncio.Task:
    """Start the rollover task as a background coroutine."""
    return asyncio.create_task(rollover_loop(orchestrator, interval_seconds))
