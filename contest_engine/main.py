"""
contest_engine/main.py
FastAPI application: contests, participation and live leaderboards.

Run:
    uvicorn contest_engine.main:app --reload
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from contest_engine.config.feature_flags import EngineSettings, FeatureFlags
from contest_engine.database import AsyncSessionLocal, close_db, init_db
from contest_engine.errors import register_exception_handlers
from contest_engine.realtime.in_memory_adapter import InMemoryAdapter
from contest_engine.realtime.redis_adapter import create_broadcast_adapter
from contest_engine.routes import router
from contest_engine.routes.deps import limiter
from contest_engine.services.contest_orchestrator import ContestOrchestrator
from contest_engine.services.leaderboard_aggregator import LeaderboardAggregator
from contest_engine.tasks.window_rollover import start_rollover_task

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def _default_lifespan(app: FastAPI):
    logger.info("Starting contest engine...")
    settings = EngineSettings()
    logger.info(f"Engine settings: {settings.to_dict()}")
    logger.info(f"Feature flags: {FeatureFlags.get_all_flags()}")

    try:
        await init_db()
        logger.info("Database connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect to database: {str(e)}")
        raise

    # Snapshots go to this worker's WebSocket viewers only; other workers
    # receive score events over the relay and publish their own snapshots.
    snapshot_feed = InMemoryAdapter(max_queue_size=settings.subscriber_queue_size)
    event_bus = await create_broadcast_adapter(
        use_redis=FeatureFlags.FEATURE_REDIS_BROADCAST,
        redis_url=settings.redis_url,
        max_queue_size=settings.relay_queue_size,
    )
    aggregator = LeaderboardAggregator(snapshot_feed, settings)
    orchestrator = ContestOrchestrator(AsyncSessionLocal, aggregator, settings, event_bus=event_bus)
    # Relay first: events committed elsewhere during the rebuild are replayed
    await orchestrator.relay.start()
    await orchestrator.rebuild_leaderboards()
    app.state.orchestrator = orchestrator

    rollover_task = None
    if FeatureFlags.FEATURE_ROLLOVER_TASK:
        rollover_task = start_rollover_task(orchestrator, settings.rollover_check_interval_seconds)
        logger.info("✓ Rollover task started")

    yield

    logger.info("Shutting down contest engine...")
    if rollover_task is not None:
        rollover_task.cancel()
        try:
            await rollover_task
        except asyncio.CancelledError:
            pass
    await orchestrator.relay.stop()
    await event_bus.close()
    await snapshot_feed.close()
    try:
        await close_db()
    except Exception as e:
        logger.error(f"Error closing database connection: {str(e)}")


def create_app(orchestrator: Optional[ContestOrchestrator] = None) -> FastAPI:
    """
    Build the application.

    With an orchestrator supplied (tests, embedding) the app uses it as-is
    and skips database/broadcast startup.
    """
    lifespan = _default_lifespan if orchestrator is None else None
    app = FastAPI(
        title="Contest Engine API",
        description="Contest lifecycle, participation and live XP leaderboards",
        version="0.1.0",
        docs_url="/docs" if os.getenv("ENVIRONMENT", "development") == "development" else None,
        redoc_url="/redoc" if os.getenv("ENVIRONMENT", "development") == "development" else None,
        lifespan=lifespan
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_exception_handlers(app)

    origins = [
        "http://localhost:3000",
        "http://localhost:8000",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8000",
    ]
    allowed_origins = os.getenv("ALLOWED_ORIGINS", "").split(",")
    if allowed_origins and allowed_origins[0]:
        origins.extend(allowed_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "features": FeatureFlags.get_all_flags()}

    return app


app = create_app()
