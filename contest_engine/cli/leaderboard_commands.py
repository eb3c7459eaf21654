"""
Leaderboard CLI Commands

Leaderboard maintenance: rebuild (on the running server), show
"""
import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from contest_engine.config.feature_flags import EngineSettings
from contest_engine.database import build_engine, build_session_factory, init_db
from contest_engine.realtime.in_memory_adapter import InMemoryAdapter
from contest_engine.services.contest_orchestrator import ContestOrchestrator
from contest_engine.services.leaderboard_aggregator import LeaderboardAggregator

DEFAULT_SERVER_URL = "http://localhost:8000"


@asynccontextmanager
async def open_orchestrator(settings: EngineSettings, rebuild: bool = True) -> AsyncIterator[ContestOrchestrator]:
    """
    Standalone orchestrator over the configured database.

    Its leaderboards live in this process only; rebuild=False skips loading
    them for commands that just read contests and participations.
    """
    engine = build_engine(settings.database_url)
    broadcast = InMemoryAdapter(max_queue_size=settings.subscriber_queue_size)
    try:
        await init_db(engine)
        aggregator = LeaderboardAggregator(broadcast, settings)
        orchestrator = ContestOrchestrator(build_session_factory(engine), aggregator, settings)
        if rebuild:
            await orchestrator.rebuild_leaderboards()
        yield orchestrator
    finally:
        await broadcast.close()
        await engine.dispose()


class LeaderboardCommand:
    """Leaderboard CLI command handler."""

    def __init__(
        self,
        dry_run: bool = False,
        settings: EngineSettings = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.dry_run = dry_run
        self.settings = settings or EngineSettings()
        # Injected by tests; None means a real network connection
        self.transport = transport

    def execute(self, args) -> int:
        """Execute leaderboard command."""
        if args.leaderboard_action == "rebuild":
            return self._rebuild(args)
        elif args.leaderboard_action == "show":
            return self._show(args)
        else:
            print("Error: Unknown leaderboard action")
            return 1

    def _rebuild(self, args) -> int:
        """
        Ask the running server to rebuild every window from the score ledger.

        The server's workers hold the leaderboards in memory, so the rebuild
        has to happen there; the receiving worker relays it to the others.
        """
        server = args.server or os.getenv("CONTEST_ENGINE_URL", DEFAULT_SERVER_URL)
        token = args.admin_token or self.settings.admin_token
        print("=== Rebuild Leaderboards ===")

        if self.dry_run:
            print(f"[DRY RUN] Would ask {server} to rebuild global, weekly and monthly leaderboards")
            return 0

        if not token:
            print("Error: admin token required (--admin-token or ADMIN_TOKEN)")
            return 1

        try:
            result = asyncio.run(self._async_rebuild(server, token))
        except httpx.HTTPStatusError as e:
            print(f"Error: {e.response.status_code} {e.response.text}")
            return 1
        except httpx.HTTPError as e:
            print(f"Error: cannot reach {server}: {e}")
            return 1

        for window, version in result["versions"].items():
            print(f"✓ {window:<8} v{version}")
        if not result["propagated"]:
            print("Note: other workers were not notified (relay not running)")
        return 0

    async def _async_rebuild(self, server: str, token: str) -> dict:
        async with httpx.AsyncClient(base_url=server, timeout=30.0, transport=self.transport) as client:
            response = await client.post("/leaderboards/rebuild", headers={"X-Admin-Token": token})
            response.raise_for_status()
            return response.json()

    def _show(self, args) -> int:
        """Print one page of a leaderboard, recomputed from the ledger."""
        print(f"=== {args.window.capitalize()} Leaderboard ===")

        try:
            asyncio.run(self._async_show(args.window, args.page, args.size))
            return 0
        except Exception as e:
            print(f"Error: {e}")
            return 1

    async def _async_show(self, window: str, page: int, size: int) -> None:
        async with open_orchestrator(self.settings) as orchestrator:
            result = await orchestrator.get_leaderboard(window, page=page, page_size=size)

            if not result.entries:
                print("No ranked users")
                return

            print(f"\n{'Rank':<6} {'User':<30} {'XP':>10}")
            print("-" * 48)
            for entry in result.entries:
                print(f"{entry.rank:<6} {entry.display_name[:28]:<30} {entry.window_total:>10}")
            print(f"\nversion={result.version} total={result.total_count}")
