"""
Contest CLI Commands

Contest inspection: list, standings, stale
"""
import asyncio

from contest_engine.cli.leaderboard_commands import open_orchestrator
from contest_engine.config.feature_flags import EngineSettings
from contest_engine.services.contest_registry import LifecycleState


class ContestCommand:
    """Contest CLI command handler."""

    def __init__(self, dry_run: bool = False, settings: EngineSettings = None):
        self.dry_run = dry_run
        self.settings = settings or EngineSettings()

    def execute(self, args) -> int:
        """Execute contest command."""
        if args.contest_action == "list":
            return self._list(args)
        elif args.contest_action == "standings":
            return self._standings(args)
        elif args.contest_action == "stale":
            return self._stale(args)
        else:
            print("Error: Unknown contest action")
            return 1

    def _list(self, args) -> int:
        print(f"=== {args.state} Contests ===")

        try:
            asyncio.run(self._async_list(LifecycleState(args.state)))
            return 0
        except Exception as e:
            print(f"Error: {e}")
            return 1

    async def _async_list(self, state: LifecycleState) -> None:
        async with open_orchestrator(self.settings, rebuild=False) as orchestrator:
            contests = await orchestrator.list_contests(state)

        if not contests:
            print("No contests found")
            return

        print(f"\n{'ID':<5} {'Title':<40} {'Starts':<20} {'Ends':<20}")
        print("-" * 88)
        for c in contests:
            title = c.title[:38] + (" (cancelled)" if c.is_cancelled else "")
            print(f"{c.id:<5} {title:<40} {c.start_time:%Y-%m-%d %H:%M}     {c.end_time:%Y-%m-%d %H:%M}")

    def _standings(self, args) -> int:
        print(f"=== Contest {args.id} Standings ===")

        try:
            asyncio.run(self._async_standings(args.id))
            return 0
        except Exception as e:
            print(f"Error: {e}")
            return 1

    async def _async_standings(self, contest_id: int) -> None:
        async with open_orchestrator(self.settings, rebuild=False) as orchestrator:
            rows = await orchestrator.get_contest_standings(contest_id)

        if not rows:
            print("No completed attempts")
            return

        print(f"\n{'Rank':<6} {'User':<30} {'Score':>8} {'Correct':>10}")
        print("-" * 58)
        for row in rows:
            correct = f"{row.correct_count}/{row.total_questions}"
            print(f"{row.rank:<6} {row.user_id[:28]:<30} {row.score:>8} {correct:>10}")

    def _stale(self, args) -> int:
        """Report IN_PROGRESS attempts past their time allowance (nothing is changed)."""
        print("=== Stale In-Progress Attempts ===")

        try:
            asyncio.run(self._async_stale())
            return 0
        except Exception as e:
            print(f"Error: {e}")
            return 1

    async def _async_stale(self) -> None:
        async with open_orchestrator(self.settings, rebuild=False) as orchestrator:
            stale = await orchestrator.find_stale_attempts()

        if not stale:
            print("No stale attempts")
            return

        print(f"\n{'Participation':<14} {'User':<30} {'Contest':<8} {'Started':<20}")
        print("-" * 74)
        for participation, contest in stale:
            print(
                f"{participation.id:<14} {participation.user_id[:28]:<30} {contest.id:<8} "
                f"{participation.started_at:%Y-%m-%d %H:%M}"
            )
