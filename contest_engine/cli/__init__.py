#!/usr/bin/env python3
"""
Contest Engine CLI

Usage:
    python -m contest_engine.cli <command> [options]

Commands:
    leaderboard  Leaderboard maintenance (rebuild, show)
    contest      Contest inspection (list, standings, stale)

Environment:
    DATABASE_URL        Database connection string
    CONTEST_ENGINE_URL  Running server for leaderboard rebuild
    ADMIN_TOKEN         Token sent with leaderboard rebuild
"""
import sys
import argparse
import logging
from typing import Optional

from contest_engine.cli.contest_commands import ContestCommand
from contest_engine.cli.leaderboard_commands import LeaderboardCommand
from contest_engine.config.feature_flags import EngineSettings
from contest_engine.services.contest_registry import LifecycleState
from contest_engine.services.windows import WindowKind


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="contest-engine",
        description="Contest & Leaderboard Engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s leaderboard rebuild --server http://localhost:8000
  %(prog)s leaderboard show --window weekly --size 10
  %(prog)s contest list --state Live
  %(prog)s contest standings --id 42
  %(prog)s contest stale
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0"
    )

    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without executing"
    )

    parser.add_argument(
        "--database-url",
        help="Override DATABASE_URL"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Leaderboard commands
    leaderboard_parser = subparsers.add_parser("leaderboard", help="Leaderboard maintenance")
    leaderboard_subparsers = leaderboard_parser.add_subparsers(dest="leaderboard_action")

    rebuild_parser = leaderboard_subparsers.add_parser(
        "rebuild", help="Have the running server rebuild all windows from the score ledger"
    )
    rebuild_parser.add_argument("--server", help="Server base URL (default: CONTEST_ENGINE_URL or http://localhost:8000)")
    rebuild_parser.add_argument("--admin-token", help="Override ADMIN_TOKEN")

    show_parser = leaderboard_subparsers.add_parser("show", help="Print a leaderboard page")
    show_parser.add_argument("--window", default=WindowKind.GLOBAL.value, choices=[k.value for k in WindowKind])
    show_parser.add_argument("--page", type=int, default=1, help="1-based page number")
    show_parser.add_argument("--size", type=int, default=20, help="Page size")

    # Contest commands
    contest_parser = subparsers.add_parser("contest", help="Contest inspection")
    contest_subparsers = contest_parser.add_subparsers(dest="contest_action")

    list_parser = contest_subparsers.add_parser("list", help="List contests")
    list_parser.add_argument(
        "--state",
        default=LifecycleState.LIVE.value,
        choices=[s.value for s in LifecycleState],
        help="Lifecycle state (default: Live)"
    )

    standings_parser = contest_subparsers.add_parser("standings", help="Per-contest standings")
    standings_parser.add_argument("--id", type=int, required=True, help="Contest ID")

    contest_subparsers.add_parser("stale", help="Report in-progress attempts past their time allowance")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 1

    # Setup logging
    setup_logging(parsed.log_level)

    settings = EngineSettings(database_url=parsed.database_url)

    # Route to appropriate command handler
    command_map = {
        "leaderboard": LeaderboardCommand,
        "contest": ContestCommand,
    }

    if parsed.command in command_map:
        handler = command_map[parsed.command](dry_run=parsed.dry_run, settings=settings)
        return handler.execute(parsed)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
