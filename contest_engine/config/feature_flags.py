"""
Feature Flags & Engine Settings

Centralized configuration for the contest engine.
All values are loaded from environment variables (.env supported via python-dotenv).
"""
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable, falling back on bad input."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


class FeatureFlags:
    """
    Feature flags for the application.

    To add a new feature flag:
    1. Add it here as a class property
    2. Load it from environment variable
    3. Use it in your code
    """

    # Live leaderboard push over WebSocket
    FEATURE_LIVE_LEADERBOARD: bool = get_bool_env('FEATURE_LIVE_LEADERBOARD', True)

    # Relay score events between workers via Redis Pub/Sub (in-process otherwise)
    FEATURE_REDIS_BROADCAST: bool = get_bool_env('FEATURE_REDIS_BROADCAST', False)

    # Background weekly/monthly rollover + stale attempt report
    FEATURE_ROLLOVER_TASK: bool = get_bool_env('FEATURE_ROLLOVER_TASK', True)

    @classmethod
    def is_enabled(cls, flag_name: str) -> bool:
        """Check if a feature flag is enabled."""
        return getattr(cls, flag_name, False)

    @classmethod
    def get_all_flags(cls) -> dict:
        """Get all feature flags as a dictionary."""
        return {
            key: value for key, value in cls.__dict__.items()
            if key.startswith('FEATURE_') and isinstance(value, bool)
        }


class EngineSettings:
    """
    Tunables for ranking, snapshot retention and maintenance.

    Defaults come from the environment; keyword overrides win (used by tests
    and the CLI).
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        redis_url: Optional[str] = None,
        rank_ties_require_same_time: Optional[bool] = None,
        version_retention: Optional[int] = None,
        max_page_size: Optional[int] = None,
        subscriber_queue_size: Optional[int] = None,
        in_progress_grace_minutes: Optional[int] = None,
        rollover_check_interval_seconds: Optional[int] = None,
        ledger_page_size: Optional[int] = None,
        event_dedup_horizon: Optional[int] = None,
        relay_queue_size: Optional[int] = None,
        admin_token: Optional[str] = None,
    ):
        self.database_url = database_url or os.getenv(
            "DATABASE_URL", "sqlite+aiosqlite:///./contest_engine.db"
        )
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")

        # Equal totals share a rank unless this is set, in which case the
        # time of the last qualifying event must match too.
        self.rank_ties_require_same_time = (
            rank_ties_require_same_time
            if rank_ties_require_same_time is not None
            else get_bool_env("RANK_TIES_REQUIRE_SAME_TIME", False)
        )
        self.version_retention = version_retention or get_int_env("LEADERBOARD_VERSION_RETENTION", 8)
        self.max_page_size = max_page_size or get_int_env("LEADERBOARD_MAX_PAGE_SIZE", 100)
        self.subscriber_queue_size = subscriber_queue_size or get_int_env("SUBSCRIBER_QUEUE_SIZE", 16)
        self.in_progress_grace_minutes = (
            in_progress_grace_minutes
            if in_progress_grace_minutes is not None
            else get_int_env("IN_PROGRESS_GRACE_MINUTES", 15)
        )
        self.rollover_check_interval_seconds = rollover_check_interval_seconds or get_int_env(
            "ROLLOVER_CHECK_INTERVAL_SECONDS", 60
        )
        self.ledger_page_size = ledger_page_size or get_int_env("LEDGER_PAGE_SIZE", 500)
        # How many recently applied event sequences each aggregator remembers
        # to drop duplicate deliveries and replay events a rebuild missed
        self.event_dedup_horizon = event_dedup_horizon or get_int_env("EVENT_DEDUP_HORIZON", 10000)
        self.relay_queue_size = relay_queue_size or get_int_env("RELAY_QUEUE_SIZE", 1024)
        # Unset disables the admin endpoints
        self.admin_token = admin_token or os.getenv("ADMIN_TOKEN") or None

    def to_dict(self) -> dict:
        return {
            "rank_ties_require_same_time": self.rank_ties_require_same_time,
            "version_retention": self.version_retention,
            "max_page_size": self.max_page_size,
            "subscriber_queue_size": self.subscriber_queue_size,
            "in_progress_grace_minutes": self.in_progress_grace_minutes,
            "rollover_check_interval_seconds": self.rollover_check_interval_seconds,
            "ledger_page_size": self.ledger_page_size,
            "event_dedup_horizon": self.event_dedup_horizon,
            "relay_queue_size": self.relay_queue_size,
            "admin_endpoints": self.admin_token is not None,
        }

