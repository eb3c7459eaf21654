"""
Ranking & Window Test Suite

Pure tests for rank ordering, competition ranking, incremental re-rank,
XP levels and window bounds.
"""
import random
from datetime import datetime, timedelta

import pytest

from contest_engine.exceptions import UnknownWindowError
from contest_engine.services.ranking import RankedIndex, level_for_xp, make_key
from contest_engine.services.windows import WindowKind, parse_window, window_bounds

T0 = datetime(2024, 5, 15, 12, 0, 0)


def _full_rank(keys, require_same_time=False):
    """Reference ranking computed from scratch."""
    index = RankedIndex(require_same_time=require_same_time)
    index.load(keys)
    return {key[2]: rank for key, rank in index.rows()}


# =============================================================================
# Ordering & Ties
# =============================================================================

class TestRankedIndex:
    """Test ordering and competition ranking."""

    def test_orders_by_total_then_time_then_user(self):
        index = RankedIndex()
        index.load([
            make_key(100, T0 + timedelta(minutes=5), "carol"),
            make_key(250, T0, "alice"),
            make_key(100, T0, "bob"),
        ])

        assert [key[2] for key, _ in index.rows()] == ["alice", "bob", "carol"]

    def test_equal_totals_share_rank_and_skip(self):
        index = RankedIndex()
        index.load([
            make_key(300, T0, "a"),
            make_key(200, T0, "b"),
            make_key(200, T0 + timedelta(seconds=1), "c"),
            make_key(100, T0, "d"),
        ])

        assert [rank for _, rank in index.rows()] == [1, 2, 2, 4]

    def test_require_same_time_breaks_ties_on_time(self):
        index = RankedIndex(require_same_time=True)
        index.load([
            make_key(200, T0, "b"),
            make_key(200, T0 + timedelta(seconds=1), "c"),
            make_key(200, T0, "a"),
        ])

        assert index.rank_of("a") == 1
        assert index.rank_of("b") == 1
        assert index.rank_of("c") == 3

    def test_unknown_user_is_unranked(self):
        index = RankedIndex()
        index.load([make_key(10, T0, "a")])

        assert index.rank_of("ghost") is None
        assert index.key_of("ghost") is None
        assert index.key_of("a") == make_key(10, T0, "a")
        assert "ghost" not in index
        assert "a" in index

    def test_empty_load(self):
        index = RankedIndex()
        index.load([])

        assert len(index) == 0
        assert index.rows() == []


# =============================================================================
# Incremental Updates
# =============================================================================

class TestIncrementalRerank:
    """Incremental upserts must agree with a full re-rank."""

    def test_move_up_reports_changed_ranks(self):
        index = RankedIndex()
        index.load([
            make_key(300, T0, "a"),
            make_key(200, T0, "b"),
            make_key(100, T0, "c"),
        ])

        changed = index.upsert(make_key(350, T0 + timedelta(minutes=1), "c"))

        assert index.rank_of("c") == 1
        assert index.rank_of("a") == 2
        assert index.rank_of("b") == 3
        assert changed == 3

    def test_new_user_shifts_everyone_below(self):
        index = RankedIndex()
        index.load([make_key(300, T0, "a"), make_key(100, T0, "b")])

        index.upsert(make_key(200, T0, "new"))

        assert index.rank_of("new") == 2
        assert index.rank_of("b") == 3

    def test_joining_a_tie(self):
        index = RankedIndex()
        index.load([make_key(300, T0, "a"), make_key(200, T0, "b"), make_key(100, T0, "c")])

        index.upsert(make_key(300, T0 + timedelta(minutes=1), "b"))

        assert index.rank_of("a") == 1
        assert index.rank_of("b") == 1
        assert index.rank_of("c") == 3

    @pytest.mark.parametrize("require_same_time", [False, True])
    def test_random_updates_match_full_rank(self, require_same_time):
        rng = random.Random(7)
        users = [f"user-{i}" for i in range(25)]
        totals = {}
        times = {}
        index = RankedIndex(require_same_time=require_same_time)

        for step in range(400):
            user = rng.choice(users)
            totals[user] = totals.get(user, 0) + rng.choice([0, 5, 10, 10, 20, -5])
            times[user] = T0 + timedelta(seconds=rng.randint(0, 3))
            index.upsert(make_key(totals[user], times[user], user))

            expected = _full_rank(
                [make_key(totals[u], times[u], u) for u in totals],
                require_same_time=require_same_time,
            )
            actual = {key[2]: rank for key, rank in index.rows()}
            assert actual == expected, f"diverged at step {step}"


# =============================================================================
# Levels & Windows
# =============================================================================

class TestLevels:

    @pytest.mark.parametrize("xp,level", [
        (0, 1),
        (99, 1),
        (100, 2),
        (399, 2),
        (400, 3),
        (10000, 11),
        (-50, 1),
    ])
    def test_level_for_xp(self, xp, level):
        assert level_for_xp(xp) == level


class TestWindows:

    def test_global_is_unbounded(self):
        bounds = window_bounds(WindowKind.GLOBAL, T0)
        assert bounds.start is None and bounds.end is None
        assert bounds.contains(datetime(1999, 1, 1))

    def test_weekly_starts_monday_midnight(self):
        bounds = window_bounds(WindowKind.WEEKLY, T0)

        assert bounds.start == datetime(2024, 5, 13)
        assert bounds.end == datetime(2024, 5, 20)
        assert bounds.contains(datetime(2024, 5, 13))
        assert not bounds.contains(datetime(2024, 5, 20))

    def test_weekly_on_monday_is_its_own_week(self):
        bounds = window_bounds(WindowKind.WEEKLY, datetime(2024, 5, 20, 0, 0, 0))
        assert bounds.start == datetime(2024, 5, 20)

    def test_monthly_bounds(self):
        bounds = window_bounds(WindowKind.MONTHLY, T0)

        assert bounds.start == datetime(2024, 5, 1)
        assert bounds.end == datetime(2024, 6, 1)

    def test_monthly_december_rolls_year(self):
        bounds = window_bounds(WindowKind.MONTHLY, datetime(2024, 12, 31, 23, 59))

        assert bounds.start == datetime(2024, 12, 1)
        assert bounds.end == datetime(2025, 1, 1)

    def test_parse_window(self):
        assert parse_window("weekly") == WindowKind.WEEKLY
        assert parse_window("MONTHLY") == WindowKind.MONTHLY
        assert parse_window(WindowKind.GLOBAL) == WindowKind.GLOBAL

    def test_parse_unknown_window(self):
        with pytest.raises(UnknownWindowError):
            parse_window("daily")
