"""
Contest Registry Test Suite

Definition validation, derived lifecycle, update/cancel rules and listing.
"""
from datetime import datetime, timedelta

import pytest

from contest_engine.exceptions import ContestNotFoundError, InvalidContestError
from contest_engine.services import contest_registry, participation_tracker
from contest_engine.services.contest_registry import LifecycleState, lifecycle_state_for

T0 = datetime(2024, 5, 15, 12, 0, 0)


class TestLifecycle:
    """Lifecycle is a pure function of (start, end, now)."""

    def test_boundaries(self):
        start, end = T0, T0 + timedelta(hours=1)

        assert lifecycle_state_for(start, end, start - timedelta(seconds=1)) == LifecycleState.SCHEDULED
        assert lifecycle_state_for(start, end, start) == LifecycleState.LIVE
        assert lifecycle_state_for(start, end, end) == LifecycleState.LIVE
        assert lifecycle_state_for(start, end, end + timedelta(seconds=1)) == LifecycleState.ENDED

    def test_state_lookup_ignores_case(self):
        assert LifecycleState("live") is LifecycleState.LIVE
        assert LifecycleState("SCHEDULED") is LifecycleState.SCHEDULED
        with pytest.raises(ValueError):
            LifecycleState("paused")


class TestValidation:

    def test_valid_definition_passes(self, make_definition):
        contest_registry.validate_definition(make_definition())

    @pytest.mark.parametrize("overrides", [
        {"end_time": T0 - timedelta(days=1)},
        {"duration_minutes": 0},
        {"max_participants": 0},
        {"question_count": -1},
        {"title": "   "},
        {"difficulty": "Impossible"},
        {"max_participants": None},
        {"colour": "red"},
    ])
    def test_invalid_definitions(self, make_definition, overrides):
        definition = make_definition(start_time=T0, end_time=T0 + timedelta(hours=1))
        definition.update(overrides)

        with pytest.raises(InvalidContestError):
            contest_registry.validate_definition(definition)

    def test_equal_start_and_end_rejected(self, make_definition):
        with pytest.raises(InvalidContestError):
            contest_registry.validate_definition(make_definition(start_time=T0, end_time=T0))

    def test_null_difficulty_defaults_on_create_only(self, make_definition):
        definition = make_definition(difficulty=None)

        contest_registry.validate_definition(definition)
        with pytest.raises(InvalidContestError) as exc_info:
            contest_registry.validate_definition(definition, allow_defaults=False)
        assert exc_info.value.details == {"null": ["difficulty"]}


class TestPersistence:

    @pytest.mark.asyncio
    async def test_create_and_get(self, db_session, make_definition):
        contest = await contest_registry.create(make_definition(), db_session)
        await db_session.commit()

        loaded = await contest_registry.get(contest.id, db_session)
        assert loaded.title == "Constitutional Law Sprint"
        assert loaded.is_cancelled is False

    @pytest.mark.asyncio
    async def test_get_missing_contest(self, db_session):
        with pytest.raises(ContestNotFoundError):
            await contest_registry.get(4242, db_session)

    @pytest.mark.asyncio
    async def test_update_before_participants(self, db_session, make_definition):
        contest = await contest_registry.create(make_definition(), db_session)

        updated = await contest_registry.update(contest.id, {"max_participants": 5, "prize": None}, db_session)

        assert updated.max_participants == 5
        assert updated.prize is None

    @pytest.mark.asyncio
    async def test_update_revalidates_merged_definition(self, db_session, make_definition):
        contest = await contest_registry.create(make_definition(), db_session)

        with pytest.raises(InvalidContestError):
            await contest_registry.update(contest.id, {"end_time": contest.start_time}, db_session)

    @pytest.mark.asyncio
    async def test_update_rejects_null_for_stored_field(self, db_session, make_definition):
        contest = await contest_registry.create(make_definition(), db_session)

        with pytest.raises(InvalidContestError):
            await contest_registry.update(contest.id, {"difficulty": None}, db_session)

    @pytest.mark.asyncio
    async def test_update_rejected_after_join(self, db_session, make_definition, clock):
        contest = await contest_registry.create(make_definition(), db_session)
        await participation_tracker.join(contest, "alice", clock.now, db_session)

        with pytest.raises(InvalidContestError):
            await contest_registry.update(contest.id, {"title": "Renamed"}, db_session)

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, db_session, make_definition):
        contest = await contest_registry.create(make_definition(), db_session)

        first = await contest_registry.cancel(contest.id, "venue closed", T0, db_session)
        second = await contest_registry.cancel(contest.id, "again", T0 + timedelta(hours=1), db_session)

        assert second.cancelled_at == first.cancelled_at == T0
        assert second.cancel_reason == "venue closed"

    @pytest.mark.asyncio
    async def test_list_by_state(self, db_session, make_definition):
        live = await contest_registry.create(make_definition(title="Live"), db_session)
        scheduled = await contest_registry.create(
            make_definition(title="Soon", start_time=T0 + timedelta(days=1), end_time=T0 + timedelta(days=2)),
            db_session
        )
        ended = await contest_registry.create(
            make_definition(title="Done", start_time=T0 - timedelta(days=2), end_time=T0 - timedelta(days=1)),
            db_session
        )
        cancelled = await contest_registry.create(make_definition(title="Cancelled"), db_session)
        await contest_registry.cancel(cancelled.id, None, T0, db_session)
        await db_session.commit()

        live_ids = [c.id for c in await contest_registry.list_contests(LifecycleState.LIVE, T0, db_session)]
        scheduled_ids = [c.id for c in await contest_registry.list_contests(LifecycleState.SCHEDULED, T0, db_session)]
        ended_ids = [c.id for c in await contest_registry.list_contests(LifecycleState.ENDED, T0, db_session)]

        assert live_ids == [live.id]
        assert scheduled_ids == [scheduled.id]
        assert ended_ids == [ended.id]
