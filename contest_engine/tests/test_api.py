"""
API Contract Test Suite

HTTP status discipline, error envelope and response shapes for the contest
and leaderboard routers.
"""
from datetime import timedelta
from typing import AsyncGenerator
from unittest.mock import Mock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from starlette.websockets import WebSocketDisconnect

from contest_engine.config.feature_flags import FeatureFlags
from contest_engine.main import create_app


@pytest_asyncio.fixture
async def client(orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """Create test client bound to the fixture orchestrator."""
    app = create_app(orchestrator)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


def _contest_body(clock, **overrides) -> dict:
    body = {
        "title": "  Torts Blitz  ",
        "question_count": 10,
        "duration_minutes": 20,
        "start_time": (clock.now - timedelta(minutes=30)).isoformat(),
        "end_time": (clock.now + timedelta(hours=1)).isoformat(),
        "max_participants": 2,
    }
    body.update(overrides)
    return body


# =============================================================================
# Contests & Participation
# =============================================================================

class TestContestRoutes:

    @pytest.mark.asyncio
    async def test_create_and_fetch_contest(self, client, clock):
        response = await client.post("/contests", json=_contest_body(clock), headers={"X-User-Id": "organiser"})

        assert response.status_code == 201
        data = response.json()
        assert data["title"] == "Torts Blitz"
        assert data["state"] == "Live"
        assert data["created_by"] == "organiser"

        fetched = await client.get(f"/contests/{data['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["difficulty"] == "Medium"

    @pytest.mark.asyncio
    async def test_list_contests_by_state(self, client, clock):
        live_id = (await client.post("/contests", json=_contest_body(clock))).json()["id"]
        later = _contest_body(
            clock,
            start_time=(clock.now + timedelta(days=1)).isoformat(),
            end_time=(clock.now + timedelta(days=2)).isoformat(),
        )
        scheduled_id = (await client.post("/contests", json=later)).json()["id"]

        live = await client.get("/contests", params={"state": "live"})
        scheduled = await client.get("/contests", params={"state": "Scheduled"})

        assert [c["id"] for c in live.json()] == [live_id]
        assert [c["id"] for c in scheduled.json()] == [scheduled_id]
        assert (await client.get("/contests", params={"state": "paused"})).status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_contest_is_400(self, client, clock):
        response = await client.post("/contests", json=_contest_body(clock, duration_minutes=0))

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "INVALID_CONTEST"

    @pytest.mark.asyncio
    async def test_missing_field_is_422(self, client, clock):
        body = _contest_body(clock)
        del body["title"]

        response = await client.post("/contests", json=body)

        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_contest_is_404(self, client):
        response = await client.get("/contests/999")

        assert response.status_code == 404
        assert response.json()["error"] == "CONTEST_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_join_submit_flow(self, client, clock):
        contest_id = (await client.post("/contests", json=_contest_body(clock))).json()["id"]

        joined = await client.post(f"/contests/{contest_id}/join", headers={"X-User-Id": "alice"})
        rejoined = await client.post(f"/contests/{contest_id}/join", headers={"X-User-Id": "alice"})
        assert joined.status_code == 200
        assert rejoined.json()["id"] == joined.json()["id"]

        pid = joined.json()["id"]
        started = await client.post(f"/participations/{pid}/start")
        assert started.json()["status"] == "InProgress"

        submitted = await client.post(
            f"/participations/{pid}/submit",
            json={"score": 75, "correct_count": 7, "total_questions": 10}
        )
        retried = await client.post(
            f"/participations/{pid}/submit",
            json={"score": 100, "correct_count": 10, "total_questions": 10}
        )
        assert submitted.status_code == 200
        assert submitted.json()["status"] == "Completed"
        assert retried.status_code == 200
        assert retried.json()["score"] == 75

        standings = await client.get(f"/contests/{contest_id}/standings")
        assert standings.json()["standings"][0]["user_id"] == "alice"

        history = await client.get("/users/alice/contests")
        assert [p["id"] for p in history.json()] == [pid]

    @pytest.mark.asyncio
    async def test_join_requires_user_header(self, client, clock):
        contest_id = (await client.post("/contests", json=_contest_body(clock))).json()["id"]

        response = await client.post(f"/contests/{contest_id}/join")

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_full_contest_is_409(self, client, clock):
        contest_id = (await client.post("/contests", json=_contest_body(clock, max_participants=1))).json()["id"]
        await client.post(f"/contests/{contest_id}/join", headers={"X-User-Id": "alice"})

        response = await client.post(f"/contests/{contest_id}/join", headers={"X-User-Id": "bob"})

        assert response.status_code == 409
        assert response.json()["error"] == "CONTEST_FULL"

    @pytest.mark.asyncio
    async def test_cancel_then_join_is_409(self, client, clock):
        contest_id = (await client.post("/contests", json=_contest_body(clock))).json()["id"]

        cancelled = await client.post(f"/contests/{contest_id}/cancel", json={"reason": "typo in questions"})
        assert cancelled.json()["cancel_reason"] == "typo in questions"

        response = await client.post(f"/contests/{contest_id}/join", headers={"X-User-Id": "alice"})
        assert response.status_code == 409
        assert response.json()["error"] == "CONTEST_ENDED"

    @pytest.mark.asyncio
    async def test_update_and_state(self, client, clock):
        contest_id = (await client.post("/contests", json=_contest_body(clock))).json()["id"]

        updated = await client.patch(f"/contests/{contest_id}", json={"max_participants": 50})
        state = await client.get(f"/contests/{contest_id}/state")
        listed = await client.get("/contests", params={"state": "Live"})

        assert updated.json()["max_participants"] == 50
        assert state.json()["state"] == "Live"
        assert state.json()["participant_count"] == 0
        assert [c["id"] for c in listed.json()] == [contest_id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["difficulty", "title", "max_participants"])
    async def test_update_with_null_is_400(self, client, clock, field):
        contest_id = (await client.post("/contests", json=_contest_body(clock))).json()["id"]

        response = await client.patch(f"/contests/{contest_id}", json={field: None})

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_CONTEST"
        fetched = (await client.get(f"/contests/{contest_id}")).json()
        assert fetched["difficulty"] == "Medium"
        assert fetched["title"] == "Torts Blitz"

    @pytest.mark.asyncio
    async def test_participants_listed_in_join_order(self, client, clock):
        contest_id = (await client.post("/contests", json=_contest_body(clock))).json()["id"]
        for user in ("bob", "alice"):
            await client.post(f"/contests/{contest_id}/join", headers={"X-User-Id": user})

        response = await client.get(f"/contests/{contest_id}/participants")
        missing = await client.get("/contests/999/participants")

        assert response.status_code == 200
        assert [p["user_id"] for p in response.json()] == ["bob", "alice"]
        assert {p["status"] for p in response.json()} == {"Joined"}
        assert missing.status_code == 404


# =============================================================================
# Leaderboards & XP
# =============================================================================

class TestLeaderboardRoutes:

    @pytest.mark.asyncio
    async def test_score_event_and_leaderboard_page(self, client):
        for user, points in (("alice", 50), ("bob", 80)):
            response = await client.post("/score-events", json={
                "user_id": user, "points": points, "source_kind": "QuizAttempt", "source_id": f"quiz-{user}"
            })
            assert response.status_code == 200
            assert response.json()["deduplicated"] is False

        page = await client.get("/leaderboards/weekly", params={"page": 1, "page_size": 1})

        assert page.status_code == 200
        data = page.json()
        assert data["total_count"] == 2
        assert data["entries"][0]["user_id"] == "bob"
        assert data["entries"][0]["rank"] == 1

        second = await client.get(
            "/leaderboards/weekly", params={"page": 2, "page_size": 1, "version": data["version"]}
        )
        assert second.json()["entries"][0]["user_id"] == "alice"

    @pytest.mark.asyncio
    async def test_replayed_score_event_is_deduplicated(self, client):
        body = {"user_id": "alice", "points": 5, "source_kind": "Achievement", "source_id": "streak-7"}

        first = await client.post("/score-events", json=body)
        second = await client.post("/score-events", json=body)

        assert second.json()["deduplicated"] is True
        assert second.json()["sequence"] == first.json()["sequence"]

    @pytest.mark.asyncio
    async def test_unknown_window_is_400(self, client):
        response = await client.get("/leaderboards/daily")

        assert response.status_code == 400
        assert response.json()["error"] == "UNKNOWN_WINDOW"

    @pytest.mark.asyncio
    async def test_expired_version_is_410(self, client):
        for i in range(5):
            await client.post("/score-events", json={
                "user_id": "alice", "points": 1, "source_kind": "QuizAttempt", "source_id": f"q{i}"
            })

        response = await client.get("/leaderboards/global", params={"version": 1})

        assert response.status_code == 410
        assert response.json()["error"] == "SNAPSHOT_EXPIRED"

    @pytest.mark.asyncio
    async def test_standing_and_profile(self, client):
        await client.post("/score-events", json={
            "user_id": "alice", "points": 150, "source_kind": "DailyChallenge", "source_id": "d1"
        })

        profile = await client.put("/users/alice/profile", json={"display_name": "Alice", "badge_count": 4})
        standing = await client.get("/users/alice/standing")

        assert profile.status_code == 200
        assert profile.json()["badge_count"] == 4
        data = standing.json()
        assert data["global_total"] == 150
        assert data["level"] == 2
        assert data["ranks"] == {"global": 1, "weekly": 1, "monthly": 1}

    @pytest.mark.asyncio
    async def test_score_history_pages_by_sequence(self, client, settings):
        settings.ledger_page_size = 2
        for i in range(5):
            await client.post("/score-events", json={
                "user_id": "alice", "points": i + 1, "source_kind": "QuizAttempt", "source_id": f"h{i}"
            })
        await client.post("/score-events", json={
            "user_id": "bob", "points": 9, "source_kind": "QuizAttempt", "source_id": "h-bob"
        })

        first = (await client.get("/users/alice/score-events", params={"limit": 3})).json()
        rest = (await client.get(
            "/users/alice/score-events", params={"after_sequence": first[-1]["sequence"]}
        )).json()

        assert [e["points"] for e in first] == [1, 2, 3]
        assert [e["points"] for e in rest] == [4, 5]
        assert all(e["deduplicated"] is False for e in first + rest)

    @pytest.mark.asyncio
    async def test_rebuild_requires_admin_token(self, client, settings):
        disabled = await client.post("/leaderboards/rebuild", headers={"X-Admin-Token": "anything"})

        settings.admin_token = "s3cret"
        wrong = await client.post("/leaderboards/rebuild", headers={"X-Admin-Token": "guess"})
        missing = await client.post("/leaderboards/rebuild")

        for response in (disabled, wrong, missing):
            assert response.status_code == 403
            assert response.json()["error"] == "ADMIN_REQUIRED"

    @pytest.mark.asyncio
    async def test_rebuild_recomputes_from_ledger(self, client, settings):
        settings.admin_token = "s3cret"
        await client.post("/score-events", json={
            "user_id": "alice", "points": 20, "source_kind": "QuizAttempt", "source_id": "r1"
        })
        before = (await client.get("/leaderboards/global")).json()

        response = await client.post("/leaderboards/rebuild", headers={"X-Admin-Token": "s3cret"})
        after = (await client.get("/leaderboards/global")).json()

        assert response.status_code == 200
        data = response.json()
        assert set(data["versions"]) == {"global", "weekly", "monthly"}
        assert data["versions"]["global"] == before["version"] + 1
        assert data["propagated"] is False
        assert after["entries"][0]["window_total"] == 20

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"


# =============================================================================
# Live WebSocket
# =============================================================================

class TestLiveLeaderboard:

    def _app_with_feed(self, payloads):
        async def feed(window, top_n):
            for payload in payloads:
                yield payload

        orchestrator = Mock()
        orchestrator.subscribe_leaderboard = feed
        return create_app(orchestrator)

    def test_streams_snapshots(self):
        payloads = [
            {"type": "LEADERBOARD_SNAPSHOT", "window": "global", "version": 1, "entries": []},
            {"type": "LEADERBOARD_SNAPSHOT", "window": "global", "version": 2, "entries": []},
        ]
        client = TestClient(self._app_with_feed(payloads))

        with client.websocket_connect("/leaderboards/global/live?top_n=5") as websocket:
            assert websocket.receive_json()["version"] == 1
            assert websocket.receive_json()["version"] == 2

    def test_unknown_window_closes(self):
        client = TestClient(self._app_with_feed([]))

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/leaderboards/daily/live") as websocket:
                websocket.receive_json()
        assert exc_info.value.code == 4400

    def test_disabled_feature_closes(self, monkeypatch):
        monkeypatch.setattr(FeatureFlags, "FEATURE_LIVE_LEADERBOARD", False)
        client = TestClient(self._app_with_feed([]))

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/leaderboards/global/live") as websocket:
                websocket.receive_json()
        assert exc_info.value.code == 4403
